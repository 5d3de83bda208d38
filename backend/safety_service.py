"""SafePath Backend — Safety Model Service

Owns the regressor, the training scheduler, the prediction cache and the
current hotspot set.

    UNINITIALIZED → LOADING → READY ⇄ TRAINING

Training is single-flight: triggers queue up and one pass drains them all.
The model snapshot and the hotspot tuple are replaced by whole-value
assignment, so readers never see a half-updated state.
"""

import json
import logging
import math
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

import numpy as np
from pydantic import ValidationError

import scoring
from cache import PredictionCache
from config import (
    HOTSPOT_MIN_NEIGHBORS, HOTSPOT_RADIUS_KM, HOTSPOT_SAMPLE_LIMIT, HOTSPOT_TOP_N,
    MIN_TRAINING_REPORTS, MODEL_DIR, NEARBY_RADIUS_KM, RETRAIN_DELAY_SECONDS,
    STATUS_HOTSPOT_PREVIEW, TRAINING_EPOCHS, TRAINING_QUEUE_MAX, TRAINING_SAMPLE_LIMIT,
)
from geo import distance_km, distances_km
from ml_model import SafetyRegressor
from models import Hotspot, HotspotSummary, Location, ModelStatus, Prediction, SafetyReport
from report_store import ReportStore

logger = logging.getLogger("safepath.model")

METADATA_FILENAME = "metadata.json"


class ServiceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    TRAINING = "training"


@dataclass(frozen=True)
class ModelSnapshot:
    regressor: SafetyRegressor
    version: int


def _local_now() -> datetime:
    return datetime.now(timezone.utc).astimezone()


def categorize(score: float) -> str:
    if score > 0.7:
        return "safe"
    if score < 0.4:
        return "unsafe"
    return "moderate"


class SafetyModelService:
    def __init__(
        self,
        store: ReportStore,
        *,
        model_dir: Path = MODEL_DIR,
        cache: Optional[PredictionCache] = None,
        clock: Callable[[], datetime] = _local_now,
        rng: Optional[np.random.Generator] = None,
        training_executor=None,
        training_epochs: int = TRAINING_EPOCHS,
        training_seed: Optional[int] = None,
        retrain_delay: float = RETRAIN_DELAY_SECONDS,
        queue_size: int = TRAINING_QUEUE_MAX,
    ):
        self.store = store
        self.model_dir = Path(model_dir)
        self.prediction_cache = cache if cache is not None else PredictionCache()
        self.clock = clock
        self.rng = rng if rng is not None else np.random.default_rng()
        self.training_epochs = training_epochs
        self.training_seed = training_seed
        self.retrain_delay = retrain_delay

        self.state = ServiceState.UNINITIALIZED
        self._snapshot = ModelSnapshot(SafetyRegressor(), 0)
        self.model_loss: Optional[float] = None
        self.last_trained_at: Optional[datetime] = None
        self.last_sample_size = 0
        self.predicted_hotspots: tuple[Hotspot, ...] = ()

        self._training_queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._training_lock = threading.Lock()
        self._owns_executor = training_executor is None
        self._executor = training_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="safety-training",
        )
        self._closed = False

    # ─────────────────────────── Lifecycle ───────────────────────────

    @property
    def model(self) -> SafetyRegressor:
        return self._snapshot.regressor

    @property
    def model_version(self) -> int:
        return self._snapshot.version

    @property
    def is_training(self) -> bool:
        return self._training_lock.locked()

    def initialize(self):
        """Load the persisted model, or start fresh and schedule training."""
        self.state = ServiceState.LOADING
        try:
            regressor = SafetyRegressor.load(self.model_dir)
        except Exception:
            logger.exception(f"Model loading error in {self.model_dir}, starting fresh")
            regressor = None

        if regressor is None:
            logger.info(f"No existing model found in {self.model_dir}")
            self.state = ServiceState.READY
            self.schedule_training(reason="fresh model")
            return

        self._snapshot = ModelSnapshot(regressor, self._snapshot.version + 1)
        self._load_metadata()
        self.state = ServiceState.READY

    def _load_metadata(self):
        path = self.model_dir / METADATA_FILENAME
        if not path.exists():
            return
        try:
            metadata = json.loads(path.read_text())
            self.model_loss = metadata.get("loss")
            trained_at = metadata.get("lastTrainedAt")
            self.last_trained_at = datetime.fromisoformat(trained_at) if trained_at else None
            self.last_sample_size = metadata.get("sampleSize") or 0
            logger.info(f"Loaded model metadata - Loss: {self.model_loss}")
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable model metadata at {path}: {e}")

    def save_model(self):
        """Persist the live model and its metadata. Raises on failure."""
        self.model.save(self.model_dir)
        metadata = {
            "loss": self.model_loss,
            "lastTrainedAt": self.last_trained_at.isoformat() if self.last_trained_at else None,
            "sampleSize": self.last_sample_size,
        }
        (self.model_dir / METADATA_FILENAME).write_text(json.dumps(metadata, indent=2))
        logger.info(f"Model saved to {self.model_dir}")

    def close(self):
        """Stop accepting training work. An in-flight pass runs to completion."""
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    # ─────────────────────────── Prediction ──────────────────────────

    def predict_safety(self, lat: float, lng: float, use_cache: bool = True) -> Prediction:
        """Score a point in [0.1, 0.9] with a confidence in [0, 1]. Never raises."""
        snapshot = self._snapshot
        if use_cache:
            cached = self.prediction_cache.get(lat, lng, snapshot.version)
            if cached is not None:
                return cached

        now = self.clock()
        try:
            prediction = self._predict_uncached(lat, lng, now, snapshot.regressor)
        except Exception as e:
            logger.warning(f"Prediction error at ({lat:.5f}, {lng:.5f}), using heuristic: {e}")
            prediction = self._heuristic(lat, lng, now)

        self.prediction_cache.set(lat, lng, prediction, snapshot.version)
        return prediction

    def _predict_uncached(self, lat: float, lng: float, now: datetime, regressor: SafetyRegressor) -> Prediction:
        if not regressor.is_trained:
            return self._heuristic(lat, lng, now)

        nearby = self._coerce(self.store.find_nearby(lat, lng, NEARBY_RADIUS_KM))
        if not nearby:
            return self._heuristic(lat, lng, now)

        hood = scoring.summarize(nearby, now)
        features = scoring.build_feature_vector(lat, lng, now, hood)
        raw = float(regressor.predict([features])[0])
        if not math.isfinite(raw):
            raise ValueError(f"model returned {raw}")

        return Prediction(
            score=scoring.adjust_score(raw, now.hour, hood),
            confidence=scoring.confidence(hood),
        )

    def _heuristic(self, lat: float, lng: float, now: datetime) -> Prediction:
        return Prediction(
            score=scoring.heuristic_score(lat, lng, now.hour, self.rng),
            confidence=scoring.HEURISTIC_CONFIDENCE,
        )

    def cleanup_cache(self) -> int:
        return self.prediction_cache.evict_expired()

    # ─────────────────────────── Training ────────────────────────────

    def schedule_training(self, reason: str = ""):
        """Queue a training trigger and make sure a pass will pick it up."""
        try:
            self._training_queue.put_nowait(time.time())
        except queue.Full:
            logger.debug("Training queue full, trigger folded into the pending pass")
        # Predictions made from here on are recomputed
        self.prediction_cache.clear()
        logger.info(f"Training scheduled{f' ({reason})' if reason else ''}, "
                    f"queue={self._training_queue.qsize()}")
        if not self._training_lock.locked():
            self._submit_processing()

    def _submit_processing(self):
        if self._closed:
            return
        try:
            self._executor.submit(self.process_training_queue)
        except RuntimeError:
            logger.info("Training executor is shut down, trigger left queued")

    def _drain_queue(self) -> int:
        drained = 0
        while True:
            try:
                self._training_queue.get_nowait()
            except queue.Empty:
                return drained
            drained += 1

    def process_training_queue(self):
        """Run one training pass for every trigger queued so far."""
        if not self._training_lock.acquire(blocking=False):
            return
        try:
            drained = self._drain_queue()
            if not drained:
                return
            self.state = ServiceState.TRAINING
            logger.info(f"Training pass started ({drained} triggers)")

            trained = False
            try:
                trained = self.train_model()
            except Exception:
                logger.exception("Training failed, keeping previous model")

            if trained:
                try:
                    self.save_model()
                except Exception:
                    logger.exception("Save failed, continuing with hotspots")

            try:
                self.identify_hotspots()
            except Exception:
                logger.exception("Hotspot identification failed")
        finally:
            self.state = ServiceState.READY
            self._training_lock.release()

        if not self._training_queue.empty() and not self._closed:
            timer = threading.Timer(self.retrain_delay, self._submit_processing)
            timer.daemon = True
            timer.start()

    def train_model(self) -> bool:
        """Fit a new model on the newest reports. False when data is insufficient."""
        reports = self._coerce(self.store.find_recent(TRAINING_SAMPLE_LIMIT))
        if len(reports) < MIN_TRAINING_REPORTS:
            logger.info(f"Not enough data for training ({len(reports)} reports)")
            return False

        now = self.clock()
        X, y = scoring.build_training_set(reports, now)
        if len(X) < MIN_TRAINING_REPORTS:
            logger.info(f"Not enough usable samples for training ({len(X)})")
            return False

        logger.info(f"Starting model training with {len(X)} samples")
        regressor = SafetyRegressor()
        loss = regressor.fit(X, y, epochs=self.training_epochs, seed=self.training_seed)

        self._snapshot = ModelSnapshot(regressor, self._snapshot.version + 1)
        self.model_loss = loss
        self.last_trained_at = now
        self.last_sample_size = len(X)
        logger.info(f"Model training completed - Loss: {loss:.4f} (version {self.model_version})")
        return True

    # ─────────────────────────── Hotspots ────────────────────────────

    def identify_hotspots(self) -> list[Hotspot]:
        """Recompute the hotspot set from the newest reports and swap it in."""
        reports = self._coerce(self.store.find_recent(HOTSPOT_SAMPLE_LIMIT))
        if not reports:
            self.predicted_hotspots = ()
            return []

        lats = np.array([r.location.lat for r in reports])
        lngs = np.array([r.location.lng for r in reports])

        candidates: list[Hotspot] = []
        seen: set[tuple[float, float]] = set()
        for r in reports:
            lat, lng = r.location.lat, r.location.lng
            key = (round(lat, 3), round(lng, 3))
            if key in seen:
                continue
            seen.add(key)

            count = int((distances_km(lat, lng, lats, lngs) <= HOTSPOT_RADIUS_KM).sum())
            if count < HOTSPOT_MIN_NEIGHBORS:
                continue

            prediction = self.predict_safety(lat, lng)
            candidates.append(Hotspot(
                location=Location(lat=lat, lng=lng),
                safetyScore=prediction.score,
                confidence=prediction.confidence,
                category=categorize(prediction.score),
                reportCount=count,
            ))

        by_score = sorted(candidates, key=lambda h: h.safetyScore, reverse=True)
        safest = by_score[:HOTSPOT_TOP_N]
        unsafest = by_score[-HOTSPOT_TOP_N:][::-1]
        most_active = sorted(candidates, key=lambda h: h.reportCount, reverse=True)[:HOTSPOT_TOP_N]

        unique: list[Hotspot] = []
        seen_keys: set[tuple[float, float]] = set()
        for h in safest + unsafest + most_active:
            key = (round(h.location.lat, 5), round(h.location.lng, 5))
            if key not in seen_keys:
                seen_keys.add(key)
                unique.append(h)

        self.predicted_hotspots = tuple(unique)
        logger.info(f"Identified {len(unique)} safety hotspots within {HOTSPOT_RADIUS_KM:g}km radius")
        return unique

    def get_nearby_hotspots(self, lat: float, lng: float, radius_km: float = HOTSPOT_RADIUS_KM) -> HotspotSummary:
        hotspots = self.predicted_hotspots
        if not hotspots:
            self.identify_hotspots()
            hotspots = self.predicted_hotspots

        nearby = [
            h for h in hotspots
            if distance_km(lat, lng, h.location.lat, h.location.lng) <= radius_km
        ]
        return HotspotSummary(
            hotspots=nearby,
            totalCount=len(nearby),
            safeCount=sum(1 for h in nearby if h.category == "safe"),
            unsafeCount=sum(1 for h in nearby if h.category == "unsafe"),
            moderateCount=sum(1 for h in nearby if h.category == "moderate"),
        )

    # ─────────────────────────── Status ──────────────────────────────

    def get_status(self) -> ModelStatus:
        return ModelStatus(
            state=self.state.value,
            isReady=self.state in (ServiceState.READY, ServiceState.TRAINING),
            isTraining=self.is_training,
            queueLength=self._training_queue.qsize(),
            cacheSize=len(self.prediction_cache),
            modelVersion=self.model_version,
            modelLoss=self.model_loss,
            sampleSize=self.last_sample_size,
            predictedHotspots=list(self.predicted_hotspots[:STATUS_HOTSPOT_PREVIEW]),
            lastTrainedAt=self.last_trained_at.isoformat() if self.last_trained_at else None,
        )

    # ─────────────────────────── Helpers ─────────────────────────────

    @staticmethod
    def _coerce(raw: Iterable) -> list[SafetyReport]:
        """Validate store output; malformed records are dropped one by one."""
        reports = []
        skipped = 0
        for item in raw or []:
            if isinstance(item, SafetyReport):
                reports.append(item)
                continue
            try:
                reports.append(SafetyReport.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning(f"Skipped {skipped} malformed reports from the store")
        return reports
