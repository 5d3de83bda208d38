"""SafePath Backend — Route scoring & report intake

Async orchestration over the (blocking) model service and report store.
Every per-midpoint call degrades on its own, so a route query always answers
with ROUTE_CANDIDATES legs.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from broadcaster import SafetyBroadcaster
from config import (
    INFERENCE_TIMEOUT_SECONDS, INFERENCE_WORKERS, NEUTRAL_SCORE, ROUTE_BASE_DISTANCE_KM,
    ROUTE_CANDIDATES, ROUTE_INCIDENT_RADIUS_KM, ROUTE_MIDPOINTS, SERIOUS_TYPES, UNSAFE_TYPES,
)
from geo import candidate_points, curved_midpoints
from models import Location, ModelStatus, ReportSubmission, RouteRecord, SafetyReport
from report_store import ReportStore
from safety_service import SafetyModelService

logger = logging.getLogger("safepath.routes")

SAFETY_UPDATE_EVENT = "safetyUpdate"
RETRAIN_SEVERITY = 4


class ReportValidationError(ValueError):
    """A submission is missing required fields. Nothing was stored."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SafetyController:
    def __init__(
        self,
        service: SafetyModelService,
        store: ReportStore,
        broadcaster: SafetyBroadcaster,
        *,
        inference_timeout: float = INFERENCE_TIMEOUT_SECONDS,
        rng: Optional[np.random.Generator] = None,
        clock: Callable[[], datetime] = _utcnow,
        inference_workers: int = INFERENCE_WORKERS,
    ):
        self.service = service
        self.store = store
        self.broadcaster = broadcaster
        self.inference_timeout = inference_timeout
        self.rng = rng if rng is not None else np.random.default_rng()
        self.clock = clock
        # Hung predictions can only exhaust this pool, never the loop's default executor
        self._inference_pool = ThreadPoolExecutor(
            max_workers=inference_workers, thread_name_prefix="safety-inference",
        )

    def close(self):
        self._inference_pool.shutdown(wait=False, cancel_futures=True)

    # ─────────────────────────── Routes ──────────────────────────────

    async def score_routes(self, origin: Location, force: bool = False) -> list[RouteRecord]:
        logger.info(f"Scoring routes from ({origin.lat:.5f}, {origin.lng:.5f}) force={force}")
        endpoints = candidate_points(
            origin.lat, origin.lng,
            count=ROUTE_CANDIDATES, base_distance_km=ROUTE_BASE_DISTANCE_KM, rng=self.rng,
        )
        return list(await asyncio.gather(
            *(self._score_leg(origin, lat, lng, force) for lat, lng in endpoints)
        ))

    async def _score_leg(self, origin: Location, end_lat: float, end_lng: float, force: bool) -> RouteRecord:
        midpoints = curved_midpoints(origin.lat, origin.lng, end_lat, end_lng, ROUTE_MIDPOINTS)
        scores, incidents = await asyncio.gather(
            asyncio.gather(*(self._midpoint_score(lat, lng, force) for lat, lng in midpoints)),
            asyncio.gather(*(self._midpoint_incidents(lat, lng) for lat, lng in midpoints)),
        )
        return RouteRecord(
            start=origin,
            end=Location(lat=end_lat, lng=end_lng),
            safetyScore=max(0.0, min(1.0, sum(scores) / len(scores))),
            incidentCount=sum(incidents),
        )

    async def _midpoint_score(self, lat: float, lng: float, force: bool) -> float:
        loop = asyncio.get_running_loop()
        try:
            prediction = await asyncio.wait_for(
                loop.run_in_executor(self._inference_pool, self.service.predict_safety, lat, lng, not force),
                timeout=self.inference_timeout,
            )
            return prediction.score
        except asyncio.TimeoutError:
            logger.warning(f"Prediction timed out for ({lat:.5f}, {lng:.5f})")
        except Exception as e:
            logger.warning(f"Prediction failed for ({lat:.5f}, {lng:.5f}): {e}")
        return NEUTRAL_SCORE

    async def _midpoint_incidents(self, lat: float, lng: float) -> int:
        try:
            nearby = await asyncio.wait_for(
                asyncio.to_thread(self.store.find_nearby, lat, lng, ROUTE_INCIDENT_RADIUS_KM),
                timeout=self.inference_timeout,
            )
            return sum(1 for r in nearby or [] if getattr(r, "type", None) in UNSAFE_TYPES)
        except asyncio.TimeoutError:
            logger.warning(f"Incident lookup timed out for ({lat:.5f}, {lng:.5f})")
        except Exception as e:
            logger.warning(f"Incident lookup failed for ({lat:.5f}, {lng:.5f}): {e}")
        return 0

    # ─────────────────────────── Reports ─────────────────────────────

    async def find_reports(self, origin: Location, radius_km: float = 1.0) -> list[SafetyReport]:
        return await asyncio.to_thread(self.store.find_nearby, origin.lat, origin.lng, radius_km)

    async def submit_report(self, submission: ReportSubmission) -> SafetyReport:
        if submission.location is None or not (submission.description or "").strip():
            raise ReportValidationError("Missing required fields")

        report = SafetyReport(
            location=submission.location,
            type=submission.type,
            severity=submission.severity or 3,
            description=submission.description,
            timestamp=self.clock(),
        )
        saved = await asyncio.to_thread(self.store.save, report)
        logger.info(f"Report {saved.id} submitted: {saved.type}/{saved.severity} "
                    f"at ({saved.location.lat:.4f}, {saved.location.lng:.4f})")

        self.broadcaster.publish(SAFETY_UPDATE_EVENT, saved.model_dump(mode="json"))

        if saved.severity >= RETRAIN_SEVERITY or saved.type in SERIOUS_TYPES:
            self.service.schedule_training(reason=f"report {saved.id}")
        return saved

    # ─────────────────────────── Status ──────────────────────────────

    def model_status(self) -> ModelStatus:
        status = self.service.get_status()
        if status.isReady and self.service.model.is_trained:
            influence = "Model is actively predicting safety scores and identifying hotspots"
        else:
            influence = "Using heuristic predictions until model is trained"
        return status.model_copy(update={"modelInfluence": influence})
