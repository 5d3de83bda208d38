"""SafePath Backend — Prediction cache with TTL and model-version tagging"""

import threading
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from cachetools import TTLCache

from config import CACHE_KEY_DECIMALS, CACHE_MAX_SIZE, CACHE_TTL_SECONDS
from models import Prediction

logger = logging.getLogger("safepath.cache")


@dataclass(frozen=True)
class CacheEntry:
    score: float
    confidence: float
    written_at: float
    model_version: int


def cache_key(lat: float, lng: float) -> str:
    """Quantize a coordinate to CACHE_KEY_DECIMALS places (~1 m)."""
    return f"{lat:.{CACHE_KEY_DECIMALS}f},{lng:.{CACHE_KEY_DECIMALS}f}"


class PredictionCache:
    """TTL memo of (score, confidence) per quantized coordinate.

    Entries are tagged with the model version that produced them; a lookup
    under a newer version is a miss. cachetools structures are not
    thread-safe, so every access goes through a short lock.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        max_size: int = CACHE_MAX_SIZE,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._timer = timer
        self._store: TTLCache = TTLCache(maxsize=max_size, ttl=ttl, timer=timer)
        self._lock = threading.Lock()

    def get(self, lat: float, lng: float, model_version: int) -> Optional[Prediction]:
        key = cache_key(lat, lng)
        with self._lock:
            entry: Optional[CacheEntry] = self._store.get(key)
        if entry is None:
            return None
        if entry.model_version != model_version:
            return None
        if self._timer() - entry.written_at >= self._ttl:
            return None
        return Prediction(score=entry.score, confidence=entry.confidence)

    def set(self, lat: float, lng: float, prediction: Prediction, model_version: int):
        entry = CacheEntry(
            score=prediction.score,
            confidence=prediction.confidence,
            written_at=self._timer(),
            model_version=model_version,
        )
        with self._lock:
            self._store[cache_key(lat, lng)] = entry

    def clear(self):
        with self._lock:
            n = len(self._store)
            self._store.clear()
        if n:
            logger.info(f"Prediction cache cleared ({n} entries)")

    def evict_expired(self) -> int:
        with self._lock:
            before = self._store.currsize
            self._store.expire()
            return before - self._store.currsize

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
