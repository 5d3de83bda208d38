"""SafePath Backend — Safety Scoring Logic

Feature engineering, training labels, the heuristic fallback score and the
post-inference adjustments. Shared by inference (safety_service) and
training so both sides build identical feature vectors.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime

import numpy as np

from config import FEATURE_NAMES, NEARBY_RADIUS_KM, SERIOUS_TYPES, UNSAFE_TYPES
from geo import distances_km
from models import SafetyReport

logger = logging.getLogger("safepath.scoring")

MIN_SCORE = 0.1
MAX_SCORE = 0.9
NIGHT_PENALTY = 0.1
RECENT_INCIDENT_PENALTY = 0.05
HEURISTIC_CONFIDENCE = 0.5
RECENCY_WINDOW_DAYS = 30.0
FULL_COVERAGE_REPORTS = 10


def clamp_score(score: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, score))


def is_night(hour: int) -> bool:
    """Night runs 22:00 through 05:59."""
    return hour >= 22 or hour <= 5


def age_days(ts: datetime, now: datetime) -> float:
    return max(0.0, (now - ts).total_seconds() / 86400)


def local_time(ts: datetime, now: datetime) -> datetime:
    """Express a report timestamp in the clock's timezone."""
    return ts.astimezone(now.tzinfo) if now.tzinfo is not None else ts


@dataclass(frozen=True)
class Neighborhood:
    """Aggregates over the reports near a point."""
    count: int
    avg_severity: float
    avg_age_days: float
    unsafe_ratio: float
    recent_serious: int  # unsafe/incident reports in the last 24h


def summarize(reports: list[SafetyReport], now: datetime) -> Neighborhood:
    if not reports:
        return Neighborhood(0, 0.0, 0.0, 0.0, 0)
    n = len(reports)
    ages = [age_days(r.timestamp, now) for r in reports]
    return Neighborhood(
        count=n,
        avg_severity=sum(r.severity for r in reports) / n,
        avg_age_days=sum(ages) / n,
        unsafe_ratio=sum(1 for r in reports if r.type in UNSAFE_TYPES) / n,
        recent_serious=sum(
            1 for r, a in zip(reports, ages) if a < 1.0 and r.type in SERIOUS_TYPES
        ),
    )


def build_feature_vector(lat: float, lng: float, when: datetime, hood: Neighborhood) -> list[float]:
    # Order MUST match config.FEATURE_NAMES
    return [
        lat / 90,
        lng / 180,
        when.hour / 24,
        when.weekday() / 7,
        min(1.0, hood.count / FULL_COVERAGE_REPORTS),
        hood.avg_severity / 5,
        min(1.0, hood.avg_age_days / RECENCY_WINDOW_DAYS),
        hood.unsafe_ratio,
    ]


def confidence(hood: Neighborhood) -> float:
    """More nearby data and fresher data mean higher confidence (0..1)."""
    coverage = min(1.0, hood.count / FULL_COVERAGE_REPORTS)
    recency = max(0.5, 1 - hood.avg_age_days / RECENCY_WINDOW_DAYS)
    return max(0.0, min(1.0, coverage * 0.7 + recency * 0.3))


def adjust_score(raw: float, hour: int, hood: Neighborhood) -> float:
    """Apply the night and recent-incident penalties to a model output."""
    score = raw
    if is_night(hour):
        score -= NIGHT_PENALTY
    score -= RECENT_INCIDENT_PENALTY * hood.recent_serious
    return clamp_score(score)


def heuristic_score(lat: float, lng: float, hour: int, rng: np.random.Generator) -> float:
    """Fallback score when the model cannot be used.

    Time-of-day base, a bounded spatial wobble so neighbouring points differ
    smoothly, and ±0.05 of jitter.
    """
    if is_night(hour):
        base = 0.5
    elif hour >= 18:
        base = 0.6
    elif hour < 8:
        base = 0.65
    else:
        base = 0.7
    location_factor = math.sin(lat * 10) * 0.1 + math.cos(lng * 10) * 0.1
    jitter = rng.random() * 0.1 - 0.05
    return clamp_score(base + location_factor + jitter)


def report_label(report: SafetyReport, unsafe_ratio: float, now: datetime) -> float:
    """Target safety score for one report, before the model sees it."""
    severity = report.severity
    if report.type in SERIOUS_TYPES:
        label = max(0.1, 0.5 - severity / 10 - unsafe_ratio / 5)
    elif report.type == "safe":
        label = min(0.9, 0.8 + severity / 50 - unsafe_ratio / 5)
    elif report.type == "suspicious":
        label = max(0.2, 0.5 - severity / 20 - unsafe_ratio / 10)
    else:
        label = 0.5

    label *= max(0.5, 1 - age_days(report.timestamp, now) / RECENCY_WINDOW_DAYS)

    if is_night(local_time(report.timestamp, now).hour):
        label -= NIGHT_PENALTY
    return clamp_score(label)


def build_training_set(reports: list[SafetyReport], now: datetime) -> tuple[np.ndarray, np.ndarray]:
    """Feature matrix and labels, one row per report.

    Neighbourhoods are computed within the batch itself. A report that fails
    to featurize is skipped, the rest of the batch still trains.
    """
    lats = np.array([r.location.lat for r in reports], dtype=np.float64)
    lngs = np.array([r.location.lng for r in reports], dtype=np.float64)

    X_rows = []
    y_rows = []
    skipped = 0
    for r in reports:
        try:
            mask = distances_km(r.location.lat, r.location.lng, lats, lngs) <= NEARBY_RADIUS_KM
            nearby = [reports[i] for i in np.flatnonzero(mask)]
            hood = summarize(nearby, now)
            when = local_time(r.timestamp, now)
            features = build_feature_vector(r.location.lat, r.location.lng, when, hood)
            label = report_label(r, hood.unsafe_ratio, now)
        except (TypeError, ValueError, AttributeError) as e:
            skipped += 1
            logger.debug(f"Skipping report {getattr(r, 'id', '?')}: {e}")
            continue
        X_rows.append(features)
        y_rows.append(label)

    if skipped:
        logger.warning(f"Skipped {skipped} malformed reports while building training set")

    X = np.array(X_rows, dtype=np.float32).reshape(-1, len(FEATURE_NAMES))
    return X, np.array(y_rows, dtype=np.float32)
