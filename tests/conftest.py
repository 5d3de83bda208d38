"""Shared fixtures: a fixed clock, seeded RNGs, an inline training executor."""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from models import Location, SafetyReport
from report_store import InMemoryReportStore
from safety_service import SafetyModelService

NOON = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
MIDNIGHT = datetime(2026, 10, 19, 23, 30, tzinfo=timezone.utc)

# Central Bengaluru
ORIGIN_LAT = 12.9716
ORIGIN_LNG = 77.5946


class InlineExecutor:
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fn(*args, **kwargs)


class RecordingExecutor:
    """Accepts work and never runs it."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append(fn)


def make_report(
    lat: float = ORIGIN_LAT,
    lng: float = ORIGIN_LNG,
    type: str = "unsafe",
    severity: int = 3,
    age: timedelta = timedelta(minutes=5),
    now: datetime = NOON,
    id: str = "",
) -> SafetyReport:
    return SafetyReport(
        id=id,
        location=Location(lat=lat, lng=lng),
        type=type,
        severity=severity,
        description=f"{type} observation",
        timestamp=now - age,
    )


def cluster(n: int, type: str = "safe", severity: int = 1, spread_deg: float = 0.001,
            lat: float = ORIGIN_LAT, lng: float = ORIGIN_LNG) -> list[SafetyReport]:
    """n reports packed within ~150 m of (lat, lng)."""
    rng = np.random.default_rng(7)
    return [
        make_report(
            lat=lat + rng.uniform(-spread_deg, spread_deg),
            lng=lng + rng.uniform(-spread_deg, spread_deg),
            type=type,
            severity=severity,
            age=timedelta(minutes=i + 1),
            id=f"r{i}",
        )
        for i in range(n)
    ]


@pytest.fixture
def store():
    return InMemoryReportStore()


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def make_service(tmp_path, inline_executor):
    created = []

    def _make(store, clock=lambda: NOON, **kwargs):
        kwargs.setdefault("model_dir", tmp_path / "safety-model")
        kwargs.setdefault("training_executor", inline_executor)
        kwargs.setdefault("rng", np.random.default_rng(0))
        kwargs.setdefault("training_seed", 42)
        service = SafetyModelService(store, clock=clock, **kwargs)
        created.append(service)
        return service

    yield _make
    for service in created:
        service.close()


@pytest.fixture
def service(store, make_service):
    return make_service(store)
