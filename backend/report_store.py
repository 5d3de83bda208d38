"""SafePath Backend — Report Store

The engine only talks to a store through ReportStore (find_nearby,
find_recent, save). InMemoryReportStore is the default implementation; with
a path it journals every saved report as one JSON line and replays the
journal on startup.
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Iterable, Optional, Protocol

from pydantic import ValidationError

from geo import distance_km
from models import SafetyReport

logger = logging.getLogger("safepath.store")


class ReportStore(Protocol):
    def find_nearby(self, lat: float, lng: float, radius_km: float) -> list[SafetyReport]: ...

    def find_recent(self, limit: int) -> list[SafetyReport]: ...

    def save(self, report: SafetyReport) -> SafetyReport: ...


class InMemoryReportStore:
    """Thread-safe list-backed store with an optional JSON-lines journal."""

    def __init__(self, reports: Iterable[SafetyReport] = (), path: Optional[str | Path] = None):
        self._reports: list[SafetyReport] = list(reports)
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        if self._path is not None and self._path.exists():
            self._reports.extend(load_reports(self._path))

    def find_nearby(self, lat: float, lng: float, radius_km: float) -> list[SafetyReport]:
        with self._lock:
            snapshot = list(self._reports)
        return [
            r for r in snapshot
            if distance_km(lat, lng, r.location.lat, r.location.lng) <= radius_km
        ]

    def find_recent(self, limit: int) -> list[SafetyReport]:
        with self._lock:
            snapshot = list(self._reports)
        snapshot.sort(key=lambda r: r.timestamp, reverse=True)
        return snapshot[:limit]

    def save(self, report: SafetyReport) -> SafetyReport:
        if not report.id:
            report = report.model_copy(update={"id": uuid.uuid4().hex[:12]})
        with self._lock:
            self._reports.append(report)
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a") as f:
                    f.write(report.model_dump_json() + "\n")
        return report

    def __len__(self) -> int:
        with self._lock:
            return len(self._reports)


def load_reports(path: str | Path) -> list[SafetyReport]:
    """Read a JSON-lines export. Malformed lines are skipped, not fatal."""
    reports = []
    skipped = 0
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                reports.append(SafetyReport.model_validate_json(line))
            except ValidationError:
                skipped += 1
    if skipped:
        logger.warning(f"Skipped {skipped} malformed report lines in {path}")
    logger.info(f"Loaded {len(reports)} reports from {path}")
    return reports
