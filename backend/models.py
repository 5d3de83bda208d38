"""SafePath Backend — Pydantic Models"""

from datetime import datetime, timezone
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

ReportType = Literal["unsafe", "incident", "suspicious", "safe"]
HotspotCategory = Literal["safe", "moderate", "unsafe"]


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class SafetyReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    location: Location
    type: ReportType
    severity: int = Field(default=3, ge=1, le=5)
    description: str = ""
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        # Naive timestamps are stored as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ReportSubmission(BaseModel):
    """Body of POST /api/safety/report. Required fields are checked by the controller."""
    location: Optional[Location] = None
    description: Optional[str] = None
    type: ReportType
    severity: Optional[int] = Field(default=None, ge=1, le=5)


class ReportSubmitResponse(BaseModel):
    success: bool
    report: SafetyReport


class Prediction(BaseModel):
    score: float
    confidence: float


class Hotspot(BaseModel):
    location: Location
    safetyScore: float
    confidence: float
    category: HotspotCategory
    reportCount: int


class HotspotSummary(BaseModel):
    hotspots: list[Hotspot]
    totalCount: int
    safeCount: int
    unsafeCount: int
    moderateCount: int


class RouteRecord(BaseModel):
    start: Location
    end: Location
    safetyScore: float = Field(ge=0, le=1)
    incidentCount: int


class ModelStatus(BaseModel):
    state: str
    isReady: bool
    isTraining: bool
    queueLength: int
    cacheSize: int
    modelVersion: int
    modelLoss: float | None = None
    sampleSize: int = 0
    predictedHotspots: list[Hotspot] = []
    lastTrainedAt: str | None = None
    modelInfluence: str = ""
