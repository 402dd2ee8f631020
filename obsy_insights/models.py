"""
models.py - Request, record and error types shared across the pipeline.

The request body is one tagged shape: `type` is the discriminator and
`data` carries the per-type fields. Which fields are required for a given
type is decided in pipeline validation, not here, so a missing field is
reported with stage `validation` instead of a framework error.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class InsightType(str, Enum):
    CAPTURE = "capture"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTH = "month"
    ALBUM = "album"
    TAG = "tag"


class Stage(str, Enum):
    """Failure taxonomy. Each stage has exactly one HTTP status."""

    CONFIG = "config"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    PARSE = "parse"
    VALIDATION = "validation"
    GEMINI_API = "gemini_api"
    RESPONSE_VALIDATION = "response_validation"
    UNKNOWN = "unknown"


STAGE_STATUS = {
    Stage.CONFIG: 500,
    Stage.AUTH: 401,
    Stage.RATE_LIMIT: 429,
    Stage.PARSE: 400,
    Stage.VALIDATION: 400,
    Stage.GEMINI_API: 502,
    Stage.RESPONSE_VALIDATION: 500,
    Stage.UNKNOWN: 500,
}


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_calendar_date(value: str) -> Optional[date]:
    """Parse an explicit `YYYY-MM-DD` day; anything else is None."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        return None


class CaptureRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mood: Optional[str] = None
    capturedAt: Optional[str] = None
    note: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    timeBucket: Optional[str] = None
    dayPart: Optional[str] = None
    localTimeLabel: Optional[str] = None
    obsyNote: Optional[str] = None
    date: Optional[str] = None

    @property
    def captured_at(self) -> Optional[datetime]:
        return parse_timestamp(self.capturedAt) if self.capturedAt else None

    @property
    def calendar_day(self):
        """The explicit `date` as a datetime.date, or None when absent or malformed."""
        return parse_calendar_date(self.date) if self.date else None


class AlbumEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_name: Optional[str] = None
    mood: Optional[str] = None
    description: Optional[str] = None
    time: Optional[str] = None


class MonthSignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dominantMood: str = "neutral"
    runnerUpMood: Optional[str] = None
    activeDays: int = 0
    volatilityScore: float = 0.0
    last7DaysShift: str = "steady"


class InsightData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    captures: Optional[List[CaptureRecord]] = None
    dateLabel: Optional[str] = None
    weekLabel: Optional[str] = None
    monthLabel: Optional[str] = None
    tag: Optional[str] = None
    albumContext: Optional[List[AlbumEntry]] = None
    signals: Optional[MonthSignals] = None
    timezone: Optional[str] = None


class InsightRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: InsightType
    data: InsightData = Field(default_factory=InsightData)
    tone: str = "neutral"
    customTonePrompt: Optional[str] = None


class ObservedPatternsRequest(BaseModel):
    """Body of /generate-observed-patterns: the whole eligible archive, not one period."""

    model_config = ConfigDict(extra="ignore")

    captures: Optional[List[CaptureRecord]] = None
    previousPatternText: Optional[str] = None
    generationNumber: int = Field(default=1, ge=1)
    eligibleCount: Optional[int] = Field(default=None, ge=0)
    timezone: Optional[str] = None


class ToneDefinition(BaseModel):
    id: str
    label: str
    style_guide: str
    is_preset: bool = True


class QuotaRecord(BaseModel):
    user_id: str
    tier: str
    count_today: int
    limit: Optional[int] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.count_today, 0)


class PipelineError(BaseModel):
    """A terminal stage failure, carried as a value until the envelope is built."""

    stage: Stage
    message: str
    status: int
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def at(cls, stage: Stage, message: str, **extra: Any) -> "PipelineError":
        return cls(stage=stage, message=message, status=STAGE_STATUS[stage], extra=extra)

    def to_payload(self) -> Dict[str, Any]:
        payload = {"stage": self.stage.value, "message": self.message, "status": self.status}
        payload.update(self.extra)
        return payload
