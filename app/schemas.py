"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from models.records import RiskAssessment, RiskLevel, SensorReading


class ImportStatus(str, Enum):
    """Import job lifecycle states exposed via the API."""

    uploaded = "uploaded"
    processing = "processing"
    processed = "processed"
    partial = "partial"
    failed = "failed"


class ReadingIn(BaseModel):
    """Sensor features submitted for scoring. Omitted features count as zero."""

    mine_id: str = Field(..., min_length=1)
    timestamp: Optional[datetime] = None
    displacement_mm: float = 0.0
    strain_microstrain: float = 0.0
    pore_pressure_kpa: float = 0.0
    rainfall_mm: float = 0.0
    temperature_c: float = 0.0
    slope_deg: float = 0.0
    crack_score: float = 0.0


class ReadingOut(BaseModel):
    mine_id: str
    timestamp: datetime
    displacement_mm: float
    strain_microstrain: float
    pore_pressure_kpa: float
    rainfall_mm: float
    temperature_c: float
    slope_deg: float
    crack_score: float

    @classmethod
    def from_reading(cls, reading: SensorReading) -> "ReadingOut":
        return cls(**reading.to_dict())


class AssessmentOut(BaseModel):
    mine_id: str
    probability: float = Field(..., ge=0.0, le=1.0)
    level: RiskLevel
    computed_at: datetime

    @classmethod
    def from_assessment(cls, assessment: RiskAssessment) -> "AssessmentOut":
        return cls(
            mine_id=assessment.mine_id,
            probability=assessment.probability,
            level=assessment.level,
            computed_at=assessment.computed_at,
        )


class PredictionIn(BaseModel):
    reading: ReadingIn
    mine_name: str = Field(..., min_length=1)
    location: str = ""
    recipient_email: EmailStr


class AttemptOut(BaseModel):
    channel: str
    success: bool
    error: Optional[str] = None


class NotificationOut(BaseModel):
    """Outcome of the best-effort alert, independent of the assessment."""

    delivered: bool
    channel_used: Optional[str] = None
    attempts: List[AttemptOut] = Field(default_factory=list)
    skipped_reason: Optional[str] = None


class PredictionOut(BaseModel):
    assessment: AssessmentOut
    notification: NotificationOut


class LatestOut(BaseModel):
    reading: ReadingOut
    assessment: AssessmentOut
    contributions: Dict[str, float] = Field(
        default_factory=dict, description="Weighted term per feature; the terms sum to the probability."
    )


class ThresholdsOut(BaseModel):
    critical: float
    high: float
    medium: float


class ThresholdsIn(BaseModel):
    """Replacement classification table; validated as a whole by the pipeline."""

    critical: float
    high: float
    medium: float


class AlertConfigIn(BaseModel):
    """Partial alert policy update; omitted fields keep their current value."""

    enabled: Optional[bool] = None
    min_level: Optional[RiskLevel] = None


class AlertConfigOut(BaseModel):
    enabled: bool
    min_level: RiskLevel
    backend_timeout_seconds: float
    backends: List[str]


class SensorAlertIn(BaseModel):
    """A single sensor value checked against its configured limit."""

    mine_id: str = Field(..., min_length=1)
    mine_name: str = Field(..., min_length=1)
    location: str = ""
    sensor_type: str = Field(..., min_length=1)
    current_value: float
    threshold: float = Field(..., gt=0)
    recipient_email: EmailStr


class SensorAlertOut(BaseModel):
    mine_id: str
    sensor_type: str
    probability: float = Field(..., ge=0.0, le=1.0)
    level: RiskLevel
    notification: NotificationOut


class AssessmentRecord(BaseModel):
    """Row appended to the assessment log."""

    mine_id: str
    probability: float
    level: RiskLevel
    computed_at: datetime
    source: str = "api"


class AlertRecord(BaseModel):
    """Row appended to the alert log for every dispatch decision."""

    mine_id: str
    mine_name: str
    recipient_email: str
    probability: float
    level: RiskLevel
    delivered: bool
    channel_used: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime


class ImportUploadResponse(BaseModel):
    """Immediate response payload after accepting a CSV upload."""

    job_id: str = Field(..., description="Generated identifier for the import job.")


class RowError(BaseModel):
    """A row that was skipped or imported with defaulted values."""

    row_number: int = Field(..., ge=1)
    reason: str


class ImportJob(BaseModel):
    """Full record representing a CSV import."""

    job_id: str
    filename: str
    status: ImportStatus
    uploaded_at: datetime
    processed_at: Optional[datetime] = None
    processing_ms: Optional[int] = Field(
        default=None, description="Duration in milliseconds from start to finish."
    )
    imported_count: int = Field(default=0, ge=0)
    latest_assessments: Dict[str, AssessmentOut] = Field(default_factory=dict)
    errors: List[RowError] = Field(default_factory=list)
    warnings: List[RowError] = Field(default_factory=list)
