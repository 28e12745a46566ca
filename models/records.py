"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class RiskLevel(str, Enum):
    """Ordinal risk classes, declared from least to most severe."""

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def at_least(self, other: "RiskLevel") -> bool:
        return self.rank >= other.rank


_LEVEL_ORDER = list(RiskLevel)


@dataclass(frozen=True, slots=True)
class SensorReading:
    """One timestamped observation of the seven slope-stability features for a mine."""

    mine_id: str
    timestamp: datetime
    displacement_mm: float = 0.0
    strain_microstrain: float = 0.0
    pore_pressure_kpa: float = 0.0
    rainfall_mm: float = 0.0
    temperature_c: float = 0.0
    slope_deg: float = 0.0
    crack_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SensorReading":
        data = dict(payload)
        data["timestamp"] = datetime.fromisoformat(data["timestamp"])
        return cls(**data)


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """Derived risk probability and level for one reading."""

    mine_id: str
    probability: float
    level: RiskLevel
    computed_at: datetime


@dataclass(frozen=True, slots=True)
class AlertRequest:
    """Everything the dispatcher needs to notify one recipient about one assessment."""

    mine_id: str
    mine_name: str
    location: str
    recipient_email: str
    probability: float
    level: RiskLevel
    detail: Optional[str] = None
