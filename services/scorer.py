"""Weighted risk scoring and threshold classification for sensor readings."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from models.records import RiskAssessment, RiskLevel, SensorReading

# (attribute, weight, ceiling). Weights sum to 1.0.
FEATURE_WEIGHTS: Tuple[Tuple[str, float, float], ...] = (
    ("displacement_mm", 0.25, 20.0),
    ("strain_microstrain", 0.20, 500.0),
    ("pore_pressure_kpa", 0.15, 100.0),
    ("rainfall_mm", 0.15, 100.0),
    ("temperature_c", 0.10, 50.0),
    ("slope_deg", 0.10, 90.0),
    ("crack_score", 0.05, 10.0),
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _finite(value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def score(reading: SensorReading) -> float:
    """Return the rockfall risk probability in [0, 1] for a reading."""
    total = 0.0
    for attribute, weight, ceiling in FEATURE_WEIGHTS:
        total += weight * _clamp(_finite(getattr(reading, attribute)) / ceiling)
    return _clamp(total)


def feature_contributions(reading: SensorReading) -> Dict[str, float]:
    """Per-feature weighted terms, useful for explaining a score."""
    return {
        attribute: weight * _clamp(_finite(getattr(reading, attribute)) / ceiling)
        for attribute, weight, ceiling in FEATURE_WEIGHTS
    }


def threshold_risk(current_value: float, threshold: float) -> float:
    """Risk from a single sensor exceeding its configured limit.

    At or below the limit the risk is 0; it rises linearly to 1 at 150% of the limit.
    """
    limit = _finite(threshold)
    if limit <= 0:
        return 0.0
    ratio = _finite(current_value) / limit
    return _clamp((ratio - 1.0) * 2.0)


@dataclass(frozen=True)
class RiskThresholds:
    """Lower bounds (inclusive) for each risk level above ``low``."""

    critical: float = 0.8
    high: float = 0.6
    medium: float = 0.4

    def __post_init__(self) -> None:
        if not 0.0 <= self.medium <= self.high <= self.critical <= 1.0:
            raise ValueError(
                "Risk thresholds must satisfy 0 <= medium <= high <= critical <= 1 "
                f"(got medium={self.medium}, high={self.high}, critical={self.critical})."
            )

    def as_dict(self) -> Dict[str, float]:
        return {"critical": self.critical, "high": self.high, "medium": self.medium}


DEFAULT_THRESHOLDS = RiskThresholds()


def classify(probability: float, thresholds: RiskThresholds = DEFAULT_THRESHOLDS) -> RiskLevel:
    value = _clamp(_finite(probability))
    if value >= thresholds.critical:
        return RiskLevel.critical
    if value >= thresholds.high:
        return RiskLevel.high
    if value >= thresholds.medium:
        return RiskLevel.medium
    return RiskLevel.low


def assess(
    reading: SensorReading,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    now: Optional[datetime] = None,
) -> RiskAssessment:
    probability = score(reading)
    return RiskAssessment(
        mine_id=reading.mine_id,
        probability=probability,
        level=classify(probability, thresholds),
        computed_at=now or datetime.now(timezone.utc),
    )


_RECOMMENDED_ACTIONS: Dict[RiskLevel, List[str]] = {
    RiskLevel.critical: [
        "Evacuate all personnel from high-risk areas immediately",
        "Stop all mining operations in the affected zone",
        "Alert emergency response teams and local authorities",
        "Monitor ground movement continuously",
    ],
    RiskLevel.high: [
        "Restrict access to high-risk areas",
        "Reduce mining activity in affected zones",
        "Increase monitoring frequency",
        "Prepare evacuation procedures",
        "Notify safety personnel and management",
    ],
    RiskLevel.medium: [
        "Increase monitoring of ground conditions",
        "Notify relevant personnel",
        "Review and update safety protocols",
        "Prepare contingency plans",
    ],
    RiskLevel.low: [
        "Continue normal operations with caution",
        "Maintain regular monitoring",
        "Follow standard safety protocols",
    ],
}


def recommended_actions(level: RiskLevel) -> List[str]:
    return list(_RECOMMENDED_ACTIONS[level])
