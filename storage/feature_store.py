from __future__ import annotations
import csv
import io
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Tuple

from models.records import SensorReading
from settings import get_settings

logger = logging.getLogger(__name__)

# Accepted header spellings for each reading attribute.
COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "displacement_mm": ("displacement_mm", "displacement"),
    "strain_microstrain": ("strain_microstrain", "strain"),
    "pore_pressure_kpa": ("pore_pressure_kpa", "pore_pressure"),
    "rainfall_mm": ("rainfall_mm", "rainfall"),
    "temperature_c": ("temperature_c", "temperature"),
    "slope_deg": ("slope_deg", "slope", "dem_slope"),
    "crack_score": ("crack_score",),
}


@dataclass(frozen=True)
class RowIssue:
    row_number: int
    reason: str


@dataclass
class ParsedReadings:
    readings: List[SensorReading]
    errors: List[RowIssue]
    warnings: List[RowIssue]


class SensorFeatureStore:
    """Per-mine reading history keyed by ``(mine_id, timestamp)``."""

    def __init__(self, name: str = "sensor_readings", persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self.persistence_path = persistence_path
        self._readings: Dict[str, Dict[datetime, SensorReading]] = {}
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def put_reading(self, reading: SensorReading) -> None:
        with self._lock:
            self._readings.setdefault(reading.mine_id, {})[reading.timestamp] = reading
            self._persist()

    def put_many(self, readings: List[SensorReading]) -> None:
        with self._lock:
            for reading in readings:
                self._readings.setdefault(reading.mine_id, {})[reading.timestamp] = reading
            self._persist()

    def latest(self, mine_id: str) -> Optional[SensorReading]:
        with self._lock:
            history = self._readings.get(mine_id)
            if not history:
                return None
            return history[max(history)]

    def history(self, mine_id: str, limit: Optional[int] = None) -> List[SensorReading]:
        with self._lock:
            history = self._readings.get(mine_id, {})
            ordered = [history[ts] for ts in sorted(history, reverse=True)]
        return ordered[:limit] if limit is not None else ordered

    def mine_ids(self) -> List[str]:
        with self._lock:
            return sorted(mine_id for mine_id, history in self._readings.items() if history)

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            mine_id: [reading.to_dict() for reading in history.values()]
            for mine_id, history in self._readings.items()
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
            for mine_id, rows in data.items():
                for row in rows:
                    reading = SensorReading.from_dict(row)
                    self._readings.setdefault(mine_id, {})[reading.timestamp] = reading
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(
                "Ignoring unreadable feature store", extra={"reason": str(self.persistence_path)}
            )
            self._readings = {}


def parse_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def _parse_number(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_readings_csv(text: str, now: Optional[datetime] = None) -> ParsedReadings:
    """Parse sensor rows; bad numeric cells default to zero and are reported as warnings.

    Raises ``ValueError`` when the header is missing or lacks a ``mine_id`` column.
    """
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV file is missing a header row.")

    normalized = {name.lower().strip(): name for name in reader.fieldnames if name}
    if "mine_id" not in normalized:
        raise ValueError("CSV missing required columns: mine_id")

    columns: Dict[str, Optional[str]] = {}
    for attribute, aliases in COLUMN_ALIASES.items():
        columns[attribute] = next(
            (normalized[alias] for alias in aliases if alias in normalized), None
        )
    mine_col = normalized["mine_id"]
    timestamp_col = normalized.get("timestamp")
    fallback_time = now or datetime.now(timezone.utc)

    result = ParsedReadings(readings=[], errors=[], warnings=[])
    for row_number, row in enumerate(reader, start=2):
        mine_id = (row.get(mine_col) or "").strip()
        if not mine_id:
            result.errors.append(RowIssue(row_number, "missing mine_id"))
            continue

        timestamp_raw = (row.get(timestamp_col) or "").strip() if timestamp_col else ""
        if timestamp_raw:
            try:
                timestamp = parse_timestamp(timestamp_raw)
            except ValueError:
                result.errors.append(RowIssue(row_number, "invalid timestamp"))
                continue
        else:
            timestamp = fallback_time

        values: Dict[str, float] = {}
        for attribute, column in columns.items():
            raw = (row.get(column) or "").strip() if column else ""
            if not raw:
                values[attribute] = 0.0
                if column:
                    result.warnings.append(RowIssue(row_number, f"missing {attribute}, using 0"))
                continue
            parsed = _parse_number(raw)
            if parsed is None:
                values[attribute] = 0.0
                result.warnings.append(RowIssue(row_number, f"invalid {attribute}, using 0"))
            else:
                values[attribute] = parsed

        result.readings.append(SensorReading(mine_id=mine_id, timestamp=timestamp, **values))

    return result


@lru_cache
def build_default_store(path: Optional[str] = None) -> SensorFeatureStore:
    settings = get_settings()
    store_path = settings.feature_store_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return SensorFeatureStore(persistence_path=persistence)
