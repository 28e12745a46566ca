from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple


_LOG_LEVEL_ENV = "LOG_LEVEL"
_APP_NAME_ENV = "APP_NAME"
_STORE_PATH_ENV = "FEATURE_STORE_PATH"
_ALERT_LOG_PATH_ENV = "ALERT_LOG_PATH"
_WORKER_COUNT_ENV = "PIPELINE_WORKER_COUNT"
_CRITICAL_ENV = "RISK_THRESHOLD_CRITICAL"
_HIGH_ENV = "RISK_THRESHOLD_HIGH"
_MEDIUM_ENV = "RISK_THRESHOLD_MEDIUM"
_ALERTS_ENABLED_ENV = "ALERTS_ENABLED"
_ALERT_MIN_LEVEL_ENV = "ALERT_MIN_LEVEL"
_ALERT_BACKENDS_ENV = "ALERT_BACKENDS"
_ALERT_TIMEOUT_ENV = "ALERT_BACKEND_TIMEOUT"
_SMTP_HOST_ENV = "SMTP_HOST"
_SMTP_PORT_ENV = "SMTP_PORT"
_SMTP_USER_ENV = "SMTP_USER"
_SMTP_PASS_ENV = "SMTP_PASS"
_SMTP_FROM_ENV = "SMTP_FROM"
_RELAY_URL_ENV = "EMAIL_RELAY_URL"
_RELAY_TOKEN_ENV = "EMAIL_RELAY_TOKEN"
_OUTBOX_DIR_ENV = "ALERT_OUTBOX_DIR"

_KNOWN_LEVELS = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class Settings:
    app_name: str
    log_level: str
    feature_store_path: Optional[str]
    alert_log_path: Optional[str]
    pipeline_workers: int
    threshold_critical: float
    threshold_high: float
    threshold_medium: float
    alerts_enabled: bool
    alert_min_level: str
    alert_backends: Tuple[str, ...]
    alert_backend_timeout: float
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    smtp_from: str
    relay_url: Optional[str]
    relay_token: Optional[str]
    outbox_dir: Optional[str]


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_positive_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _read_float(name: str, default: float, minimum: float = 0.0, maximum: Optional[float] = None) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if parsed < minimum or (maximum is not None and parsed > maximum):
        return default
    return parsed


def _read_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip().lower()
    if candidate in {"1", "true", "yes", "on"}:
        return True
    if candidate in {"0", "false", "no", "off"}:
        return False
    return default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


def _read_min_level(default: str) -> str:
    candidate = _read_str_env(_ALERT_MIN_LEVEL_ENV, default).lower()
    return candidate if candidate in _KNOWN_LEVELS else default


def _read_backends(default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(_ALERT_BACKENDS_ENV)
    if value is None:
        return default
    names = tuple(part.strip().lower() for part in value.split(",") if part.strip())
    return names or default


@lru_cache
def get_settings() -> Settings:
    smtp_user = _read_str_env(_SMTP_USER_ENV, "")
    return Settings(
        app_name=_read_str_env(_APP_NAME_ENV, "Mine Risk Alerts"),
        log_level=_read_log_level("INFO"),
        feature_store_path=_read_optional_env(_STORE_PATH_ENV, "./tmp/feature_store.json"),
        alert_log_path=_read_optional_env(_ALERT_LOG_PATH_ENV, "./tmp/alert_log.json"),
        pipeline_workers=_read_positive_int(_WORKER_COUNT_ENV, 2),
        threshold_critical=_read_float(_CRITICAL_ENV, 0.8, maximum=1.0),
        threshold_high=_read_float(_HIGH_ENV, 0.6, maximum=1.0),
        threshold_medium=_read_float(_MEDIUM_ENV, 0.4, maximum=1.0),
        alerts_enabled=_read_bool(_ALERTS_ENABLED_ENV, True),
        alert_min_level=_read_min_level("low"),
        alert_backends=_read_backends(("smtp", "http", "outbox")),
        alert_backend_timeout=_read_float(_ALERT_TIMEOUT_ENV, 15.0, minimum=0.1),
        smtp_host=_read_str_env(_SMTP_HOST_ENV, "smtp.gmail.com"),
        smtp_port=_read_positive_int(_SMTP_PORT_ENV, 587),
        smtp_user=smtp_user,
        smtp_password=_read_str_env(_SMTP_PASS_ENV, ""),
        smtp_from=_read_str_env(_SMTP_FROM_ENV, smtp_user),
        relay_url=_read_optional_env(_RELAY_URL_ENV, None),
        relay_token=_read_optional_env(_RELAY_TOKEN_ENV, None),
        outbox_dir=_read_optional_env(_OUTBOX_DIR_ENV, "./tmp/outbox"),
    )
