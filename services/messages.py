"""Rendering of alert email subjects and bodies."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from models.records import AlertRequest, RiskLevel
from services.scorer import recommended_actions

_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_LEVEL_COLORS = {
    RiskLevel.critical: "#dc2626",
    RiskLevel.high: "#ea580c",
    RiskLevel.medium: "#d97706",
    RiskLevel.low: "#16a34a",
}


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    html_body: str
    text_body: str


@lru_cache
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATE_DIR)),
        autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        keep_trailing_newline=True,
    )


def build_subject(request: AlertRequest) -> str:
    percentage = round(request.probability * 100)
    return f"{request.level.value.upper()} RISK: {request.mine_name} - {percentage}% rockfall risk"


def render_alert(
    request: AlertRequest,
    app_name: str = "Mine Risk Alerts",
    generated_at: Optional[datetime] = None,
) -> AlertMessage:
    """Build the subject, HTML and plain-text bodies for an alert."""
    env = _environment()
    context = {
        "app_name": app_name,
        "mine_id": request.mine_id,
        "mine_name": request.mine_name,
        "location": request.location,
        "level": request.level.value,
        "percentage": round(request.probability * 100),
        "color": _LEVEL_COLORS[request.level],
        "actions": recommended_actions(request.level),
        "detail": request.detail,
        "generated_at": (generated_at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S UTC"),
    }
    return AlertMessage(
        subject=build_subject(request),
        html_body=env.get_template("alert_email.html").render(**context),
        text_body=env.get_template("alert_email.txt").render(**context),
    )
