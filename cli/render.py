from __future__ import annotations

from typing import Any, Dict, Iterable

import typer

_LEVEL_COLORS = {
    "critical": typer.colors.RED,
    "high": typer.colors.BRIGHT_RED,
    "medium": typer.colors.YELLOW,
    "low": typer.colors.GREEN,
}


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def echo_level(level: str) -> None:
    typer.secho(f"level: {level}", fg=_LEVEL_COLORS.get(level))


def render_assessment(payload: Dict[str, Any]) -> None:
    echo_heading("Risk Assessment")
    probability = payload.get("probability")
    echo_key_values(
        [
            ("mine_id", payload.get("mine_id")),
            ("probability", f"{probability:.3f}" if isinstance(probability, float) else probability),
        ]
    )
    echo_level(str(payload.get("level")))


def render_notification(payload: Dict[str, Any]) -> None:
    echo_heading("Notification")
    echo_key_values(
        [
            ("delivered", payload.get("delivered")),
            ("channel_used", payload.get("channel_used")),
        ]
    )
    if payload.get("skipped_reason"):
        typer.echo(f"skipped: {payload['skipped_reason']}")
    for attempt in payload.get("attempts") or []:
        outcome = "ok" if attempt.get("success") else attempt.get("error")
        typer.echo(f"  - {attempt.get('channel')}: {outcome}")


def render_prediction(payload: Dict[str, Any]) -> None:
    render_assessment(payload.get("assessment") or {})
    typer.echo()
    render_notification(payload.get("notification") or {})


def render_job(payload: Dict[str, Any]) -> None:
    echo_heading("Import Job")
    echo_key_values(
        [
            ("job_id", payload.get("job_id")),
            ("filename", payload.get("filename")),
            ("status", payload.get("status")),
            ("uploaded_at", payload.get("uploaded_at")),
            ("processed_at", payload.get("processed_at")),
            ("processing_ms", payload.get("processing_ms")),
            ("imported_count", payload.get("imported_count")),
        ]
    )

    latest = payload.get("latest_assessments") or {}
    typer.echo()
    echo_heading("Latest Assessments")
    if latest:
        for mine_id, assessment in latest.items():
            typer.echo(
                f"  - {mine_id}: {assessment.get('level')} ({assessment.get('probability')})"
            )
    else:
        typer.echo("No assessments available.")

    for title, key in (("Errors", "errors"), ("Warnings", "warnings")):
        rows = payload.get(key) or []
        typer.echo()
        echo_heading(title)
        if rows:
            for row in rows:
                typer.echo(f"  - row {row.get('row_number')}: {row.get('reason')}")
        else:
            typer.echo(f"No {key} recorded.")
