from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_assessment, render_job, render_prediction
from models.records import SensorReading
from services.scorer import assess


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Score mine sensor readings and interact with the risk alert service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for an import.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait when polling for an import.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("score")
def score_command(
    mine_id: str = typer.Option("local", "--mine-id", help="Mine identifier."),
    displacement: float = typer.Option(0.0, "--displacement", help="Displacement in mm."),
    strain: float = typer.Option(0.0, "--strain", help="Strain in microstrain."),
    pore_pressure: float = typer.Option(0.0, "--pore-pressure", help="Pore pressure in kPa."),
    rainfall: float = typer.Option(0.0, "--rainfall", help="Rainfall in mm."),
    temperature: float = typer.Option(0.0, "--temperature", help="Temperature in C."),
    slope: float = typer.Option(0.0, "--slope", help="Slope in degrees."),
    crack_score: float = typer.Option(0.0, "--crack-score", help="Crack score, 0 to 10."),
) -> None:
    """Score a reading locally without contacting the service."""
    reading = SensorReading(
        mine_id=mine_id,
        timestamp=datetime.now(timezone.utc),
        displacement_mm=displacement,
        strain_microstrain=strain,
        pore_pressure_kpa=pore_pressure,
        rainfall_mm=rainfall,
        temperature_c=temperature,
        slope_deg=slope,
        crack_score=crack_score,
    )
    assessment = assess(reading)
    render_assessment(
        {
            "mine_id": assessment.mine_id,
            "probability": assessment.probability,
            "level": assessment.level.value,
        }
    )


@app.command("import")
def import_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Path to CSV file."),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the import to finish and display the result.",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Override poll interval while waiting.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Override timeout while waiting.",
    ),
) -> None:
    """Upload a CSV of sensor readings for import."""
    state = _get_state(ctx)
    typer.echo(f"Uploading {file} to {state.config.base_url} ...")
    job_id = state.client.upload_readings(file)
    typer.secho(f"Upload accepted. job_id={job_id}", fg=typer.colors.GREEN)

    if not wait:
        return

    interval = poll_interval if poll_interval is not None else state.config.poll_interval
    poll_timeout = timeout if timeout is not None else state.config.poll_timeout
    typer.echo(f"Waiting for import (interval={interval}s, timeout={poll_timeout}s)...")
    result = state.client.poll_job(job_id, interval=interval, timeout=poll_timeout)
    typer.echo()
    render_job(result)


@app.command("job")
def job_command(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Identifier returned from the import command."),
) -> None:
    """Fetch status and results of an import job."""
    state = _get_state(ctx)
    payload = state.client.get_job(job_id)
    render_job(payload)


@app.command("predict")
def predict_command(
    ctx: typer.Context,
    mine_id: str = typer.Option(..., "--mine-id", help="Mine identifier."),
    mine_name: str = typer.Option(..., "--mine-name", help="Human-readable mine name."),
    location: str = typer.Option("", "--location", help="Mine location."),
    recipient: Optional[str] = typer.Option(
        None,
        "--to",
        help="Alert recipient email (defaults to CLI_ALERT_RECIPIENT env).",
    ),
    displacement: float = typer.Option(0.0, "--displacement"),
    strain: float = typer.Option(0.0, "--strain"),
    pore_pressure: float = typer.Option(0.0, "--pore-pressure"),
    rainfall: float = typer.Option(0.0, "--rainfall"),
    temperature: float = typer.Option(0.0, "--temperature"),
    slope: float = typer.Option(0.0, "--slope"),
    crack_score: float = typer.Option(0.0, "--crack-score"),
) -> None:
    """Score a reading on the service and send the alert."""
    state = _get_state(ctx)
    email = recipient or state.config.recipient
    if not email:
        raise typer.BadParameter("Provide --to or set CLI_ALERT_RECIPIENT.")
    payload = {
        "reading": {
            "mine_id": mine_id,
            "displacement_mm": displacement,
            "strain_microstrain": strain,
            "pore_pressure_kpa": pore_pressure,
            "rainfall_mm": rainfall,
            "temperature_c": temperature,
            "slope_deg": slope,
            "crack_score": crack_score,
        },
        "mine_name": mine_name,
        "location": location,
        "recipient_email": email,
    }
    render_prediction(state.client.predict(payload))
