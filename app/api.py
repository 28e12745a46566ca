"""HTTP route definitions for the service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, UploadFile, status

from app.schemas import (
    AlertConfigIn,
    AlertConfigOut,
    AlertRecord,
    AssessmentOut,
    AssessmentRecord,
    AttemptOut,
    ImportJob,
    ImportUploadResponse,
    LatestOut,
    NotificationOut,
    PredictionIn,
    PredictionOut,
    ReadingIn,
    ReadingOut,
    SensorAlertIn,
    SensorAlertOut,
    ThresholdsIn,
    ThresholdsOut,
)
from models.records import SensorReading
from services.dispatcher import AlertConfig, DispatchOutcome
from services.notifications import backend_names
from services.pipeline import RiskPipeline, build_default_pipeline
from services.scorer import feature_contributions

router = APIRouter()


def get_pipeline() -> RiskPipeline:
    return build_default_pipeline()


def _to_reading(payload: ReadingIn) -> SensorReading:
    timestamp = payload.timestamp or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return SensorReading(
        mine_id=payload.mine_id.strip(),
        timestamp=timestamp.astimezone(timezone.utc),
        displacement_mm=payload.displacement_mm,
        strain_microstrain=payload.strain_microstrain,
        pore_pressure_kpa=payload.pore_pressure_kpa,
        rainfall_mm=payload.rainfall_mm,
        temperature_c=payload.temperature_c,
        slope_deg=payload.slope_deg,
        crack_score=payload.crack_score,
    )


def _notification_out(outcome: DispatchOutcome) -> NotificationOut:
    return NotificationOut(
        delivered=outcome.delivered,
        channel_used=outcome.channel_used,
        attempts=[
            AttemptOut(channel=a.channel, success=a.success, error=a.error)
            for a in outcome.attempts
        ],
        skipped_reason=outcome.skipped_reason,
    )


@router.post(
    "/assessments",
    response_model=AssessmentOut,
    summary="Score a sensor reading and classify its risk level.",
)
async def create_assessment(
    payload: ReadingIn,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> AssessmentOut:
    assessment = pipeline.assess_reading(_to_reading(payload))
    return AssessmentOut.from_assessment(assessment)


@router.get(
    "/assessments",
    response_model=List[AssessmentRecord],
    summary="Recent assessment log rows, newest first.",
)
async def recent_assessments(
    limit: int = Query(50, ge=1, le=500),
    mine_id: Optional[str] = None,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> List[AssessmentRecord]:
    return pipeline.log.recent_assessments(limit=limit, mine_id=mine_id)


@router.post(
    "/predictions",
    response_model=PredictionOut,
    summary="Score a reading and notify the recipient.",
)
def create_prediction(
    payload: PredictionIn,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> PredictionOut:
    report = pipeline.predict_and_alert(
        _to_reading(payload.reading),
        mine_name=payload.mine_name,
        location=payload.location,
        recipient_email=str(payload.recipient_email),
    )
    return PredictionOut(
        assessment=AssessmentOut.from_assessment(report.assessment),
        notification=_notification_out(report.notification),
    )


@router.post(
    "/sensor-alerts",
    response_model=SensorAlertOut,
    summary="Check one sensor value against its limit and notify the recipient.",
)
def create_sensor_alert(
    payload: SensorAlertIn,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> SensorAlertOut:
    report = pipeline.sensor_alert(
        mine_id=payload.mine_id.strip(),
        mine_name=payload.mine_name,
        location=payload.location,
        sensor_type=payload.sensor_type,
        current_value=payload.current_value,
        threshold=payload.threshold,
        recipient_email=str(payload.recipient_email),
    )
    return SensorAlertOut(
        mine_id=report.mine_id,
        sensor_type=report.sensor_type,
        probability=report.probability,
        level=report.level,
        notification=_notification_out(report.notification),
    )


@router.get("/mines", summary="List mines with recorded readings.")
async def list_mines(pipeline: RiskPipeline = Depends(get_pipeline)) -> dict[str, List[str]]:
    return {"mine_ids": pipeline.store.mine_ids()}


@router.get(
    "/mines/{mine_id}/latest",
    response_model=LatestOut,
    summary="Latest reading for a mine and its current assessment.",
)
async def latest_for_mine(
    mine_id: str,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> LatestOut:
    try:
        reading, assessment = pipeline.assess_latest(mine_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    return LatestOut(
        reading=ReadingOut.from_reading(reading),
        assessment=AssessmentOut.from_assessment(assessment),
        contributions=feature_contributions(reading),
    )


@router.get(
    "/mines/{mine_id}/history",
    response_model=List[ReadingOut],
    summary="Recorded readings for a mine, newest first.",
)
async def mine_history(
    mine_id: str,
    limit: int = Query(50, ge=1, le=500),
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> List[ReadingOut]:
    readings = pipeline.store.history(mine_id, limit=limit)
    if not readings:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sensor readings recorded for mine {mine_id!r}.",
        )
    return [ReadingOut.from_reading(reading) for reading in readings]


@router.post(
    "/imports",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportUploadResponse,
    summary="Upload a CSV of sensor readings for asynchronous import.",
)
async def upload_readings(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="CSV file containing sensor readings."),
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> ImportUploadResponse:
    try:
        job_id = pipeline.enqueue_import(background_tasks, file)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return ImportUploadResponse(job_id=job_id)


@router.get(
    "/imports",
    response_model=List[ImportJob],
    summary="All import jobs, most recently uploaded first.",
)
async def list_imports(pipeline: RiskPipeline = Depends(get_pipeline)) -> List[ImportJob]:
    return sorted(pipeline.log.scan_jobs(), key=lambda job: job.uploaded_at, reverse=True)


@router.get(
    "/imports/{job_id}",
    response_model=ImportJob,
    summary="Fetch status and results of an import job.",
)
async def get_import(
    job_id: str,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> ImportJob:
    try:
        return pipeline.fetch_job(job_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc


@router.get(
    "/alerts",
    response_model=List[AlertRecord],
    summary="Recent alert log rows, newest first.",
)
async def recent_alerts(
    limit: int = Query(50, ge=1, le=500),
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> List[AlertRecord]:
    return pipeline.log.recent_alerts(limit=limit)


@router.get(
    "/thresholds",
    response_model=ThresholdsOut,
    summary="Active risk classification thresholds.",
)
async def thresholds(pipeline: RiskPipeline = Depends(get_pipeline)) -> ThresholdsOut:
    return ThresholdsOut(**pipeline.thresholds.as_dict())


@router.put(
    "/thresholds",
    response_model=ThresholdsOut,
    summary="Replace the risk classification thresholds.",
)
async def update_thresholds(
    payload: ThresholdsIn,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> ThresholdsOut:
    try:
        updated = pipeline.update_thresholds(
            critical=payload.critical, high=payload.high, medium=payload.medium
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return ThresholdsOut(**updated.as_dict())


def _alert_config_out(config: AlertConfig, pipeline: RiskPipeline) -> AlertConfigOut:
    return AlertConfigOut(
        enabled=config.enabled,
        min_level=config.min_level,
        backend_timeout_seconds=config.backend_timeout_seconds,
        backends=backend_names(pipeline.dispatcher.backends),
    )


@router.get(
    "/alert-config",
    response_model=AlertConfigOut,
    summary="Active alert policy and backend order.",
)
async def alert_config(pipeline: RiskPipeline = Depends(get_pipeline)) -> AlertConfigOut:
    return _alert_config_out(pipeline.dispatcher.config, pipeline)


@router.put(
    "/alert-config",
    response_model=AlertConfigOut,
    summary="Update the alert policy; omitted fields are unchanged.",
)
async def update_alert_config(
    payload: AlertConfigIn,
    pipeline: RiskPipeline = Depends(get_pipeline),
) -> AlertConfigOut:
    config = pipeline.update_alert_config(enabled=payload.enabled, min_level=payload.min_level)
    return _alert_config_out(config, pipeline)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
