"""Scoring, alerting and background CSV import orchestration."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, UploadFile

from app.schemas import (
    AssessmentOut,
    AssessmentRecord,
    ImportJob,
    ImportStatus,
    RowError,
)
from datastore.alert_log import AlertLogStore, build_default_log
from models.records import AlertRequest, RiskAssessment, RiskLevel, SensorReading
from services.dispatcher import AlertConfig, AlertDispatcher, DispatchOutcome
from services.notifications import build_backends
from services.scorer import DEFAULT_THRESHOLDS, RiskThresholds, assess, classify, threshold_risk
from settings import Settings, get_settings
from storage.feature_store import SensorFeatureStore, build_default_store, parse_readings_csv

logger = logging.getLogger(__name__)


@dataclass
class PredictionReport:
    """The assessment and the notification outcome are reported independently."""

    assessment: RiskAssessment
    notification: DispatchOutcome


@dataclass
class SensorAlertReport:
    """Risk derived from one sensor against its limit, plus the alert outcome."""

    mine_id: str
    sensor_type: str
    probability: float
    level: RiskLevel
    notification: DispatchOutcome


class RiskPipeline:
    """Coordinates the feature store, scoring, alert dispatch and import jobs."""

    def __init__(
        self,
        store: SensorFeatureStore,
        log: AlertLogStore,
        dispatcher: AlertDispatcher,
        thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
        workers: int = 2,
    ) -> None:
        self.store = store
        self.log = log
        self.dispatcher = dispatcher
        self.thresholds = thresholds
        self.executor = ThreadPoolExecutor(max_workers=workers)
        self._futures: Dict[str, Future[None]] = {}
        self._futures_lock = Lock()

    def assess_reading(self, reading: SensorReading, source: str = "api") -> RiskAssessment:
        """Store the reading and score it; the assessment log is best effort."""
        self.store.put_reading(reading)
        assessment = assess(reading, self.thresholds)
        self._log_assessment(assessment, source)
        return assessment

    def assess_latest(self, mine_id: str) -> tuple[SensorReading, RiskAssessment]:
        reading = self.store.latest(mine_id)
        if reading is None:
            raise KeyError(f"No sensor readings recorded for mine {mine_id!r}.")
        return reading, assess(reading, self.thresholds)

    def predict_and_alert(
        self,
        reading: SensorReading,
        mine_name: str,
        location: str,
        recipient_email: str,
    ) -> PredictionReport:
        assessment = self.assess_reading(reading, source="prediction")
        request = AlertRequest(
            mine_id=assessment.mine_id,
            mine_name=mine_name,
            location=location,
            recipient_email=recipient_email,
            probability=assessment.probability,
            level=assessment.level,
        )
        return PredictionReport(assessment=assessment, notification=self._dispatch(request))

    def sensor_alert(
        self,
        mine_id: str,
        mine_name: str,
        location: str,
        sensor_type: str,
        current_value: float,
        threshold: float,
        recipient_email: str,
    ) -> SensorAlertReport:
        """Score a single sensor against its limit and alert on the result."""
        probability = threshold_risk(current_value, threshold)
        level = classify(probability, self.thresholds)
        request = AlertRequest(
            mine_id=mine_id,
            mine_name=mine_name,
            location=location,
            recipient_email=recipient_email,
            probability=probability,
            level=level,
            detail=f"{sensor_type}: {current_value:g} (limit {threshold:g})",
        )
        return SensorAlertReport(
            mine_id=mine_id,
            sensor_type=sensor_type,
            probability=probability,
            level=level,
            notification=self._dispatch(request),
        )

    def update_thresholds(self, critical: float, high: float, medium: float) -> RiskThresholds:
        """Replace the classification table; invalid tables raise ``ValueError``."""
        thresholds = RiskThresholds(critical=critical, high=high, medium=medium)
        self.thresholds = thresholds
        logger.info("Risk thresholds updated: %s", thresholds.as_dict())
        return thresholds

    def update_alert_config(
        self, enabled: Optional[bool] = None, min_level: Optional[RiskLevel] = None
    ) -> AlertConfig:
        config = self.dispatcher.configure(enabled=enabled, min_level=min_level)
        logger.info(
            "Alert policy updated",
            extra={"status": "enabled" if config.enabled else "disabled",
                   "risk_level": config.min_level.value},
        )
        return config

    def enqueue_import(self, background_tasks: BackgroundTasks, file: UploadFile) -> str:
        """Record the upload and parse it on the worker pool."""
        job_id = str(uuid4())
        filename = Path(file.filename or "readings.csv").name

        file.file.seek(0)
        contents = file.file.read()
        if isinstance(contents, str):
            contents = contents.encode("utf-8")
        if not contents:
            raise ValueError("Uploaded file is empty.")

        uploaded_at = datetime.now(timezone.utc)
        self.log.put_job(
            ImportJob(
                job_id=job_id,
                filename=filename,
                status=ImportStatus.uploaded,
                uploaded_at=uploaded_at,
            )
        )

        future = self.executor.submit(
            self._process_import,
            job_id=job_id,
            filename=filename,
            contents=contents,
            uploaded_at=uploaded_at,
        )
        with self._futures_lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda _f, jid=job_id: self._clear_future(jid))

        background_tasks.add_task(file.close)
        return job_id

    def fetch_job(self, job_id: str) -> ImportJob:
        job = self.log.get_job(job_id)
        if job is None:
            raise KeyError(f"Import job {job_id!r} not found.")
        return job

    def shutdown(self) -> None:
        """Clean up executor resources during application shutdown.

        Queued imports are cancelled and marked failed; imports already running
        are logged and left to finish.
        """
        with self._futures_lock:
            in_flight = dict(self._futures)
        for job_id, future in in_flight.items():
            if future.done():
                continue
            if future.cancel():
                self._mark_cancelled(job_id)
            else:
                logger.warning("Import still running at shutdown", extra={"job_id": job_id})
        self.executor.shutdown(wait=False, cancel_futures=True)
        self.dispatcher.shutdown()

    def _clear_future(self, job_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(job_id, None)

    def _mark_cancelled(self, job_id: str) -> None:
        job = self.log.get_job(job_id)
        if job is None:
            return
        self.log.put_job(
            job.model_copy(
                update={
                    "status": ImportStatus.failed,
                    "processed_at": datetime.now(timezone.utc),
                    "errors": [RowError(row_number=1, reason="Import cancelled at shutdown.")],
                }
            )
        )
        logger.warning("Import cancelled at shutdown", extra={"job_id": job_id})

    def _dispatch(self, request: AlertRequest) -> DispatchOutcome:
        try:
            return self.dispatcher.dispatch(request)
        except Exception as exc:  # noqa: BLE001 - notification is best effort
            logger.exception("Alert dispatch crashed", extra={"mine_id": request.mine_id})
            return DispatchOutcome(delivered=False, skipped_reason=f"dispatch error: {exc}")

    def _log_assessment(self, assessment: RiskAssessment, source: str) -> None:
        try:
            self.log.append_assessment(
                AssessmentRecord(
                    mine_id=assessment.mine_id,
                    probability=assessment.probability,
                    level=assessment.level,
                    computed_at=assessment.computed_at,
                    source=source,
                )
            )
        except Exception as exc:  # noqa: BLE001 - the log is best effort
            logger.warning(
                "Failed to log assessment", extra={"mine_id": assessment.mine_id, "error": str(exc)}
            )

    def _process_import(
        self, job_id: str, filename: str, contents: bytes, uploaded_at: datetime
    ) -> None:
        start_time = time.perf_counter()
        self.log.put_job(
            ImportJob(
                job_id=job_id,
                filename=filename,
                status=ImportStatus.processing,
                uploaded_at=uploaded_at,
            )
        )

        errors: list[RowError] = []
        warnings: list[RowError] = []
        latest: Dict[str, AssessmentOut] = {}
        imported = 0

        try:
            parsed = parse_readings_csv(contents.decode("utf-8-sig"))
            errors = [RowError(row_number=i.row_number, reason=i.reason) for i in parsed.errors]
            warnings = [RowError(row_number=i.row_number, reason=i.reason) for i in parsed.warnings]
            for issue in parsed.errors:
                logger.warning(
                    "Skipping row: %s",
                    issue.reason,
                    extra={"job_id": job_id, "row_number": issue.row_number, "reason": issue.reason},
                )

            self.store.put_many(parsed.readings)
            imported = len(parsed.readings)
            for mine_id in sorted({reading.mine_id for reading in parsed.readings}):
                reading = self.store.latest(mine_id)
                if reading is None:
                    continue
                assessment = assess(reading, self.thresholds)
                self._log_assessment(assessment, source="import")
                latest[mine_id] = AssessmentOut.from_assessment(assessment)

            if imported == 0 and errors:
                status = ImportStatus.failed
            elif errors or warnings:
                status = ImportStatus.partial
            else:
                status = ImportStatus.processed
        except (ValueError, UnicodeDecodeError) as exc:
            status = ImportStatus.failed
            errors.append(RowError(row_number=1, reason=str(exc)))
            logger.warning("Import failed", extra={"job_id": job_id, "reason": str(exc)})

        processing_ms = int((time.perf_counter() - start_time) * 1000)
        self.log.put_job(
            ImportJob(
                job_id=job_id,
                filename=filename,
                status=status,
                uploaded_at=uploaded_at,
                processed_at=datetime.now(timezone.utc),
                processing_ms=processing_ms,
                imported_count=imported,
                latest_assessments=latest,
                errors=errors,
                warnings=warnings,
            )
        )
        logger.info(
            "Import finished",
            extra={"job_id": job_id, "status": status.value, "row_count": imported,
                   "processing_ms": processing_ms},
        )


def thresholds_from_settings(settings: Settings) -> RiskThresholds:
    try:
        return RiskThresholds(
            critical=settings.threshold_critical,
            high=settings.threshold_high,
            medium=settings.threshold_medium,
        )
    except ValueError as exc:
        logger.warning("Invalid risk thresholds, using defaults", extra={"reason": str(exc)})
        return DEFAULT_THRESHOLDS


def build_dispatcher(settings: Settings, log: AlertLogStore) -> AlertDispatcher:
    config = AlertConfig(
        enabled=settings.alerts_enabled,
        min_level=RiskLevel(settings.alert_min_level),
        backend_timeout_seconds=settings.alert_backend_timeout,
        app_name=settings.app_name,
    )
    return AlertDispatcher(build_backends(settings), config, sink=log)


@lru_cache
def build_default_pipeline(workers: Optional[int] = None) -> RiskPipeline:
    """Factory that wires the pipeline from settings."""
    settings = get_settings()
    store = build_default_store()
    log = build_default_log()
    return RiskPipeline(
        store=store,
        log=log,
        dispatcher=build_dispatcher(settings, log),
        thresholds=thresholds_from_settings(settings),
        workers=workers or settings.pipeline_workers,
    )
