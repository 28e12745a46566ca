from __future__ import annotations
import json
import logging
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from pydantic import ValidationError

from app.schemas import AlertRecord, AssessmentRecord, ImportJob
from settings import get_settings

logger = logging.getLogger(__name__)


class AlertLogStore:
    """Append-only log of assessments and alerts, plus the import job table."""

    def __init__(self, name: str = "alert_log", persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self.persistence_path = persistence_path
        self._assessments: List[AssessmentRecord] = []
        self._alerts: List[AlertRecord] = []
        self._jobs: Dict[str, ImportJob] = {}
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def append_assessment(self, record: AssessmentRecord) -> None:
        with self._lock:
            self._assessments.append(record.model_copy(deep=True))
            self._persist()

    def append_alert(self, record: AlertRecord) -> None:
        with self._lock:
            self._alerts.append(record.model_copy(deep=True))
            self._persist()

    def recent_assessments(self, limit: int = 50, mine_id: Optional[str] = None) -> List[AssessmentRecord]:
        with self._lock:
            rows = [
                row for row in self._assessments if mine_id is None or row.mine_id == mine_id
            ]
            return [row.model_copy(deep=True) for row in reversed(rows[-limit:])]

    def recent_alerts(self, limit: int = 50) -> List[AlertRecord]:
        with self._lock:
            return [row.model_copy(deep=True) for row in reversed(self._alerts[-limit:])]

    def put_job(self, job: ImportJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job.model_copy(deep=True)
            self._persist()

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return job.model_copy(deep=True)

    def scan_jobs(self) -> List[ImportJob]:
        """Return deep copies of all stored import jobs."""

        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def _persist(self) -> None:
        if not self.persistence_path:
            return
        payload = {
            "assessments": [row.model_dump(mode="json") for row in self._assessments],
            "alerts": [row.model_dump(mode="json") for row in self._alerts],
            "jobs": {job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()},
        }
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
            assessments = [AssessmentRecord.model_validate(row) for row in data.get("assessments", [])]
            alerts = [AlertRecord.model_validate(row) for row in data.get("alerts", [])]
            jobs = {
                job_id: ImportJob.model_validate(payload)
                for job_id, payload in data.get("jobs", {}).items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, ValidationError):
            logger.warning("Ignoring unreadable alert log", extra={"reason": str(self.persistence_path)})
            return

        self._assessments = assessments
        self._alerts = alerts
        self._jobs = jobs


@lru_cache
def build_default_log(path: Optional[str] = None) -> AlertLogStore:
    settings = get_settings()
    log_path = settings.alert_log_path if path is None else path
    persistence = Path(log_path) if log_path else None
    return AlertLogStore(persistence_path=persistence)
