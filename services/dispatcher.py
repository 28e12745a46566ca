"""Ordered, first-success-wins delivery of alert notifications."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from app.schemas import AlertRecord
from models.records import AlertRequest, RiskLevel
from services.messages import render_alert
from services.notifications import DeliveryResult, NotificationBackend


@dataclass(frozen=True)
class AlertConfig:
    """Alerting policy.

    ``min_level`` is the lowest risk level that triggers a notification;
    ``RiskLevel.low`` alerts on every prediction.
    """

    enabled: bool = True
    min_level: RiskLevel = RiskLevel.low
    backend_timeout_seconds: float = 15.0
    app_name: str = "Mine Risk Alerts"


@dataclass(frozen=True)
class DeliveryAttempt:
    channel: str
    success: bool
    error: Optional[str] = None


@dataclass
class DispatchOutcome:
    delivered: bool
    channel_used: Optional[str] = None
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    skipped_reason: Optional[str] = None


class AlertSink(Protocol):
    def append_alert(self, record: AlertRecord) -> None:
        ...


class AlertDispatcher:
    """Tries each backend in order, stopping at the first successful delivery."""

    def __init__(
        self,
        backends: Sequence[NotificationBackend],
        config: AlertConfig,
        sink: Optional[AlertSink] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.backends = list(backends)
        self.config = config
        self.sink = sink
        self.logger = logger or logging.getLogger(__name__)

    def configure(self, enabled: Optional[bool] = None, min_level: Optional[RiskLevel] = None) -> AlertConfig:
        """Swap in a policy with the given fields changed; unset fields are kept."""
        changes = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if min_level is not None:
            changes["min_level"] = min_level
        self.config = replace(self.config, **changes)
        return self.config

    def should_send(self, level: RiskLevel, config: Optional[AlertConfig] = None) -> Optional[str]:
        """Return the reason an alert is suppressed, or ``None`` when it should go out."""
        config = config or self.config
        if not config.enabled:
            return "alerts disabled"
        if not level.at_least(config.min_level):
            return f"level {level.value} below minimum {config.min_level.value}"
        if not self.backends:
            return "no backends configured"
        return None

    def dispatch(self, request: AlertRequest) -> DispatchOutcome:
        config = self.config
        extra = {"mine_id": request.mine_id, "risk_level": request.level.value}
        skipped = self.should_send(request.level, config)
        if skipped is not None:
            self.logger.info("Alert skipped", extra={**extra, "reason": skipped})
            outcome = DispatchOutcome(delivered=False, skipped_reason=skipped)
            self._record(request, outcome)
            return outcome

        message = render_alert(request, app_name=config.app_name)
        outcome = DispatchOutcome(delivered=False)
        for attempt_number, backend in enumerate(self.backends, start=1):
            result = self._attempt(
                backend,
                config.backend_timeout_seconds,
                request.recipient_email,
                message.subject,
                message.html_body,
                message.text_body,
            )
            outcome.attempts.append(
                DeliveryAttempt(channel=backend.name, success=result.success, error=result.error)
            )
            if result.success:
                outcome.delivered = True
                outcome.channel_used = backend.name
                self.logger.info(
                    "Alert delivered",
                    extra={**extra, "channel": backend.name, "attempt": attempt_number},
                )
                break
            self.logger.warning(
                "Alert delivery attempt failed",
                extra={**extra, "channel": backend.name, "attempt": attempt_number,
                       "error": result.error},
            )
        else:
            self.logger.error("All alert backends failed", extra=extra)

        self._record(request, outcome)
        return outcome

    def shutdown(self) -> None:
        for backend in self.backends:
            close = getattr(backend, "close", None)
            if callable(close):
                close()

    def _attempt(
        self,
        backend: NotificationBackend,
        timeout: float,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> DeliveryResult:
        # Each attempt owns its worker, so the timeout only covers this send.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="alert-dispatch")
        try:
            future = executor.submit(backend.send, to, subject, html_body, text_body)
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            return DeliveryResult(False, f"TIMEOUT: no response within {timeout}s")
        except Exception as exc:  # noqa: BLE001 - transport failures fall through
            return DeliveryResult(False, f"{type(exc).__name__}: {exc}")
        finally:
            executor.shutdown(wait=False)
        if not isinstance(result, DeliveryResult):
            return DeliveryResult(False, "backend returned no result")
        return result

    def _record(self, request: AlertRequest, outcome: DispatchOutcome) -> None:
        if self.sink is None:
            return
        last_error = next(
            (attempt.error for attempt in reversed(outcome.attempts) if not attempt.success), None
        )
        record = AlertRecord(
            mine_id=request.mine_id,
            mine_name=request.mine_name,
            recipient_email=request.recipient_email,
            probability=request.probability,
            level=request.level,
            delivered=outcome.delivered,
            channel_used=outcome.channel_used,
            skipped_reason=outcome.skipped_reason,
            error=None if outcome.delivered else last_error,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.sink.append_alert(record)
        except Exception as exc:  # noqa: BLE001 - the log is best effort
            self.logger.warning(
                "Failed to record alert", extra={"mine_id": request.mine_id, "error": str(exc)}
            )
