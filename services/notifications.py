"""Interchangeable delivery transports for alert emails."""

from __future__ import annotations

import logging
import re
import smtplib
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import httpx

from settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None


class NotificationBackend(Protocol):
    name: str

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        ...


class SmtpBackend:
    """Send through an SMTP server: SMTPS on port 465, STARTTLS otherwise."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        sender: str,
        timeout: float = 12.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.port and self.user and self.password and self.sender)

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.port == 465:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.host, self.port, timeout=self.timeout, context=context
            )
            server.ehlo()
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
            server.ehlo()
            server.starttls(context=context)
            server.ehlo()
        try:
            server.login(self.user, self.password)
        except smtplib.SMTPException:
            server.close()
            raise
        return server

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        if not self.is_configured():
            return DeliveryResult(False, "CONFIG_MISSING: set SMTP_HOST/PORT/USER/PASS/FROM")

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text_body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")

        server: Optional[smtplib.SMTP] = None
        try:
            server = self._connect()
            server.send_message(msg)
        except smtplib.SMTPAuthenticationError as exc:
            return DeliveryResult(False, f"AUTH_FAILED: {exc}")
        except (smtplib.SMTPException, socket.timeout, OSError) as exc:
            return DeliveryResult(False, f"NETWORK_ERROR: {exc}")
        finally:
            if server is not None:
                try:
                    server.quit()
                except (smtplib.SMTPException, OSError):
                    logger.debug("SMTP quit failed", extra={"channel": self.name})
        return DeliveryResult(True)


class HttpRelayBackend:
    """POST the message as JSON to an email relay endpoint (e.g. a hosted edge function)."""

    name = "http"

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.token = token
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "to": to,
            "subject": subject,
            "htmlContent": html_body,
            "textContent": text_body,
        }
        try:
            response = self._client.post(self.url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            return DeliveryResult(
                False, f"HTTP_{exc.response.status_code}: {exc.response.text.strip()[:200]}"
            )
        except httpx.HTTPError as exc:
            return DeliveryResult(False, f"NETWORK_ERROR: {exc}")
        return DeliveryResult(True)


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9@._-]+")


class OutboxBackend:
    """Write each message as an ``.eml`` file so alerts stay inspectable without a mail server."""

    name = "outbox"

    def __init__(self, directory: Path, sender: str = "alerts@localhost") -> None:
        self.directory = directory
        self.sender = sender

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(text_body or "")
        if html_body:
            msg.add_alternative(html_body, subtype="html")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        path = self.directory / f"{stamp}-{_UNSAFE_FILENAME.sub('_', to)}.eml"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(bytes(msg))
        except OSError as exc:
            return DeliveryResult(False, f"WRITE_FAILED: {exc}")
        return DeliveryResult(True)


class LogBackend:
    """Demo transport: logs the alert and reports success."""

    name = "log"

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        logger.info("Alert for %s: %s", to, subject, extra={"channel": self.name})
        return DeliveryResult(True)


def build_backends(settings: Settings) -> List[NotificationBackend]:
    """Instantiate backends in the order named by ``settings.alert_backends``."""
    backends: List[NotificationBackend] = []
    for name in settings.alert_backends:
        if name == "smtp":
            backends.append(
                SmtpBackend(
                    host=settings.smtp_host,
                    port=settings.smtp_port,
                    user=settings.smtp_user,
                    password=settings.smtp_password,
                    sender=settings.smtp_from,
                    timeout=settings.alert_backend_timeout,
                )
            )
        elif name == "http":
            if not settings.relay_url:
                logger.warning(
                    "Skipping http backend without EMAIL_RELAY_URL", extra={"channel": name}
                )
                continue
            backends.append(
                HttpRelayBackend(
                    url=settings.relay_url,
                    token=settings.relay_token,
                    timeout=settings.alert_backend_timeout,
                )
            )
        elif name == "outbox":
            if not settings.outbox_dir:
                logger.warning(
                    "Skipping outbox backend without ALERT_OUTBOX_DIR", extra={"channel": name}
                )
                continue
            backends.append(
                OutboxBackend(Path(settings.outbox_dir), sender=settings.smtp_from or "alerts@localhost")
            )
        elif name == "log":
            backends.append(LogBackend())
        else:
            logger.warning("Ignoring unknown alert backend", extra={"channel": name})
    return backends


def backend_names(backends: Sequence[NotificationBackend]) -> List[str]:
    return [backend.name for backend in backends]
