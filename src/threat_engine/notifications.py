"""
Notification sinks for incidents.

A sink delivers one payload and raises ``DispatchFailure`` when it cannot;
retries, deadlines and dead-lettering are the dispatcher's job. Payloads carry
``incident_id`` and ``timeline_version`` so receivers can drop duplicates.
"""

import asyncio
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Protocol, runtime_checkable

import httpx

from src.threat_engine.errors import DispatchFailure
from src.shared.config import settings
from src.shared.logger import get_logger

logger = get_logger()


@runtime_checkable
class NotificationSink(Protocol):
    name: str

    async def send(self, payload: dict[str, Any]) -> None:
        ...


def dedupe_key(payload: dict[str, Any]) -> str:
    return f"{payload['incident_id']}:{payload['timeline_version']}"


class LogSink:
    """Writes incidents to the rich console."""

    name = "log"

    async def send(self, payload: dict[str, Any]) -> None:
        logger.incident(
            payload["incident_id"],
            payload["severity"],
            f"[{payload.get('event', 'update')}] {payload['title']} (v{payload['timeline_version']})",
        )


class WebhookSink:
    """POSTs the incident payload as JSON."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        name: str = "webhook",
    ):
        self.name = name
        self.url = url or settings.webhook_url
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self._transport = transport
        if not self.url:
            raise ValueError("webhook sink requires a URL")

    async def send(self, payload: dict[str, Any]) -> None:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Threatline/1.0",
            "Idempotency-Key": dedupe_key(payload),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DispatchFailure(self.name, payload["incident_id"], "request timed out") from e
        except httpx.HTTPError as e:
            raise DispatchFailure(self.name, payload["incident_id"], f"{type(e).__name__}: {e}") from e

        if response.status_code >= 300:
            raise DispatchFailure(self.name, payload["incident_id"], f"HTTP {response.status_code}")


class EmailSink:
    """Sends incident emails over SMTP (STARTTLS)."""

    name = "email"

    def __init__(self):
        """Initialize email sink with SMTP settings."""
        self.smtp_host = settings.smtp_host
        self.smtp_port = settings.smtp_port
        self.smtp_user = settings.smtp_user
        self.smtp_password = settings.smtp_password
        self.from_email = settings.smtp_from or self.smtp_user
        self.to_email = settings.alert_email_to

        self.enabled = settings.has_smtp_credentials
        if not self.enabled:
            logger.warning("Email notifications not fully configured - emails will not be sent")
        else:
            logger.info(f"Email notifications enabled (sending to {self.to_email})")

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.enabled:
            raise DispatchFailure(self.name, payload["incident_id"], "SMTP not configured")
        await asyncio.to_thread(self._send_blocking, payload)

    def _send_blocking(self, payload: dict[str, Any]) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[THREATLINE] {payload['severity'].upper()} {payload['title']}"
        msg["From"] = self.from_email
        msg["To"] = self.to_email
        msg["X-Threatline-Dedupe"] = dedupe_key(payload)
        msg.attach(MIMEText(self._create_html_body(payload), "html"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchFailure(self.name, payload["incident_id"], f"{type(e).__name__}: {e}") from e
        logger.info(f"Incident email sent for {payload['incident_id']}")

    def _create_html_body(self, payload: dict[str, Any]) -> str:
        """Create HTML email body."""
        severity_color = {
            "low": "#4CAF50",
            "medium": "#FF9800",
            "high": "#FF5722",
            "critical": "#F44336",
        }.get(payload["severity"], "#9E9E9E")

        entities_html = "".join(f"<li><code>{e}</code></li>" for e in payload.get("entities", []))
        techniques_html = "".join(f"<li>{t}</li>" for t in payload.get("techniques", []))
        timeline_html = "".join(
            f"<li>{entry['at']} - {entry['kind']}: {entry['message']}</li>"
            for entry in payload.get("timeline", [])[-10:]
        )

        return f"""
        <html>
          <head>
            <style>
              body {{ font-family: Arial, sans-serif; }}
              .header {{ background-color: {severity_color}; color: white; padding: 20px; }}
              .content {{ padding: 20px; }}
              .section {{ margin: 20px 0; }}
              .label {{ font-weight: bold; }}
              code {{ background: #f4f4f4; padding: 2px 6px; border-radius: 3px; }}
            </style>
          </head>
          <body>
            <div class="header">
              <h1>{payload['severity'].upper()} Incident</h1>
              <p style="margin: 0;">{payload['title']}</p>
            </div>

            <div class="content">
              <div class="section">
                <p class="label">Incident:</p>
                <p><code>{payload['incident_id']}</code> ({payload['status']})</p>
              </div>

              <div class="section">
                <p class="label">Correlation Confidence:</p>
                <p>{payload['correlation_confidence']:.2f}</p>
              </div>

              <div class="section">
                <p class="label">Entities:</p>
                <ul>{entities_html}</ul>
              </div>

              <div class="section">
                <p class="label">Techniques:</p>
                <ul>{techniques_html}</ul>
              </div>

              <div class="section">
                <p class="label">Timeline:</p>
                <ul>{timeline_html}</ul>
              </div>
            </div>
          </body>
        </html>
        """


def build_default_sinks() -> list[NotificationSink]:
    """Log sink always; webhook and email only when configured."""
    sinks: list[NotificationSink] = [LogSink()]
    if settings.has_webhook:
        sinks.append(WebhookSink())
    if settings.has_smtp_credentials:
        sinks.append(EmailSink())
    return sinks
