"""Outbound transports used by alert actions (SMTP email, JSON webhooks)."""

from __future__ import annotations

import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

import httpx

from dotenv import load_dotenv

from core.env import env_bool, env_float, env_int, env_str
from core.logging import get_logger

load_dotenv()

logger = get_logger(__name__)

ALERT_EMAIL_FROM = env_str("ALERT_EMAIL_FROM") or "alerts@localhost"
SMTP_HOST = env_str("SMTP_HOST")
SMTP_PORT = env_int("SMTP_PORT", 587, minimum=1)
SMTP_USERNAME = env_str("SMTP_USERNAME")
SMTP_PASSWORD = env_str("SMTP_PASSWORD")
SMTP_USE_TLS = env_bool("SMTP_USE_TLS", True)
SMTP_TIMEOUT = env_float("SMTP_TIMEOUT", 10.0, minimum=1.0)
ALERT_WEBHOOK_TIMEOUT = env_float("ALERT_WEBHOOK_TIMEOUT", 5.0, minimum=0.5)
ALERT_WEBHOOK_RETRIES = env_int("ALERT_WEBHOOK_RETRIES", 1, minimum=1)
WEBHOOK_EVENT_HEADER = "X-Alert-Event"


@dataclass
class NotificationResult:
    status: str
    error: Optional[str] = None
    delivered: int = 0
    failed: int = 0
    metadata: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status == "delivered"


def _unique_targets(primary: Optional[str], extra: Optional[Iterable[str]] = None) -> List[str]:
    """Return a de-duplicated list of delivery targets."""
    unique: List[str] = []
    sources: List[Iterable[str]] = []
    if primary:
        sources.append([primary])
    if extra:
        sources.append(extra)
    for source in sources:
        for item in source:
            if not isinstance(item, str):
                continue
            candidate = item.strip()
            if candidate and candidate not in unique:
                unique.append(candidate)
    return unique


def _smtp_send(message: EmailMessage) -> None:
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as client:
        if SMTP_USE_TLS:
            client.starttls()
        if SMTP_USERNAME and SMTP_PASSWORD:
            client.login(SMTP_USERNAME, SMTP_PASSWORD)
        client.send_message(message)


def send_email(
    to: Sequence[str],
    subject: str,
    html: str,
    *,
    text: Optional[str] = None,
) -> NotificationResult:
    """Send one HTML email to every recipient in ``to``."""
    recipients = _unique_targets(None, to)
    if not recipients:
        return NotificationResult(status="failed", error="At least one email recipient is required.")
    if not SMTP_HOST:
        logger.warning("SMTP_HOST is not configured; dropping email '%s'.", subject)
        return NotificationResult(status="failed", error="SMTP_HOST is not configured.", failed=len(recipients))

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = ALERT_EMAIL_FROM
    message["To"] = ", ".join(recipients)
    message.set_content(text or "This alert is best viewed in an HTML capable mail client.")
    message.add_alternative(html, subtype="html")
    try:
        _smtp_send(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("SMTP delivery failed for '%s': %s", subject, exc)
        return NotificationResult(status="failed", error=str(exc), failed=len(recipients))
    return NotificationResult(status="delivered", delivered=len(recipients), metadata={"recipients": recipients})


def _post_with_backoff(
    url: str,
    payload: dict,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = ALERT_WEBHOOK_TIMEOUT,
    max_attempts: int = ALERT_WEBHOOK_RETRIES,
    success_count: int = 1,
    result_metadata: Optional[Dict[str, Any]] = None,
) -> NotificationResult:
    delay = 0.5
    attempts = max(1, max_attempts)
    error_message = "Unknown error"
    for attempt in range(1, attempts + 1):
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=payload, headers=headers)
                response.raise_for_status()
            return NotificationResult(status="delivered", delivered=success_count, metadata=result_metadata)
        except httpx.HTTPStatusError as exc:
            logger.warning("Webhook HTTP error (attempt %s/%s): %s", attempt, attempts, exc.response.text)
            error_message = exc.response.text or str(exc)
        except httpx.RequestError as exc:
            logger.warning("Webhook request error (attempt %s/%s): %s", attempt, attempts, exc)
            error_message = str(exc)
        if attempt < attempts:
            time.sleep(delay)
            delay *= 2
    return NotificationResult(status="failed", error=error_message, failed=success_count, metadata=result_metadata)


def post_webhook(
    url: str,
    payload: Mapping[str, Any],
    *,
    headers: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    event: str = "social_listening_alert",
) -> NotificationResult:
    """POST ``payload`` as JSON to ``url``; failures are reported, never raised."""
    target = (url or "").strip()
    if not target:
        return NotificationResult(status="failed", error="Webhook URL is required.", failed=1)
    if urlparse(target).scheme not in {"http", "https"}:
        return NotificationResult(status="failed", error="Unsupported webhook protocol.", failed=1)
    merged_headers: Dict[str, str] = {"Content-Type": "application/json", WEBHOOK_EVENT_HEADER: event}
    for key, value in (headers or {}).items():
        if isinstance(key, str) and value is not None:
            merged_headers[key] = str(value)
    return _post_with_backoff(
        target,
        dict(payload),
        headers=merged_headers,
        timeout=timeout or ALERT_WEBHOOK_TIMEOUT,
        result_metadata={"webhook": target},
    )


__all__ = ["NotificationResult", "post_webhook", "send_email"]
