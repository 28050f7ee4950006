"""Tests for the email and webhook transports used by alert actions."""

from __future__ import annotations

from typing import Any, Dict, List

import httpx
import pytest

from services import notification_service


def _configure_smtp(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(notification_service, "ALERT_EMAIL_FROM", "alerts@example.com")
    monkeypatch.setattr(notification_service, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(notification_service, "SMTP_PORT", 587)
    monkeypatch.setattr(notification_service, "SMTP_USERNAME", "smtp-user")
    monkeypatch.setattr(notification_service, "SMTP_PASSWORD", "smtp-pass")
    monkeypatch.setattr(notification_service, "SMTP_USE_TLS", True)


def test_send_email_via_smtp(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_smtp(monkeypatch)
    captured: Dict[str, Any] = {}

    class DummySMTP:
        def __init__(self, host: str, port: int, **kwargs: Any) -> None:
            captured["host"] = host
            captured["port"] = port
            captured["timeout"] = kwargs.get("timeout")

        def __enter__(self) -> "DummySMTP":
            return self

        def __exit__(self, exc_type, exc, tb) -> None:
            return None

        def starttls(self) -> None:
            captured["starttls"] = True

        def login(self, username: str, password: str) -> None:
            captured["login"] = (username, password)

        def send_message(self, msg) -> None:
            captured["message"] = msg

    monkeypatch.setattr(notification_service.smtplib, "SMTP", DummySMTP)

    result = notification_service.send_email(
        ["ops@example.com", " ops@example.com ", "pr@example.com"],
        "Social Listening Alert: Crisis",
        "<p>hello</p>",
    )

    assert result.ok
    assert result.delivered == 2
    assert captured["host"] == "smtp.test"
    assert captured["port"] == 587
    assert captured["starttls"] is True
    assert captured["login"] == ("smtp-user", "smtp-pass")
    msg = captured["message"]
    assert msg["To"] == "ops@example.com, pr@example.com"
    assert msg["From"] == "alerts@example.com"
    assert msg["Subject"] == "Social Listening Alert: Crisis"


def test_send_email_requires_recipients_and_host(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_smtp(monkeypatch)
    assert notification_service.send_email([], "subject", "<p></p>").status == "failed"

    monkeypatch.setattr(notification_service, "SMTP_HOST", None)
    result = notification_service.send_email(["ops@example.com"], "subject", "<p></p>")
    assert result.status == "failed"
    assert "SMTP_HOST" in (result.error or "")


def test_send_email_reports_smtp_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    _configure_smtp(monkeypatch)

    def boom(message) -> None:
        raise notification_service.smtplib.SMTPException("relay denied")

    monkeypatch.setattr(notification_service, "_smtp_send", boom)
    result = notification_service.send_email(["ops@example.com"], "subject", "<p></p>")

    assert result.status == "failed"
    assert result.error == "relay denied"
    assert result.failed == 1


def test_post_webhook_merges_headers(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: List[Dict[str, Any]] = []

    def fake_post(url: str, payload: Dict[str, Any], **kwargs: Any) -> notification_service.NotificationResult:
        captured.append({"url": url, "payload": payload, "kwargs": kwargs})
        return notification_service.NotificationResult(status="delivered", delivered=1, metadata=kwargs.get("result_metadata"))

    monkeypatch.setattr(notification_service, "_post_with_backoff", fake_post)

    result = notification_service.post_webhook(
        " https://hooks.example.com/alerts ",
        {"alert": {"id": "a-1"}},
        headers={"Authorization": "Bearer token", "X-Retry": 3},
    )

    assert result.ok
    call = captured[0]
    assert call["url"] == "https://hooks.example.com/alerts"
    assert call["payload"] == {"alert": {"id": "a-1"}}
    headers = call["kwargs"]["headers"]
    assert headers["Content-Type"] == "application/json"
    assert headers["Authorization"] == "Bearer token"
    assert headers["X-Retry"] == "3"
    assert headers[notification_service.WEBHOOK_EVENT_HEADER] == "social_listening_alert"
    assert call["kwargs"]["timeout"] == notification_service.ALERT_WEBHOOK_TIMEOUT == 5.0


@pytest.mark.parametrize("url", ["", "ftp://hooks.example.com", "not a url"])
def test_post_webhook_rejects_bad_urls(url: str) -> None:
    result = notification_service.post_webhook(url, {})
    assert result.status == "failed"


def test_backoff_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    call_log: List[Dict[str, Any]] = []

    class DummyResponse:
        def raise_for_status(self) -> None:
            return None

    class DummyClient:
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            self.timeout = kwargs.get("timeout")

        def __enter__(self) -> "DummyClient":
            return self

        def __exit__(self, exc_type, exc_value, traceback) -> None:
            return None

        def post(self, url: str, json: Dict[str, Any], headers: Dict[str, Any] | None = None) -> DummyResponse:
            call_log.append({"url": url, "json": json, "headers": headers})
            if len(call_log) == 1:
                raise httpx.RequestError("boom", request=httpx.Request("POST", url))
            return DummyResponse()

    monkeypatch.setattr(notification_service.httpx, "Client", DummyClient)
    monkeypatch.setattr(notification_service.time, "sleep", lambda _: None)

    result = notification_service._post_with_backoff(
        "https://example.com/webhook",
        {"message": "alert"},
        max_attempts=2,
        result_metadata={"webhook": "https://example.com/webhook"},
    )

    assert result.status == "delivered"
    assert result.delivered == 1
    assert len(call_log) == 2


def test_backoff_reports_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    transport = httpx.MockTransport(handler)
    real_client = httpx.Client

    monkeypatch.setattr(
        notification_service.httpx,
        "Client",
        lambda *args, **kwargs: real_client(*args, transport=transport, **kwargs),
    )

    result = notification_service._post_with_backoff("https://example.com/webhook", {}, max_attempts=1)

    assert result.status == "failed"
    assert result.error == "bad gateway"
