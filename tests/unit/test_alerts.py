"""
Alert routing tests
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from core.alerts import Alert, Alerter, AlertSink, LoggingAlertSink, Severity, WebhookAlertSink


@pytest.mark.asyncio
async def test_escalate_uses_default_sink(alerter, alert_sink):
    alert = await alerter.escalate(Severity.ERROR, "ingestion", "load failed", {"file_path": "a.csv"})

    assert alert_sink.alerts == [alert]
    assert alert.context == {"file_path": "a.csv"}


@pytest.mark.asyncio
async def test_escalate_routes_to_named_target(alerter, alert_sink):
    oncall = AsyncMock(spec=AlertSink)
    alerter.add_sink("oncall", oncall)

    await alerter.escalate(Severity.CRITICAL, "tasks", "job failed", target="oncall")

    oncall.send.assert_awaited_once()
    assert alert_sink.alerts == []


@pytest.mark.asyncio
async def test_unknown_target_falls_back_to_default(alerter, alert_sink):
    await alerter.escalate(Severity.WARNING, "tasks", "job failed", target="nobody")

    assert len(alert_sink.alerts) == 1


@pytest.mark.asyncio
async def test_sink_failure_is_swallowed():
    broken = AsyncMock(spec=AlertSink)
    broken.send.side_effect = RuntimeError("pager down")
    alerter = Alerter(sinks={"log": broken})

    alert = await alerter.escalate(Severity.ERROR, "refresh", "refresh failed")

    assert alert.message == "refresh failed"
    broken.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_default_sink_is_logging():
    alerter = Alerter()

    assert isinstance(alerter.sinks["log"], LoggingAlertSink)
    await alerter.escalate(Severity.INFO, "ingestion", "hello")


@pytest.mark.asyncio
async def test_webhook_sink_posts_alert_json():
    alert = Alert(severity=Severity.ERROR, subsystem="refresh", message="refresh failed", context={"object_id": "daily"})
    response = MagicMock()
    client = AsyncMock()
    client.post.return_value = response

    with patch("core.alerts.httpx.AsyncClient") as client_cls:
        client_cls.return_value.__aenter__.return_value = client
        await WebhookAlertSink("https://hooks.example.com/x", timeout=3).send(alert)

    client_cls.assert_called_once_with(timeout=3)
    client.post.assert_awaited_once()
    url = client.post.await_args.args[0]
    payload = client.post.await_args.kwargs["json"]
    assert url == "https://hooks.example.com/x"
    assert payload["severity"] == "error"
    assert payload["context"] == {"object_id": "daily"}
    response.raise_for_status.assert_called_once()


@pytest.mark.asyncio
async def test_webhook_http_error_does_not_escape_alerter():
    sink = WebhookAlertSink("https://hooks.example.com/x")
    request = httpx.Request("POST", "https://hooks.example.com/x")

    with patch("core.alerts.httpx.AsyncClient") as client_cls:
        client = AsyncMock()
        client.post.side_effect = httpx.ConnectError("refused", request=request)
        client_cls.return_value.__aenter__.return_value = client

        alert = await Alerter(sinks={"log": sink}).escalate(Severity.ERROR, "ingestion", "boom")

    assert alert.subsystem == "ingestion"
