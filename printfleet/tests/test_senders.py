"""
Tests for the channel senders.
"""
from __future__ import annotations

import json
from unittest.mock import MagicMock

import httpx
import pytest

from printfleet.models import NotificationChannel
from printfleet.senders import (
    EmailSender,
    TelegramSender,
    WebhookSender,
    _generate_signature,
    build_senders,
)


def test_generate_signature():
    """HMAC signature is a stable sha256 hex digest tied to the secret."""
    payload = '{"event": "alert", "data": {}}'
    secret = "test_secret"

    signature = _generate_signature(payload, secret)

    assert isinstance(signature, str)
    assert len(signature) == 64
    assert signature == _generate_signature(payload, secret)
    assert signature != _generate_signature(payload, "other_secret")


@pytest.mark.asyncio
async def test_webhook_posts_signed_payload():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = request.content.decode()
        captured["headers"] = request.headers
        return httpx.Response(200, json={"ok": True})

    sender = WebhookSender(secret="s3cret", headers={"X-Team": "ops"}, transport=httpx.MockTransport(handler))
    result = await sender.send("https://hooks.example.com/in", "subject", "body", payload={"alert": {"id": 7}})

    assert result.ok is True
    assert captured["url"] == "https://hooks.example.com/in"
    assert json.loads(captured["body"]) == {"alert": {"id": 7}}
    assert captured["headers"]["X-Webhook-Signature"] == f"sha256={_generate_signature(captured['body'], 's3cret')}"
    assert captured["headers"]["X-Team"] == "ops"
    assert captured["headers"]["User-Agent"] == "PrintFleet-Notifier/1.0"


@pytest.mark.asyncio
async def test_webhook_without_secret_has_no_signature():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    sender = WebhookSender(transport=httpx.MockTransport(handler))
    result = await sender.send("https://hooks.example.com/in", "Subject", "Body")

    assert result.ok is True
    assert "X-Webhook-Signature" not in captured["headers"]
    assert captured["body"]["subject"] == "Subject"
    assert captured["body"]["message"] == "Body"


@pytest.mark.asyncio
async def test_webhook_http_error_is_reported():
    sender = WebhookSender(transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")))

    result = await sender.send("https://hooks.example.com/in", "s", "b")

    assert result.ok is False
    assert result.error.startswith("HTTP 503")


@pytest.mark.asyncio
async def test_webhook_connection_error_is_reported():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sender = WebhookSender(transport=httpx.MockTransport(handler))
    result = await sender.send("https://hooks.example.com/in", "s", "b")

    assert result.ok is False
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_telegram_posts_send_message():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    sender = TelegramSender(bot_token="123:ABC", transport=httpx.MockTransport(handler))
    result = await sender.send("-100200", "Low toner", "printer-01 at 8%")

    assert result.ok is True
    assert captured["path"] == "/bot123:ABC/sendMessage"
    assert captured["body"] == {"chat_id": -100200, "text": "Low toner\n\nprinter-01 at 8%"}


@pytest.mark.asyncio
async def test_telegram_rejects_non_numeric_chat_id():
    sender = TelegramSender(bot_token="123:ABC", transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    result = await sender.send("@ops", "s", "b")

    assert result.ok is False
    assert "chat id" in result.error


@pytest.mark.asyncio
async def test_email_sends_through_sendgrid_client():
    client = MagicMock()
    client.send.return_value = MagicMock(status_code=202)
    sender = EmailSender(api_key="SG.test", from_email="alerts@example.com", client=client)

    result = await sender.send("ops@example.com", "Low toner", "printer-01 at 8%")

    assert result.ok is True
    mail = client.send.call_args.args[0]
    assert mail.get()["subject"] == "Low toner"
    assert mail.get()["from"]["email"] == "alerts@example.com"


@pytest.mark.asyncio
async def test_email_unexpected_status_is_failure():
    client = MagicMock()
    client.send.return_value = MagicMock(status_code=401)
    sender = EmailSender(api_key="SG.test", from_email="alerts@example.com", client=client)

    result = await sender.send("ops@example.com", "s", "b")

    assert result.ok is False
    assert "401" in result.error


@pytest.mark.asyncio
async def test_email_without_api_key_fails_fast():
    result = await EmailSender(api_key="", from_email="alerts@example.com").send("ops@example.com", "s", "b")
    assert result.ok is False


def test_build_senders_only_enables_configured_channels():
    senders = build_senders({"webhook": {"secret": "x"}, "telegram": {"bot_token": ""}, "email": {}})
    assert set(senders) == {NotificationChannel.WEBHOOK}

    senders = build_senders(
        {"telegram": {"bot_token": "1:A"}, "email": {"sendgrid_api_key": "SG.x", "from_email": "a@example.com"}}
    )
    assert set(senders) == {NotificationChannel.WEBHOOK, NotificationChannel.TELEGRAM, NotificationChannel.EMAIL}
