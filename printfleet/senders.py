"""
Channel senders for alert notifications.

Each sender makes exactly one delivery attempt and reports the outcome as a
``SendResult``. Retry and backoff belong to the dispatcher.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any

import httpx
import sendgrid
from sendgrid.helpers.mail import Mail

from printfleet.models import NotificationChannel, SendResult, utc_now_iso

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
TELEGRAM_API_URL = "https://api.telegram.org"
USER_AGENT = "PrintFleet-Notifier/1.0"


def _generate_signature(payload: str, secret: str) -> str:
    """Generate HMAC signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


class WebhookSender:
    channel = NotificationChannel.WEBHOOK

    def __init__(
        self,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret = secret
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.transport = transport

    def build_request(self, subject: str, body: str, payload: dict[str, Any] | None) -> tuple[str, dict[str, str]]:
        document = payload if payload is not None else {
            "subject": subject,
            "message": body,
            "timestamp": utc_now_iso(),
        }
        content = json.dumps(document, default=str)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **self.headers}
        if self.secret:
            headers["X-Webhook-Signature"] = f"sha256={_generate_signature(content, self.secret)}"
        return content, headers

    async def send(self, address: str, subject: str, body: str, payload: dict[str, Any] | None = None) -> SendResult:
        content, headers = self.build_request(subject, body, payload)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(address, content=content, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.warning("Webhook delivery to %s failed: %s", address, exc)
            return SendResult(ok=False, error=str(exc) or exc.__class__.__name__)
        if not response.is_success:
            return SendResult(ok=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        return SendResult(ok=True)


class TelegramSender:
    channel = NotificationChannel.TELEGRAM

    def __init__(
        self,
        bot_token: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        api_url: str = TELEGRAM_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.transport = transport

    async def send(self, address: str, subject: str, body: str, payload: dict[str, Any] | None = None) -> SendResult:
        try:
            chat_id = int(address)
        except ValueError:
            return SendResult(ok=False, error=f"Invalid Telegram chat id: {address}")
        if not self.bot_token:
            return SendResult(ok=False, error="Telegram bot token is not configured")

        text = f"{subject}\n\n{body}" if subject else body
        url = f"{self.api_url}/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json={"chat_id": chat_id, "text": text})
        except httpx.HTTPError as exc:
            LOGGER.warning("Telegram delivery to %s failed: %s", chat_id, exc)
            return SendResult(ok=False, error=str(exc) or exc.__class__.__name__)
        if not response.is_success:
            return SendResult(ok=False, error=f"HTTP {response.status_code}: {response.text[:200]}")
        return SendResult(ok=True)


class EmailSender:
    """Email delivery through the SendGrid API."""

    channel = NotificationChannel.EMAIL

    def __init__(self, api_key: str, from_email: str, timeout: float = DEFAULT_TIMEOUT_SECONDS, client: Any = None) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = sendgrid.SendGridAPIClient(api_key=self.api_key)
        return self._client

    def _deliver(self, address: str, subject: str, body: str) -> int:
        email = Mail(
            from_email=self.from_email,
            to_emails=address,
            subject=subject,
            plain_text_content=body,
        )
        response = self._get_client().send(email)
        return response.status_code

    async def send(self, address: str, subject: str, body: str, payload: dict[str, Any] | None = None) -> SendResult:
        if not self.api_key and self._client is None:
            return SendResult(ok=False, error="SendGrid API key is not configured")
        try:
            status_code = await asyncio.wait_for(
                asyncio.to_thread(self._deliver, address, subject, body),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return SendResult(ok=False, error="SendGrid request timed out")
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Email delivery to %s failed: %s", address, exc)
            return SendResult(ok=False, error=str(exc))
        if status_code not in (200, 201, 202):
            return SendResult(ok=False, error=f"SendGrid returned HTTP {status_code}")
        return SendResult(ok=True)


def build_senders(config: dict[str, Any]) -> dict[NotificationChannel, Any]:
    """Create the channel senders enabled in the ``notifications`` settings block."""
    senders: dict[NotificationChannel, Any] = {}
    webhook = config.get("webhook") or {}
    senders[NotificationChannel.WEBHOOK] = WebhookSender(
        secret=webhook.get("secret") or None,
        headers=webhook.get("headers") or {},
        timeout=float(webhook.get("timeout", DEFAULT_TIMEOUT_SECONDS)),
    )
    telegram = config.get("telegram") or {}
    if telegram.get("bot_token"):
        senders[NotificationChannel.TELEGRAM] = TelegramSender(bot_token=telegram["bot_token"])
    email = config.get("email") or {}
    if email.get("sendgrid_api_key"):
        senders[NotificationChannel.EMAIL] = EmailSender(
            api_key=email["sendgrid_api_key"],
            from_email=email.get("from_email", "alerts@printfleet.local"),
        )
    return senders
