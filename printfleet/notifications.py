from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Iterable

from printfleet.models import (
    Alert,
    AlertSeverity,
    NotificationChannel,
    NotificationConfig,
    NotificationMessage,
    NotificationPriority,
    NotificationRecipient,
    NotificationStatus,
    NotificationTemplate,
    SendResult,
    utc_now,
)
from printfleet.protocols import ChannelSender, HistoryLog
from printfleet.quiet_hours import is_quiet

LOGGER = logging.getLogger(__name__)

TEST_MESSAGE = (
    "PrintFleet Test Notification\n\n"
    "This is a test message to verify your notification settings are working correctly.\n\n"
    "Time: {timestamp}"
)

PRIORITY_BY_SEVERITY = {
    AlertSeverity.EMERGENCY: NotificationPriority.URGENT,
    AlertSeverity.CRITICAL: NotificationPriority.HIGH,
    AlertSeverity.WARNING: NotificationPriority.NORMAL,
    AlertSeverity.INFO: NotificationPriority.LOW,
}


def notification_priority(severity: AlertSeverity) -> NotificationPriority:
    return PRIORITY_BY_SEVERITY.get(severity, NotificationPriority.NORMAL)


def _one_decimal(value: float | None) -> str:
    return "N/A" if value is None else f"{value:.1f}"


def render_template(text: str, alert: Alert) -> str:
    device = alert.device
    tokens = {
        "{{alert.title}}": alert.title,
        "{{alert.description}}": alert.description,
        "{{alert.severity}}": alert.severity.name.title(),
        "{{device.name}}": device.hostname,
        "{{device.location}}": device.location or "Unknown",
        "{{device.ip}}": device.ip_address or "Unknown",
        "{{supply.kind}}": alert.supply_kind.value if alert.supply_kind else "N/A",
        "{{supply.level}}": _one_decimal(alert.current_level),
        "{{threshold}}": _one_decimal(alert.threshold),
        "{{timestamp}}": alert.last_occurrence.strftime("%Y-%m-%d %H:%M:%S"),
        "{{count}}": str(alert.occurrence_count),
    }
    for token, value in tokens.items():
        text = text.replace(token, value)
    return text


def build_webhook_payload(message: NotificationMessage) -> dict:
    alert = message.alert
    return {
        "id": message.id,
        "alert": {
            "id": alert.id,
            "key": alert.key,
            "title": alert.title,
            "description": alert.description,
            "severity": alert.severity.name,
            "category": alert.category.value,
            "supply_kind": alert.supply_kind.value if alert.supply_kind else None,
            "current_level": alert.current_level,
            "threshold": alert.threshold,
            "occurrence_count": alert.occurrence_count,
            "first_occurrence": alert.first_occurrence.isoformat(),
            "last_occurrence": alert.last_occurrence.isoformat(),
        },
        "device": {
            "id": alert.device.id,
            "name": alert.device.hostname,
            "ip_address": alert.device.ip_address,
            "location": alert.device.location,
            "site_id": alert.device.site_id,
        },
        "subject": message.subject,
        "message": message.body,
        "priority": message.priority.name,
        "timestamp": message.created_at.isoformat(),
    }


def default_templates() -> list[NotificationTemplate]:
    return [
        NotificationTemplate(
            id=1,
            name="Email Alert",
            channel=NotificationChannel.EMAIL,
            subject="[{{alert.severity}}] {{alert.title}} - {{device.name}}",
            body=(
                "{{alert.description}}\n\n"
                "Device: {{device.name}} ({{device.ip}})\n"
                "Location: {{device.location}}\n"
                "Supply: {{supply.kind}} at {{supply.level}}% (threshold {{threshold}}%)\n"
                "Occurrences: {{count}}\n"
                "Last seen: {{timestamp}}"
            ),
        ),
        NotificationTemplate(
            id=2,
            name="Telegram Alert",
            channel=NotificationChannel.TELEGRAM,
            subject="{{alert.title}}",
            body="[{{alert.severity}}] {{device.name}} @ {{device.location}}\n{{alert.description}}",
        ),
        NotificationTemplate(
            id=3,
            name="Webhook Alert",
            channel=NotificationChannel.WEBHOOK,
            subject="{{alert.title}}",
            body="{{alert.description}}",
        ),
    ]


class RateLimitTracker:
    """Sliding-window send counter per ``recipientId_channel`` key."""

    def __init__(
        self,
        window: timedelta = timedelta(minutes=5),
        max_per_window: int = 10,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.window = window
        self.max_per_window = max_per_window
        self._clock = clock
        self._sent: dict[str, deque[datetime]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key_for(recipient: NotificationRecipient) -> str:
        return f"{recipient.id}_{recipient.channel.value}"

    def _prune(self, key: str, now: datetime) -> deque[datetime]:
        timestamps = self._sent.setdefault(key, deque())
        while timestamps and now - timestamps[0] > self.window:
            timestamps.popleft()
        return timestamps

    def is_limited(self, key: str) -> bool:
        with self._lock:
            return len(self._prune(key, self._clock())) >= self.max_per_window

    def record(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._prune(key, now).append(now)

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._prune(key, self._clock()))

    def configure(self, window: timedelta, max_per_window: int) -> None:
        with self._lock:
            self.window = window
            self.max_per_window = max_per_window


class NotificationDispatcher:
    """Turns alerts into per-recipient messages and delivers them.

    Messages blocked by quiet hours are Skipped. Rate-limited messages stay
    Pending for a later sweep. Failed sends are retried with exponential
    backoff until ``max_retries`` is reached.
    """

    def __init__(
        self,
        senders: dict[NotificationChannel, ChannelSender],
        config: NotificationConfig | None = None,
        rate_limiter: RateLimitTracker | None = None,
        history: HistoryLog | None = None,
        recipients: Iterable[NotificationRecipient] = (),
        templates: Iterable[NotificationTemplate] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.senders = dict(senders)
        self.config = config or NotificationConfig()
        self.clock = clock
        self.rate_limiter = rate_limiter or RateLimitTracker(
            self.config.rate_limit_window, self.config.max_notifications_per_window, clock
        )
        self.history = history
        self._recipients: list[NotificationRecipient] = list(recipients)
        self._templates: list[NotificationTemplate] = list(default_templates() if templates is None else templates)
        self._queue: list[NotificationMessage] = []
        self._in_flight: set[int] = set()
        self._ids = itertools.count(1)
        self._sweep_lock = asyncio.Lock()

    # Configuration

    def update_config(self, config: NotificationConfig) -> None:
        self.config = config
        self.rate_limiter.configure(config.rate_limit_window, config.max_notifications_per_window)
        LOGGER.info("Notification configuration updated")

    def recipients(self) -> list[NotificationRecipient]:
        return list(self._recipients)

    def get_recipient(self, recipient_id: int) -> NotificationRecipient | None:
        return next((item for item in self._recipients if item.id == recipient_id), None)

    def save_recipient(self, recipient: NotificationRecipient) -> NotificationRecipient:
        if not recipient.id:
            recipient.id = max((item.id for item in self._recipients), default=0) + 1
        self._recipients = [item for item in self._recipients if item.id != recipient.id] + [recipient]
        self._recipients.sort(key=lambda item: item.id)
        return recipient

    def delete_recipient(self, recipient_id: int) -> bool:
        before = len(self._recipients)
        self._recipients = [item for item in self._recipients if item.id != recipient_id]
        return len(self._recipients) < before

    def templates(self, channel: NotificationChannel | None = None) -> list[NotificationTemplate]:
        return [item for item in self._templates if channel is None or item.channel == channel]

    def save_template(self, template: NotificationTemplate) -> NotificationTemplate:
        if not template.id:
            template.id = max((item.id for item in self._templates), default=0) + 1
        for index, item in enumerate(self._templates):
            if item.id == template.id:
                self._templates[index] = template
                break
        else:
            self._templates.append(template)
        return template

    def delete_template(self, template_id: int) -> bool:
        before = len(self._templates)
        self._templates = [item for item in self._templates if item.id != template_id]
        return len(self._templates) < before

    # Message creation

    def eligible_recipients(self, alert: Alert) -> list[NotificationRecipient]:
        return [
            recipient
            for recipient in self._recipients
            if recipient.enabled
            and (recipient.site_id is None or recipient.site_id == alert.device.site_id)
            and (recipient.min_severity is None or alert.severity >= recipient.min_severity)
            and (not recipient.categories or alert.category in recipient.categories)
        ]

    def select_template(self, alert: Alert, recipient: NotificationRecipient) -> NotificationTemplate | None:
        for template in self._templates:
            if (
                template.enabled
                and template.channel == recipient.channel
                and (template.category is None or template.category == alert.category)
                and (template.min_severity is None or alert.severity >= template.min_severity)
            ):
                return template
        return None

    def create_messages(self, alert: Alert) -> list[NotificationMessage]:
        messages = []
        for recipient in self.eligible_recipients(alert):
            template = self.select_template(alert, recipient)
            if template is None:
                LOGGER.warning("No suitable template for alert %s and recipient %s", alert.id, recipient.name)
                continue
            message = NotificationMessage(
                id=next(self._ids),
                alert=alert,
                recipient=recipient,
                subject=render_template(template.subject, alert),
                body=render_template(template.body, alert),
                priority=notification_priority(alert.severity),
                created_at=self.clock(),
                metadata={"template_id": template.id, "template_name": template.name},
            )
            messages.append(message)
            self._queue.append(message)
        LOGGER.info("Created %d notification messages for alert %s", len(messages), alert.id)
        return messages

    async def notify(self, alert: Alert) -> list[NotificationMessage]:
        messages = self.create_messages(alert)
        for message in messages:
            try:
                await self.send_message(message)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to send notification %s", message.id)
        return messages

    # Delivery

    async def send_message(self, message: NotificationMessage) -> NotificationMessage:
        if message.id in self._in_flight:
            return message
        if message.status in (NotificationStatus.SENT, NotificationStatus.CANCELLED, NotificationStatus.SKIPPED):
            return message

        recipient = message.recipient
        if is_quiet(recipient, message.alert.device.site, self.clock()):
            LOGGER.debug("Skipping notification to %s due to quiet hours", recipient.name)
            message.status = NotificationStatus.SKIPPED
            return message

        limit_key = RateLimitTracker.key_for(recipient)
        if self.rate_limiter.is_limited(limit_key):
            LOGGER.warning("Rate limit exceeded for recipient %s", recipient.name)
            return message

        self._in_flight.add(message.id)
        message.status = NotificationStatus.SENDING
        try:
            result = await self._dispatch(message)
        except asyncio.CancelledError:
            message.status = NotificationStatus.PENDING
            raise
        finally:
            self._in_flight.discard(message.id)

        if result.ok:
            message.status = NotificationStatus.SENT
            message.sent_at = self.clock()
            message.error_message = None
            self.rate_limiter.record(limit_key)
            LOGGER.info("Sent notification %s to %s", message.id, recipient.name)
            self._append_history(message)
        else:
            self._handle_failure(message, result.error)
        return message

    async def _dispatch(self, message: NotificationMessage) -> SendResult:
        sender = self.senders.get(message.channel)
        if sender is None:
            return SendResult(ok=False, error=f"No sender configured for {message.channel.value}")
        payload = build_webhook_payload(message) if message.channel == NotificationChannel.WEBHOOK else None
        try:
            return await sender.send(message.recipient.address, message.subject, message.body, payload=payload)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Sender for %s raised: %s", message.channel.value, exc)
            return SendResult(ok=False, error=str(exc) or exc.__class__.__name__)

    def _handle_failure(self, message: NotificationMessage, error: str | None) -> None:
        message.retry_count += 1
        message.error_message = error
        message.status = NotificationStatus.FAILED
        if message.retry_count < self.config.max_retries:
            delay = self.config.retry_delay * (2 ** (message.retry_count - 1))
            message.next_retry_at = self.clock() + delay
            LOGGER.warning(
                "Notification %s failed (attempt %d/%d), retry at %s: %s",
                message.id,
                message.retry_count,
                self.config.max_retries,
                message.next_retry_at.isoformat(),
                error,
            )
        else:
            message.next_retry_at = None
            LOGGER.error(
                "Notification %s permanently failed after %d attempts: %s",
                message.id,
                message.retry_count,
                error,
            )

    def _append_history(self, message: NotificationMessage) -> None:
        if self.history is None:
            return
        alert = message.alert
        try:
            self.history.append(alert.device, alert.title, message.body, alert.severity, alert.category)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to add notification %s to history", message.id)

    def _is_due(self, message: NotificationMessage, now: datetime) -> bool:
        if message.status == NotificationStatus.PENDING:
            return True
        return (
            message.status == NotificationStatus.FAILED
            and message.retry_count < self.config.max_retries
            and message.next_retry_at is not None
            and message.next_retry_at <= now
        )

    def _is_terminal(self, message: NotificationMessage) -> bool:
        if message.status in (NotificationStatus.SENT, NotificationStatus.CANCELLED, NotificationStatus.SKIPPED):
            return True
        return message.status == NotificationStatus.FAILED and message.retry_count >= self.config.max_retries

    async def process_pending(self) -> list[NotificationMessage]:
        """Send due messages, then drop the ones that reached a terminal state."""
        async with self._sweep_lock:
            now = self.clock()
            due = [message for message in self._queue if self._is_due(message, now)]
            LOGGER.debug("Processing %d pending notifications", len(due))
            for message in due:
                try:
                    await self.send_message(message)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Failed to process notification %s", message.id)
            self._queue = [message for message in self._queue if not self._is_terminal(message)]
            return due

    def pending_messages(self) -> list[NotificationMessage]:
        return list(self._queue)

    def cancel(self, message_id: int) -> bool:
        for message in self._queue:
            if message.id != message_id:
                continue
            if message.id in self._in_flight or self._is_terminal(message):
                return False
            message.status = NotificationStatus.CANCELLED
            LOGGER.info("Cancelled notification %s", message_id)
            return True
        return False

    async def test_channel(self, channel: NotificationChannel, address: str) -> SendResult:
        LOGGER.info("Testing notification channel %s to %s", channel.value, address)
        sender = self.senders.get(channel)
        if sender is None:
            return SendResult(ok=False, error=f"No sender configured for {channel.value}")
        body = TEST_MESSAGE.format(timestamp=self.clock().strftime("%Y-%m-%d %H:%M:%S"))
        payload = {"test": True, "message": body} if channel == NotificationChannel.WEBHOOK else None
        try:
            result = await sender.send(address, "PrintFleet Test", body, payload=payload)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Test notification failed for %s", channel.value)
            return SendResult(ok=False, error=str(exc))
        LOGGER.info("Test notification %s for %s", "succeeded" if result.ok else "failed", channel.value)
        return result
