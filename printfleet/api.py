"""
HTTP API for alerts, rules, notification recipients and templates.
"""
from __future__ import annotations

import dataclasses
import time
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Any, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator

from printfleet.alerts import AlertEngine
from printfleet.models import (
    AlertCategory,
    AlertRule,
    AlertSeverity,
    Device,
    DiscoverySettings,
    NotificationChannel,
    NotificationRecipient,
    NotificationTemplate,
    SupplyKind,
)
from printfleet.notifications import NotificationDispatcher
from printfleet.quiet_hours import parse_weekday
from printfleet.ranges import RangeError, parse_ranges
from printfleet.scheduler import SettingsStore

APP_TITLE = "PrintFleet Monitoring API"
APP_VERSION = "1.0.0"
START_TIME = time.time()

monitoring_router = APIRouter(tags=["monitoring"])
alerts_router = APIRouter(prefix="/api", tags=["alerts"])
notifications_router = APIRouter(prefix="/api", tags=["notifications"])
settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    uptime_seconds: float
    version: str
    active_alerts: int
    pending_notifications: int


def _severity(value: Any) -> Any:
    if value is None or isinstance(value, AlertSeverity):
        return value
    try:
        return AlertSeverity.parse(value)
    except KeyError as exc:
        raise ValueError(f"Unknown severity: {value}") from exc


class ActorPayload(BaseModel):
    who: str = Field(min_length=1)


class RulePayload(BaseModel):
    name: str = Field(min_length=1)
    category: AlertCategory
    default_severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True
    warning_threshold: float | None = Field(default=None, ge=0, le=100)
    critical_threshold: float | None = Field(default=None, ge=0, le=100)
    hysteresis_margin: float | None = Field(default=2.0, ge=0)
    deduplication_window_seconds: float = Field(default=900, gt=0)
    site_id: int | None = None
    device_id: int | None = None
    supply_kind: SupplyKind | None = None

    @field_validator("default_severity", mode="before")
    @classmethod
    def parse_severity(cls, value: Any) -> Any:
        return _severity(value)

    def to_rule(self, rule_id: int = 0) -> AlertRule:
        return AlertRule(
            id=rule_id,
            name=self.name,
            category=self.category,
            default_severity=self.default_severity,
            enabled=self.enabled,
            warning_threshold=self.warning_threshold,
            critical_threshold=self.critical_threshold,
            hysteresis_margin=self.hysteresis_margin,
            deduplication_window=timedelta(seconds=self.deduplication_window_seconds),
            site_id=self.site_id,
            device_id=self.device_id,
            supply_kind=self.supply_kind,
        )


class DeviceThresholdPayload(BaseModel):
    warning: float = Field(ge=0, le=100)
    critical: float = Field(ge=0, le=100)


class RecipientPayload(BaseModel):
    name: str = Field(min_length=1)
    channel: NotificationChannel
    address: str = Field(min_length=1)
    site_id: int | None = None
    min_severity: AlertSeverity | None = None
    categories: list[AlertCategory] = []
    quiet_hours_start: dtime | None = None
    quiet_hours_end: dtime | None = None
    active_days: list[int] = []
    enabled: bool = True

    @field_validator("min_severity", mode="before")
    @classmethod
    def parse_severity(cls, value: Any) -> Any:
        return _severity(value)

    @field_validator("active_days", mode="before")
    @classmethod
    def parse_days(cls, value: Any) -> list[int]:
        return [parse_weekday(day) for day in value or []]

    def to_recipient(self, recipient_id: int = 0) -> NotificationRecipient:
        return NotificationRecipient(id=recipient_id, **self.model_dump())


class TemplatePayload(BaseModel):
    name: str = Field(min_length=1)
    channel: NotificationChannel
    subject: str = ""
    body: str = Field(min_length=1)
    category: AlertCategory | None = None
    min_severity: AlertSeverity | None = None
    enabled: bool = True

    @field_validator("min_severity", mode="before")
    @classmethod
    def parse_severity(cls, value: Any) -> Any:
        return _severity(value)

    def to_template(self, template_id: int = 0) -> NotificationTemplate:
        return NotificationTemplate(id=template_id, **self.model_dump())


class ChannelTestPayload(BaseModel):
    channel: NotificationChannel
    address: str = Field(min_length=1)


class DiscoverySettingsPayload(BaseModel):
    ip_range: str
    scan_timeout: float = Field(default=3.0, gt=0)
    max_concurrent_scans: int = Field(default=50, ge=1)
    scan_retries: int = Field(default=1, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    enable_snmp_fingerprint: bool = True
    enable_incremental: bool = False
    use_subnet_scan: bool = True
    use_directory: bool = True
    use_management: bool = True


def get_alerts(request: Request) -> AlertEngine:
    return request.app.state.alerts


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_settings_store(request: Request) -> SettingsStore:
    return request.app.state.settings


def _not_found(kind: str, item_id: Any) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{kind} {item_id} not found")


@monitoring_router.get("/health", response_model=HealthResponse)
async def health_check(
    alerts: AlertEngine = Depends(get_alerts),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=round(time.time() - START_TIME, 2),
        version=APP_VERSION,
        active_alerts=len(alerts.active_alerts()),
        pending_notifications=len(dispatcher.pending_messages()),
    )


@monitoring_router.get("/api/devices")
async def list_devices(request: Request) -> list[dict]:
    provider: Callable[[], list[Device]] | None = request.app.state.devices
    if provider is None:
        return []
    return [device.to_dict() for device in provider()]


@alerts_router.get("/alerts")
async def list_alerts(
    site_id: int | None = None,
    device_id: int | None = None,
    min_severity: str | None = None,
    alerts: AlertEngine = Depends(get_alerts),
) -> list[dict]:
    severity = None
    if min_severity:
        try:
            severity = AlertSeverity.parse(min_severity)
        except (KeyError, ValueError):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown severity: {min_severity}")
    return [alert.to_dict() for alert in alerts.active_alerts(site_id, device_id, severity)]


@alerts_router.get("/alerts/{alert_id}")
async def get_alert(alert_id: int, alerts: AlertEngine = Depends(get_alerts)) -> dict:
    alert = alerts.get_alert(alert_id)
    if alert is None:
        raise _not_found("Alert", alert_id)
    return alert.to_dict()


@alerts_router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: int, payload: ActorPayload, alerts: AlertEngine = Depends(get_alerts)) -> dict:
    alert = alerts.acknowledge(alert_id, payload.who)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Alert {alert_id} is not active")
    return alert.to_dict()


@alerts_router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: int, payload: ActorPayload, alerts: AlertEngine = Depends(get_alerts)) -> dict:
    alert = alerts.resolve(alert_id, payload.who)
    if alert is None:
        raise _not_found("Alert", alert_id)
    return alert.to_dict()


@alerts_router.get("/rules")
async def list_rules(
    site_id: int | None = None, device_id: int | None = None, alerts: AlertEngine = Depends(get_alerts)
) -> list[dict]:
    return [rule.to_dict() for rule in alerts.rules(site_id, device_id)]


@alerts_router.post("/rules", status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RulePayload, alerts: AlertEngine = Depends(get_alerts)) -> dict:
    return alerts.save_rule(payload.to_rule()).to_dict()


@alerts_router.put("/rules/{rule_id}")
async def update_rule(rule_id: int, payload: RulePayload, alerts: AlertEngine = Depends(get_alerts)) -> dict:
    if alerts.get_rule(rule_id) is None:
        raise _not_found("Rule", rule_id)
    return alerts.save_rule(payload.to_rule(rule_id)).to_dict()


@alerts_router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: int, alerts: AlertEngine = Depends(get_alerts)) -> None:
    if not alerts.delete_rule(rule_id):
        raise _not_found("Rule", rule_id)


@alerts_router.put("/devices/{device_id}/thresholds/{kind}")
async def save_device_thresholds(
    device_id: int,
    kind: SupplyKind,
    payload: DeviceThresholdPayload,
    alerts: AlertEngine = Depends(get_alerts),
) -> dict:
    if payload.critical > payload.warning:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="critical must not exceed warning")
    return alerts.save_device_rule(device_id, kind, payload.warning, payload.critical).to_dict()


@notifications_router.get("/recipients")
async def list_recipients(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> list[dict]:
    return [recipient.to_dict() for recipient in dispatcher.recipients()]


@notifications_router.post("/recipients", status_code=status.HTTP_201_CREATED)
async def create_recipient(
    payload: RecipientPayload, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> dict:
    return dispatcher.save_recipient(payload.to_recipient()).to_dict()


@notifications_router.put("/recipients/{recipient_id}")
async def update_recipient(
    recipient_id: int, payload: RecipientPayload, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> dict:
    if dispatcher.get_recipient(recipient_id) is None:
        raise _not_found("Recipient", recipient_id)
    return dispatcher.save_recipient(payload.to_recipient(recipient_id)).to_dict()


@notifications_router.delete("/recipients/{recipient_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_recipient(recipient_id: int, dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> None:
    if not dispatcher.delete_recipient(recipient_id):
        raise _not_found("Recipient", recipient_id)


@notifications_router.get("/templates")
async def list_templates(
    channel: NotificationChannel | None = None, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> list[dict]:
    return [template.to_dict() for template in dispatcher.templates(channel)]


@notifications_router.post("/templates", status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplatePayload, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> dict:
    return dispatcher.save_template(payload.to_template()).to_dict()


@notifications_router.put("/templates/{template_id}")
async def update_template(
    template_id: int, payload: TemplatePayload, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> dict:
    if not any(template.id == template_id for template in dispatcher.templates()):
        raise _not_found("Template", template_id)
    return dispatcher.save_template(payload.to_template(template_id)).to_dict()


@notifications_router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(template_id: int, dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> None:
    if not dispatcher.delete_template(template_id):
        raise _not_found("Template", template_id)


@notifications_router.get("/notifications/pending")
async def list_pending(dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> list[dict]:
    return [
        {
            "id": message.id,
            "alert_id": message.alert.id,
            "recipient": message.recipient.name,
            "channel": message.channel.value,
            "status": message.status.value,
            "retry_count": message.retry_count,
            "next_retry_at": message.next_retry_at.isoformat() if message.next_retry_at else None,
            "error_message": message.error_message,
        }
        for message in dispatcher.pending_messages()
    ]


@notifications_router.post("/notifications/{message_id}/cancel")
async def cancel_notification(message_id: int, dispatcher: NotificationDispatcher = Depends(get_dispatcher)) -> dict:
    if not dispatcher.cancel(message_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Notification {message_id} cannot be cancelled")
    return {"id": message_id, "status": "cancelled"}


@notifications_router.post("/notifications/test")
async def test_notification_channel(
    payload: ChannelTestPayload, dispatcher: NotificationDispatcher = Depends(get_dispatcher)
) -> dict:
    result = await dispatcher.test_channel(payload.channel, payload.address)
    return {"ok": result.ok, "error": result.error}


@settings_router.get("/discovery")
def get_discovery_settings(store: SettingsStore = Depends(get_settings_store)) -> dict:
    return store.snapshot().discovery.to_dict()


@settings_router.put("/discovery")
def update_discovery_settings(
    payload: DiscoverySettingsPayload, store: SettingsStore = Depends(get_settings_store)
) -> dict:
    try:
        parse_ranges(payload.ip_range)
    except RangeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    updated = store.update(discovery=DiscoverySettings(**payload.model_dump()))
    return updated.discovery.to_dict()


@settings_router.get("/forecast")
def get_forecast_settings(store: SettingsStore = Depends(get_settings_store)) -> dict:
    return dataclasses.asdict(store.snapshot().forecast)


def create_app(
    alerts: AlertEngine,
    dispatcher: NotificationDispatcher,
    settings: SettingsStore,
    devices: Callable[[], list[Device]] | None = None,
) -> FastAPI:
    app = FastAPI(title=APP_TITLE, version=APP_VERSION)
    app.state.alerts = alerts
    app.state.dispatcher = dispatcher
    app.state.settings = settings
    app.state.devices = devices
    app.include_router(monitoring_router)
    app.include_router(alerts_router)
    app.include_router(notifications_router)
    app.include_router(settings_router)
    return app
