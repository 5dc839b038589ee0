from __future__ import annotations

import logging
import os
from datetime import time, timedelta
from pathlib import Path
from typing import Any

import yaml

from printfleet.models import (
    AlertCategory,
    AlertSeverity,
    DiscoverySettings,
    ForecastParameters,
    MonitoringSettings,
    NotificationChannel,
    NotificationConfig,
    NotificationRecipient,
    ServiceSettings,
)
from printfleet.quiet_hours import parse_weekday
from printfleet.ranges import RangeError, split_tokens

LOGGER = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    pass


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in TRUTHY


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return data


def resolve_settings(path: str | None) -> dict[str, Any]:
    if path and Path(path).exists():
        try:
            settings = load_yaml(path)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    elif path and os.getenv("PRINTFLEET_SETTINGS_REQUIRED", "false").lower() in TRUTHY:
        raise ConfigError(f"Settings file not found: {path}")
    else:
        settings = {}

    settings.setdefault("paths", {})
    settings.setdefault("discovery", {})
    settings.setdefault("monitoring", {})
    settings.setdefault("notifications", {})
    settings.setdefault("forecast", {})
    settings.setdefault("api", {})
    settings.setdefault("protocols", {})
    settings.setdefault("recipients", [])
    settings["paths"].setdefault("db_path", os.getenv("PRINTFLEET_DB_PATH", "/data/printfleet.db"))
    settings["discovery"].setdefault("ip_range", os.getenv("PRINTFLEET_IP_RANGE", "192.168.1.0/24"))
    settings["discovery"].setdefault("scan_timeout", float(os.getenv("PRINTFLEET_SCAN_TIMEOUT", "3")))
    settings["discovery"].setdefault("max_concurrent_scans", int(os.getenv("PRINTFLEET_MAX_CONCURRENT_SCANS", "50")))
    settings["discovery"].setdefault("scan_retries", int(os.getenv("PRINTFLEET_SCAN_RETRIES", "1")))
    settings["discovery"].setdefault("retry_delay", 1.0)
    settings["discovery"].setdefault("enable_snmp_fingerprint", True)
    settings["discovery"].setdefault("enable_incremental", _env_flag("PRINTFLEET_INCREMENTAL_SCAN", "false"))
    settings["monitoring"].setdefault("discovery_interval_minutes", 240)
    settings["monitoring"].setdefault("poll_interval_seconds", int(os.getenv("PRINTFLEET_POLL_INTERVAL_SECONDS", "300")))
    settings["monitoring"].setdefault("forecast_interval_minutes", 360)
    settings["monitoring"].setdefault("sweep_interval_seconds", 30)
    settings["monitoring"].setdefault("poll_concurrency", 10)
    settings["monitoring"].setdefault("poll_timeout_seconds", 30)
    settings["monitoring"].setdefault("auto_resolve", _env_flag("PRINTFLEET_AUTO_RESOLVE", "false"))
    settings["notifications"].setdefault("rate_limit_window_seconds", 300)
    settings["notifications"].setdefault("max_notifications_per_window", 10)
    settings["notifications"].setdefault("max_retries", 3)
    settings["notifications"].setdefault("retry_delay_seconds", 60)
    settings["notifications"].setdefault("webhook", {})
    settings["notifications"]["webhook"].setdefault("secret", os.getenv("PRINTFLEET_WEBHOOK_SECRET", ""))
    settings["notifications"]["webhook"].setdefault("headers", {})
    settings["notifications"].setdefault("telegram", {})
    settings["notifications"]["telegram"].setdefault("bot_token", os.getenv("PRINTFLEET_TELEGRAM_BOT_TOKEN", ""))
    settings["notifications"].setdefault("email", {})
    settings["notifications"]["email"].setdefault("sendgrid_api_key", os.getenv("PRINTFLEET_SENDGRID_API_KEY", ""))
    settings["notifications"]["email"].setdefault("from_email", os.getenv("PRINTFLEET_ALERT_FROM_EMAIL", "alerts@printfleet.local"))
    settings["forecast"].setdefault("ewma_alpha", 0.3)
    settings["forecast"].setdefault("minimum_data_points", 7)
    settings["forecast"].setdefault("confidence_level", 0.8)
    settings["forecast"].setdefault("history_limit", 10)
    settings["api"].setdefault("host", os.getenv("PRINTFLEET_API_HOST", "127.0.0.1"))
    settings["api"].setdefault("port", int(os.getenv("PRINTFLEET_API_PORT", "8080")))
    settings["api"].setdefault("enabled", True)
    settings["protocols"].setdefault("adapters", [])
    return settings


def discovery_settings(settings: dict[str, Any]) -> DiscoverySettings:
    section = settings.get("discovery", {})
    try:
        split_tokens(section.get("ip_range", ""))
        return DiscoverySettings.from_dict(section)
    except (RangeError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid discovery settings: {exc}") from exc


def monitoring_settings(settings: dict[str, Any]) -> MonitoringSettings:
    section = settings.get("monitoring", {})
    try:
        result = MonitoringSettings(
            discovery_interval=timedelta(minutes=float(section.get("discovery_interval_minutes", 240))),
            poll_interval=timedelta(seconds=float(section.get("poll_interval_seconds", 300))),
            forecast_interval=timedelta(minutes=float(section.get("forecast_interval_minutes", 360))),
            sweep_interval=timedelta(seconds=float(section.get("sweep_interval_seconds", 30))),
            poll_concurrency=int(section.get("poll_concurrency", 10)),
            poll_timeout=float(section.get("poll_timeout_seconds", 30)),
            auto_resolve=bool(section.get("auto_resolve", False)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid monitoring settings: {exc}") from exc
    if result.poll_concurrency < 1:
        raise ConfigError("monitoring.poll_concurrency must be >= 1")
    for name in ("discovery_interval", "poll_interval", "forecast_interval", "sweep_interval"):
        if getattr(result, name) <= timedelta(0):
            raise ConfigError(f"monitoring.{name} must be positive")
    return result


def notification_config(settings: dict[str, Any]) -> NotificationConfig:
    section = settings.get("notifications", {})
    webhook = section.get("webhook") or {}
    try:
        return NotificationConfig(
            rate_limit_window=timedelta(seconds=float(section.get("rate_limit_window_seconds", 300))),
            max_notifications_per_window=int(section.get("max_notifications_per_window", 10)),
            max_retries=int(section.get("max_retries", 3)),
            retry_delay=timedelta(seconds=float(section.get("retry_delay_seconds", 60))),
            webhook_secret=webhook.get("secret") or None,
            webhook_headers=tuple(sorted((str(key), str(value)) for key, value in (webhook.get("headers") or {}).items())),
        )
    except (AttributeError, TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid notification settings: {exc}") from exc


def forecast_parameters(settings: dict[str, Any]) -> ForecastParameters:
    section = settings.get("forecast", {})
    try:
        return ForecastParameters(
            ewma_alpha=float(section.get("ewma_alpha", 0.3)),
            minimum_data_points=int(section.get("minimum_data_points", 7)),
            confidence_level=float(section.get("confidence_level", 0.8)),
            history_limit=int(section.get("history_limit", 10)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid forecast settings: {exc}") from exc


def service_settings(settings: dict[str, Any]) -> ServiceSettings:
    return ServiceSettings(
        discovery=discovery_settings(settings),
        monitoring=monitoring_settings(settings),
        notifications=notification_config(settings),
        forecast=forecast_parameters(settings),
    )


def _parse_time(value: Any) -> time | None:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads an unquoted 22:00 as sexagesimal minutes
        return time(value // 60 % 24, value % 60)
    return time.fromisoformat(str(value))


def load_recipients(settings: dict[str, Any]) -> list[NotificationRecipient]:
    recipients = []
    for index, item in enumerate(settings.get("recipients") or [], start=1):
        try:
            recipients.append(
                NotificationRecipient(
                    id=int(item.get("id", index)),
                    name=str(item["name"]),
                    channel=NotificationChannel(item["channel"]),
                    address=str(item["address"]),
                    site_id=item.get("site_id"),
                    min_severity=AlertSeverity.parse(item["min_severity"]) if item.get("min_severity") else None,
                    categories=[AlertCategory(category) for category in item.get("categories") or []],
                    quiet_hours_start=_parse_time(item.get("quiet_hours_start")),
                    quiet_hours_end=_parse_time(item.get("quiet_hours_end")),
                    active_days=[parse_weekday(day) for day in item.get("active_days") or []],
                    enabled=bool(item.get("enabled", True)),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid recipient #{index}: {exc}") from exc
    return recipients
