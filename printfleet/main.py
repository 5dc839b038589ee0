from __future__ import annotations

import argparse
import asyncio
import contextlib
import importlib
import json
import logging
import os
import signal
import sys
from typing import Any

import uvicorn

from printfleet.alerts import AlertEngine
from printfleet.api import create_app
from printfleet.discovery import DiscoveryEngine
from printfleet.forecast import ForecastEngine
from printfleet.models import DiscoverySettings, utc_now_iso
from printfleet.notifications import NotificationDispatcher
from printfleet.orchestrator import MonitoringOrchestrator
from printfleet.protocols import PrinterProtocol, ProtocolChain
from printfleet.ranges import RangeError
from printfleet.scheduler import SettingsStore
from printfleet.senders import build_senders
from printfleet.settings import (
    ConfigError,
    load_recipients,
    resolve_settings,
    service_settings,
    setup_logging,
)
from printfleet.storage import SqliteHistoryLog, SqlitePersistence

LOGGER = logging.getLogger(__name__)


def load_adapter(path: str) -> PrinterProtocol:
    """Instantiate a protocol adapter from a ``package.module:ClassName`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Adapter path must look like 'module:Class', got {path!r}")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot load protocol adapter {path}: {exc}") from exc
    adapter = factory()
    if not isinstance(adapter, PrinterProtocol):
        raise ConfigError(f"{path} does not implement the printer protocol interface")
    return adapter


def build_protocol(settings: dict[str, Any]) -> ProtocolChain | None:
    adapters = [load_adapter(path) for path in settings["protocols"].get("adapters") or []]
    if not adapters:
        return None
    LOGGER.info("Protocol chain: %s", ", ".join(adapter.name for adapter in adapters))
    return ProtocolChain(adapters)


async def run_scan(discovery: DiscoveryEngine, discovery_settings: DiscoverySettings) -> dict[str, Any]:
    devices = await discovery.discover(discovery_settings, force=True)
    return {
        "ip_range": discovery_settings.ip_range,
        "devices": [device.to_dict() for device in devices],
        "generated_at": utc_now_iso(),
    }


def build_orchestrator(settings: dict[str, Any], store: SettingsStore) -> MonitoringOrchestrator:
    snapshot = store.snapshot()
    db_path = settings["paths"]["db_path"]
    persistence = SqlitePersistence(db_path)
    protocol = build_protocol(settings)
    dispatcher = NotificationDispatcher(
        senders=build_senders(settings["notifications"]),
        config=snapshot.notifications,
        history=SqliteHistoryLog(db_path),
        recipients=load_recipients(settings),
    )
    orchestrator = MonitoringOrchestrator(
        discovery=DiscoveryEngine(snmp=protocol),
        protocol=protocol,
        alerts=AlertEngine(auto_resolve=snapshot.monitoring.auto_resolve),
        dispatcher=dispatcher,
        forecast=ForecastEngine(persistence, snapshot.forecast),
        persistence=persistence,
        settings=store,
    )
    orchestrator.load_roster(persistence.load_devices())
    return orchestrator


async def _wait_for_signal() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def run_service(settings: dict[str, Any], log_level: str) -> None:
    store = SettingsStore(service_settings(settings))
    orchestrator = build_orchestrator(settings, store)
    orchestrator.start()
    try:
        if settings["api"].get("enabled", True):
            app = create_app(
                orchestrator.alerts,
                orchestrator.dispatcher,
                store,
                devices=lambda: list(orchestrator.devices.values()),
            )
            config = uvicorn.Config(
                app,
                host=settings["api"]["host"],
                port=int(settings["api"]["port"]),
                log_level=log_level.lower(),
            )
            await uvicorn.Server(config).serve()
        else:
            await _wait_for_signal()
    finally:
        orchestrator.stop()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Printer fleet discovery, supply alerting and notification service")
    parser.add_argument(
        "--settings",
        default=os.getenv("PRINTFLEET_SETTINGS", "/app/config/settings.yaml"),
        help="Path to settings YAML",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", help="Run one discovery pass and print the devices as JSON")
    scan.add_argument("--ip-range", help="Override discovery.ip_range, e.g. 10.0.0.0/24,10.0.1.5")
    scan.add_argument("--timeout", type=float, help="Override discovery.scan_timeout in seconds")
    scan.add_argument("--json-output", help="Optional path for the JSON result")

    run = subparsers.add_parser("run", help="Run the monitoring service")
    run.add_argument("--no-api", action="store_true", help="Do not serve the HTTP API")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = resolve_settings(args.settings)
        if args.command == "scan":
            if args.ip_range:
                settings["discovery"]["ip_range"] = args.ip_range
            if args.timeout:
                settings["discovery"]["scan_timeout"] = args.timeout
            snapshot = service_settings(settings)
        else:
            if args.no_api:
                settings["api"]["enabled"] = False
            service_settings(settings)
    except ConfigError as exc:
        LOGGER.error("Invalid settings: %s", exc)
        return 2

    if args.command == "scan":
        try:
            discovery = DiscoveryEngine(snmp=build_protocol(settings))
            payload = asyncio.run(run_scan(discovery, snapshot.discovery))
        except (ConfigError, RangeError) as exc:
            LOGGER.error("Discovery failed: %s", exc)
            return 2
        text = json.dumps(payload, indent=2, ensure_ascii=False)
        if args.json_output:
            with open(args.json_output, "w", encoding="utf-8") as handle:
                handle.write(text)
        print(text)
        return 0

    try:
        asyncio.run(run_service(settings, args.log_level))
    except ConfigError as exc:
        LOGGER.error("Invalid settings: %s", exc)
        return 2
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
