from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from printfleet.alerts import AlertEngine
from printfleet.discovery import DiscoveryEngine
from printfleet.forecast import ForecastEngine
from printfleet.models import (
    Alert,
    AlertContext,
    AlertStatus,
    Device,
    DeviceInfo,
    DeviceStatus,
    DiscoveredDevice,
    ServiceSettings,
    SupplyKind,
    SupplyReading,
    utc_now,
)
from printfleet.notifications import NotificationDispatcher
from printfleet.protocols import Persistence, PrinterProtocol
from printfleet.scheduler import Scheduler, SettingsStore, TaskHandle

LOGGER = logging.getLogger(__name__)

STATUS_CHANGED = "status_changed"
DEVICE_UPDATED = "device_updated"
ALERT_GENERATED = "alert_generated"
DISCOVERY_COMPLETED = "discovery_completed"


@dataclass
class MonitoringEvent:
    type: str
    payload: dict[str, Any]
    at: datetime = field(default_factory=utc_now)


Subscriber = Callable[[MonitoringEvent], Any]


class EventBus:
    """Observer list for monitoring events. Subscriber errors never propagate."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[str | None, Subscriber]] = []

    def subscribe(self, callback: Subscriber, event_type: str | None = None) -> Callable[[], None]:
        entry = (event_type, callback)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def publish(self, event_type: str, **payload: Any) -> MonitoringEvent:
        event = MonitoringEvent(type=event_type, payload=payload)
        for wanted, callback in list(self._subscribers):
            if wanted is not None and wanted != event_type:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                LOGGER.exception("Event subscriber failed for %s", event_type)
        return event


class MonitoringOrchestrator:
    """Drives discovery, polling, forecasting and notification sweeps.

    Each periodic task runs independently on the scheduler and receives the
    settings snapshot taken at the start of its tick.
    """

    def __init__(
        self,
        discovery: DiscoveryEngine,
        protocol: PrinterProtocol | None,
        alerts: AlertEngine,
        dispatcher: NotificationDispatcher,
        forecast: ForecastEngine,
        persistence: Persistence,
        settings: SettingsStore | None = None,
        events: EventBus | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.discovery = discovery
        self.protocol = protocol
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.forecast = forecast
        self.persistence = persistence
        self.settings = settings or SettingsStore()
        self.events = events or EventBus()
        self.scheduler = scheduler or Scheduler(self.settings)
        self.clock = clock
        self.devices: dict[int, Device] = {}
        self.handles: dict[str, TaskHandle] = {}
        self._previous: dict[tuple[int, SupplyKind], float] = {}

    # Lifecycle

    def load_roster(self, devices: list[Device]) -> None:
        for device in devices:
            self.devices[device.id] = device
        LOGGER.info("Roster loaded with %d devices", len(self.devices))

    def start(self, run_immediately: bool = True) -> None:
        monitoring = self.settings.snapshot().monitoring
        self.handles = {
            "discovery": self.scheduler.add("discovery", monitoring.discovery_interval, self.discovery_tick, run_immediately),
            "forecast": self.scheduler.add("forecast", monitoring.forecast_interval, self.forecast_tick),
            "sweep": self.scheduler.add("sweep", monitoring.sweep_interval, self.sweep_tick),
        }
        if self.protocol is None:
            LOGGER.warning("No printer protocol configured, supply polling disabled")
        else:
            self.handles["poll"] = self.scheduler.add("poll", monitoring.poll_interval, self.poll_tick, run_immediately)
        self.scheduler.start()
        LOGGER.info("Monitoring started")

    def stop(self) -> None:
        for handle in self.handles.values():
            handle.cancel()
        self.handles = {}
        self.scheduler.shutdown()
        LOGGER.info("Monitoring stopped")

    # Discovery

    def _next_device_id(self) -> int:
        return max(self.devices, default=0) + 1

    def _merge_discovered(self, found: DiscoveredDevice, now: datetime) -> tuple[Device, bool]:
        existing = next((device for device in self.devices.values() if device.ip_address == found.ip_address), None)
        if existing is None:
            device = Device(
                id=self._next_device_id(),
                hostname=found.hostname or found.ip_address,
                ip_address=found.ip_address,
                vendor=found.vendor,
                model=found.model,
                serial_number=found.serial_number,
                status=DeviceStatus.ONLINE,
                last_seen=now,
            )
            self.devices[device.id] = device
            return device, True
        existing.hostname = found.hostname or existing.hostname
        existing.vendor = found.vendor or existing.vendor
        existing.model = found.model or existing.model
        existing.serial_number = found.serial_number or existing.serial_number
        existing.last_seen = now
        return existing, False

    async def discovery_tick(self, snapshot: ServiceSettings) -> list[Device]:
        found = await self.discovery.discover(snapshot.discovery)
        now = self.clock()
        touched = []
        added = 0
        for item in found:
            device, is_new = self._merge_discovered(item, now)
            added += int(is_new)
            try:
                await asyncio.to_thread(self.persistence.save_device, device)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to save discovered device %s", device.ip_address)
            touched.append(device)
            await self.events.publish(DEVICE_UPDATED, device=device, new=is_new)
        await self.events.publish(DISCOVERY_COMPLETED, found=len(found), added=added)
        LOGGER.info("Discovery tick merged %d devices (%d new)", len(found), added)
        return touched

    # Polling

    async def _read_device(self, device: Device, timeout: float) -> tuple[DeviceInfo | None, list[SupplyReading]]:
        if self.protocol is None:
            raise RuntimeError("No printer protocol configured")

        async def read() -> tuple[DeviceInfo | None, list[SupplyReading]]:
            readings = await self.protocol.get_supply_levels(device.ip_address, device.credential)
            try:
                info = await self.protocol.get_device_info(device.ip_address, device.credential)
            except Exception as exc:  # noqa: BLE001
                LOGGER.debug("Device info unavailable for %s: %s", device.hostname, exc)
                info = None
            return info, list(readings)

        return await asyncio.wait_for(read(), timeout=timeout)

    async def _set_status(self, device: Device, status: DeviceStatus) -> None:
        if device.status == status:
            return
        previous = device.status
        device.status = status
        await self.events.publish(STATUS_CHANGED, device=device, previous=previous, current=status)

    async def poll_device(self, device: Device, snapshot: ServiceSettings) -> list[Alert]:
        reachable = True
        info: DeviceInfo | None = None
        readings: list[SupplyReading] = []
        try:
            info, readings = await self._read_device(device, snapshot.monitoring.poll_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Polling %s timed out", device.hostname)
            reachable = False
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Polling %s failed: %s", device.hostname, exc)
            reachable = False

        if not reachable:
            status = DeviceStatus.OFFLINE
        elif info is not None and info.status in (DeviceStatus.ERROR, DeviceStatus.WARNING):
            status = info.status
        else:
            status = DeviceStatus.ONLINE
        await self._set_status(device, status)

        raised = list(self.alerts.evaluate_device(device, reachable, status))
        if reachable:
            device.last_seen = self.clock()
            if info is not None:
                device.vendor = info.vendor or device.vendor
                device.model = info.model or device.model
                device.serial_number = info.serial_number or device.serial_number
            if readings:
                try:
                    await asyncio.to_thread(self.persistence.save_supply_readings, device.id, readings)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Failed to save supply readings for device %s", device.id)
            contexts = []
            for reading in readings:
                if reading.percent is None:
                    continue
                key = (device.id, reading.kind)
                contexts.append(
                    AlertContext(
                        device=device,
                        supply=reading,
                        current_value=reading.percent,
                        previous_value=self._previous.get(key),
                        timestamp=reading.timestamp,
                    )
                )
                self._previous[key] = reading.percent
            raised.extend(self.alerts.evaluate_many(contexts))

        try:
            await asyncio.to_thread(self.persistence.save_device, device)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to save device %s", device.id)
        await self.events.publish(DEVICE_UPDATED, device=device, new=False)
        return raised

    async def poll_tick(self, snapshot: ServiceSettings) -> list[Alert]:
        if self.protocol is None:
            return []
        self.alerts.auto_resolve = snapshot.monitoring.auto_resolve
        semaphore = asyncio.Semaphore(snapshot.monitoring.poll_concurrency)
        devices = [device for device in self.devices.values() if device.is_active and device.ip_address]

        async def bounded(device: Device) -> list[Alert]:
            async with semaphore:
                try:
                    return await self.poll_device(device, snapshot)
                except Exception:  # noqa: BLE001
                    LOGGER.exception("Poll cycle failed for device %s", device.id)
                    return []

        results = await asyncio.gather(*(bounded(device) for device in devices))
        notified = []
        for alerts in results:
            for alert in alerts:
                if await self.handle_alert(alert):
                    notified.append(alert)
        LOGGER.info("Poll tick covered %d devices, %d alerts dispatched", len(devices), len(notified))
        return notified

    @staticmethod
    def should_notify(alert: Alert) -> bool:
        if alert.status != AlertStatus.ACTIVE:
            return False
        return alert.last_notified_severity is None or alert.severity > alert.last_notified_severity

    async def handle_alert(self, alert: Alert) -> bool:
        if not self.should_notify(alert):
            return False
        alert.last_notified_severity = alert.severity
        await self.events.publish(ALERT_GENERATED, alert=alert)
        await self.dispatcher.notify(alert)
        return True

    # Forecast and notification sweep

    async def forecast_tick(self, snapshot: ServiceSettings) -> dict:
        devices = list(self.devices.values())
        return await asyncio.to_thread(self.forecast.update_all, devices, snapshot.forecast)

    async def sweep_tick(self, snapshot: ServiceSettings) -> int:
        if self.dispatcher.config != snapshot.notifications:
            self.dispatcher.update_config(snapshot.notifications)
        processed = await self.dispatcher.process_pending()
        return len(processed)
