from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from printfleet.alerts import AlertEngine
from printfleet.models import (
    AlertCategory,
    AlertSeverity,
    DeviceInfo,
    DeviceStatus,
    DiscoveredDevice,
    DiscoveryMethod,
    ForecastParameters,
    MonitoringSettings,
    NotificationChannel,
    NotificationConfig,
    NotificationRecipient,
    SendResult,
    ServiceSettings,
    SupplyKind,
    SupplyReading,
)
from printfleet.notifications import NotificationDispatcher
from printfleet.orchestrator import (
    ALERT_GENERATED,
    DEVICE_UPDATED,
    DISCOVERY_COMPLETED,
    STATUS_CHANGED,
    EventBus,
    MonitoringOrchestrator,
)
from printfleet.scheduler import SettingsStore


def _protocol(levels=(), info=None):
    protocol = AsyncMock()
    protocol.name = "fake"
    protocol.get_supply_levels.return_value = [SupplyReading(kind=kind, percent=level) for kind, level in levels]
    protocol.get_device_info.return_value = info or DeviceInfo(status=DeviceStatus.ONLINE)
    return protocol


@pytest.fixture
def sender():
    sender = AsyncMock()
    sender.send.return_value = SendResult(ok=True)
    return sender


@pytest.fixture
def build(clock, sender):
    def factory(protocol=None, discovery=None, settings=None, auto_resolve=False):
        dispatcher = NotificationDispatcher(
            senders={NotificationChannel.WEBHOOK: sender},
            recipients=[
                NotificationRecipient(
                    id=1, name="ops", channel=NotificationChannel.WEBHOOK, address="https://hooks.example.com/x"
                )
            ],
            clock=clock,
        )
        return MonitoringOrchestrator(
            discovery=discovery or AsyncMock(),
            protocol=protocol if protocol is not None else _protocol(),
            alerts=AlertEngine(clock=clock, auto_resolve=auto_resolve),
            dispatcher=dispatcher,
            forecast=MagicMock(),
            persistence=MagicMock(),
            settings=SettingsStore(settings or ServiceSettings()),
            clock=clock,
        )

    return factory


def _recorder(bus: EventBus):
    events = []
    bus.subscribe(events.append)
    return events


@pytest.mark.asyncio
async def test_poll_raises_and_dispatches_supply_alert(build, make_device, sender):
    orchestrator = build(protocol=_protocol([(SupplyKind.BLACK, 15.0)]))
    orchestrator.load_roster([make_device()])
    events = _recorder(orchestrator.events)

    notified = await orchestrator.poll_tick(orchestrator.settings.snapshot())

    assert len(notified) == 1
    alert = notified[0]
    assert alert.category == AlertCategory.SUPPLY_LOW
    assert alert.last_notified_severity == AlertSeverity.WARNING
    sender.send.assert_awaited_once()
    assert [event.type for event in events] == [DEVICE_UPDATED, ALERT_GENERATED]
    orchestrator.persistence.save_supply_readings.assert_called_once()
    orchestrator.persistence.save_device.assert_called_once()


@pytest.mark.asyncio
async def test_repeated_breach_is_not_renotified_until_escalation(build, make_device, sender, clock):
    protocol = _protocol([(SupplyKind.BLACK, 15.0)])
    orchestrator = build(protocol=protocol)
    orchestrator.load_roster([make_device()])
    snapshot = orchestrator.settings.snapshot()

    await orchestrator.poll_tick(snapshot)
    clock.advance(minutes=5)
    assert await orchestrator.poll_tick(snapshot) == []
    assert sender.send.await_count == 1

    protocol.get_supply_levels.return_value = [SupplyReading(kind=SupplyKind.BLACK, percent=4.0)]
    clock.advance(minutes=5)
    escalated = await orchestrator.poll_tick(snapshot)

    assert [alert.severity for alert in escalated] == [AlertSeverity.CRITICAL]
    assert escalated[0].occurrence_count == 3
    assert sender.send.await_count == 2


@pytest.mark.asyncio
async def test_previous_reading_feeds_hysteresis(build, make_device):
    protocol = _protocol([(SupplyKind.BLACK, 30.0)])
    orchestrator = build(protocol=protocol)
    orchestrator.load_roster([make_device()])
    snapshot = orchestrator.settings.snapshot()

    assert await orchestrator.poll_tick(snapshot) == []
    # 27% is above the plain 25% threshold but inside it once widened by the 3% margin
    protocol.get_supply_levels.return_value = [SupplyReading(kind=SupplyKind.BLACK, percent=27.0)]
    notified = await orchestrator.poll_tick(snapshot)

    assert len(notified) == 1
    assert notified[0].threshold == 28.0


@pytest.mark.asyncio
async def test_unreachable_device_goes_offline(build, make_device):
    protocol = _protocol()
    protocol.get_supply_levels.side_effect = ConnectionError("no route to host")
    orchestrator = build(protocol=protocol)
    device = make_device()
    orchestrator.load_roster([device])
    events = _recorder(orchestrator.events)

    notified = await orchestrator.poll_tick(orchestrator.settings.snapshot())

    assert device.status == DeviceStatus.OFFLINE
    assert [alert.category for alert in notified] == [AlertCategory.DEVICE_OFFLINE]
    status_events = [event for event in events if event.type == STATUS_CHANGED]
    assert status_events[0].payload["previous"] == DeviceStatus.ONLINE
    assert status_events[0].payload["current"] == DeviceStatus.OFFLINE
    orchestrator.persistence.save_supply_readings.assert_not_called()


@pytest.mark.asyncio
async def test_slow_device_times_out(build, make_device):
    protocol = _protocol()

    async def hang(address, credential=None):
        await asyncio.sleep(5)

    protocol.get_supply_levels.side_effect = hang
    settings = ServiceSettings(monitoring=MonitoringSettings(poll_timeout=0.05))
    orchestrator = build(protocol=protocol, settings=settings)
    device = make_device()
    orchestrator.load_roster([device])

    await orchestrator.poll_tick(orchestrator.settings.snapshot())

    assert device.status == DeviceStatus.OFFLINE


@pytest.mark.asyncio
async def test_device_error_status_raises_error_alert(build, make_device):
    protocol = _protocol([(SupplyKind.BLACK, 80.0)], DeviceInfo(vendor="Xerox", status=DeviceStatus.ERROR))
    orchestrator = build(protocol=protocol)
    device = make_device(vendor=None)
    orchestrator.load_roster([device])

    notified = await orchestrator.poll_tick(orchestrator.settings.snapshot())

    assert device.status == DeviceStatus.ERROR
    assert device.vendor == "Xerox"
    assert [alert.category for alert in notified] == [AlertCategory.DEVICE_ERROR]


@pytest.mark.asyncio
async def test_inactive_devices_are_not_polled(build, make_device):
    protocol = _protocol([(SupplyKind.BLACK, 5.0)])
    orchestrator = build(protocol=protocol)
    orchestrator.load_roster([make_device(1, is_active=False), make_device(2, ip_address=None)])

    assert await orchestrator.poll_tick(orchestrator.settings.snapshot()) == []
    protocol.get_supply_levels.assert_not_awaited()


@pytest.mark.asyncio
async def test_persistence_failure_keeps_alerts(build, make_device):
    orchestrator = build(protocol=_protocol([(SupplyKind.BLACK, 15.0)]))
    orchestrator.persistence.save_supply_readings.side_effect = RuntimeError("database locked")
    orchestrator.persistence.save_device.side_effect = RuntimeError("database locked")
    orchestrator.load_roster([make_device()])

    notified = await orchestrator.poll_tick(orchestrator.settings.snapshot())

    assert len(notified) == 1


@pytest.mark.asyncio
async def test_poll_tick_applies_auto_resolve_from_snapshot(build, make_device):
    protocol = _protocol([(SupplyKind.BLACK, 15.0)])
    orchestrator = build(protocol=protocol)
    orchestrator.load_roster([make_device()])

    alert = (await orchestrator.poll_tick(orchestrator.settings.snapshot()))[0]
    protocol.get_supply_levels.return_value = [SupplyReading(kind=SupplyKind.BLACK, percent=95.0)]
    await orchestrator.poll_tick(ServiceSettings(monitoring=MonitoringSettings(auto_resolve=True)))

    assert orchestrator.alerts.auto_resolve is True
    assert orchestrator.alerts.active_alerts() == []
    assert alert.resolved_by == "system"


@pytest.mark.asyncio
async def test_discovery_tick_merges_into_roster(build, make_device):
    discovery = AsyncMock()
    discovery.discover.return_value = [
        DiscoveredDevice(ip_address="10.0.0.1", discovery_method=DiscoveryMethod.SUBNET_SCAN, model="M507n"),
        DiscoveredDevice(
            ip_address="10.0.0.77", discovery_method=DiscoveryMethod.DIRECTORY, hostname="prn-77", vendor="Canon"
        ),
    ]
    orchestrator = build(discovery=discovery)
    existing = make_device(3, ip_address="10.0.0.1")
    orchestrator.load_roster([existing])
    events = _recorder(orchestrator.events)

    touched = await orchestrator.discovery_tick(orchestrator.settings.snapshot())

    assert touched[0] is existing
    assert existing.model == "M507n"
    added = touched[1]
    assert added.id == 4
    assert added.hostname == "prn-77"
    assert set(orchestrator.devices) == {3, 4}
    assert orchestrator.persistence.save_device.call_count == 2
    completed = events[-1]
    assert completed.type == DISCOVERY_COMPLETED
    assert completed.payload == {"found": 2, "added": 1}
    discovery.discover.assert_awaited_once_with(orchestrator.settings.snapshot().discovery)


@pytest.mark.asyncio
async def test_subscriber_errors_do_not_propagate(caplog):
    bus = EventBus()
    received = []

    def broken(event):
        raise ValueError("bad subscriber")

    async def good(event):
        received.append(event.type)

    bus.subscribe(broken)
    bus.subscribe(good, event_type=ALERT_GENERATED)

    await bus.publish(DEVICE_UPDATED, device=None)
    await bus.publish(ALERT_GENERATED, alert=None)

    assert received == [ALERT_GENERATED]
    assert "Event subscriber failed" in caplog.text


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(received.append)

    await bus.publish(DEVICE_UPDATED)
    unsubscribe()
    await bus.publish(DEVICE_UPDATED)

    assert len(received) == 1


@pytest.mark.asyncio
async def test_forecast_tick_uses_snapshot_parameters(build, make_device):
    orchestrator = build()
    orchestrator.forecast.update_all.return_value = {1: []}
    orchestrator.load_roster([make_device()])
    parameters = ForecastParameters(confidence_level=0.95)

    result = await orchestrator.forecast_tick(ServiceSettings(forecast=parameters))

    assert result == {1: []}
    devices, passed = orchestrator.forecast.update_all.call_args.args
    assert [device.id for device in devices] == [1]
    assert passed is parameters


@pytest.mark.asyncio
async def test_sweep_tick_applies_notification_config(build):
    orchestrator = build()
    config = NotificationConfig(max_notifications_per_window=1)

    await orchestrator.sweep_tick(ServiceSettings(notifications=config))

    assert orchestrator.dispatcher.config is config
    assert orchestrator.dispatcher.rate_limiter.max_per_window == 1


@pytest.mark.asyncio
async def test_start_schedules_all_tasks_and_stop_cancels_them(build):
    orchestrator = build()

    orchestrator.start(run_immediately=False)
    assert orchestrator.scheduler.job_ids() == ["discovery", "forecast", "poll", "sweep"]

    orchestrator.stop()
    assert orchestrator.scheduler.job_ids() == []
    assert orchestrator.handles == {}


@pytest.mark.asyncio
async def test_start_without_protocol_skips_polling(clock):
    orchestrator = MonitoringOrchestrator(
        discovery=AsyncMock(),
        protocol=None,
        alerts=AlertEngine(clock=clock),
        dispatcher=NotificationDispatcher(senders={}),
        forecast=MagicMock(),
        persistence=MagicMock(),
    )

    orchestrator.start(run_immediately=False)
    try:
        assert orchestrator.scheduler.job_ids() == ["discovery", "forecast", "sweep"]
        assert await orchestrator.poll_tick(orchestrator.settings.snapshot()) == []
    finally:
        orchestrator.stop()
