from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from printfleet.models import DiscoverySettings, MonitoringSettings, ServiceSettings
from printfleet.scheduler import Scheduler, SettingsStore


def test_settings_store_snapshots_are_immutable_values():
    store = SettingsStore()
    before = store.snapshot()

    after = store.update(discovery=DiscoverySettings(ip_range="10.0.0.0/24"))

    assert before.discovery.ip_range == "192.168.1.0/24"
    assert after.discovery.ip_range == "10.0.0.0/24"
    assert store.snapshot() is after
    assert after.monitoring is before.monitoring


def test_add_registers_interval_jobs():
    scheduler = Scheduler(SettingsStore())

    async def tick(snapshot):
        return None

    scheduler.add("poll", timedelta(minutes=5), tick)
    scheduler.add("sweep", timedelta(seconds=30), tick, run_immediately=True)
    scheduler.add("poll", timedelta(minutes=1), tick)

    assert scheduler.job_ids() == ["poll", "sweep"]
    assert scheduler.scheduler.get_job("poll").trigger.interval == timedelta(minutes=1)


@pytest.mark.asyncio
async def test_tick_sees_snapshot_taken_at_start():
    store = SettingsStore(ServiceSettings(monitoring=MonitoringSettings(poll_concurrency=3)))
    scheduler = Scheduler(store)
    seen = []
    release = asyncio.Event()

    async def tick(snapshot):
        seen.append(snapshot.monitoring.poll_concurrency)
        await release.wait()
        seen.append(snapshot.monitoring.poll_concurrency)
        return "done"

    scheduler.add("poll", timedelta(minutes=5), tick)
    task = asyncio.create_task(scheduler.run_now("poll"))
    await asyncio.sleep(0)
    store.update(monitoring=MonitoringSettings(poll_concurrency=8))
    release.set()

    assert await task == "done"
    assert seen == [3, 3]


@pytest.mark.asyncio
async def test_failing_tick_is_logged_not_raised(caplog):
    scheduler = Scheduler(SettingsStore())

    async def tick(snapshot):
        raise RuntimeError("adapter exploded")

    scheduler.add("poll", timedelta(minutes=5), tick)

    assert await scheduler.run_now("poll") is None
    assert "Scheduled task poll failed" in caplog.text


@pytest.mark.asyncio
async def test_cancel_stops_running_tick_and_removes_job():
    scheduler = Scheduler(SettingsStore())
    started = asyncio.Event()

    async def tick(snapshot):
        started.set()
        await asyncio.sleep(10)

    handle = scheduler.add("discovery", timedelta(hours=4), tick)
    task = asyncio.create_task(scheduler.run_now("discovery"))
    await started.wait()
    assert handle.running

    handle.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert not handle.running
    assert scheduler.job_ids() == []
    assert await scheduler.run_now("discovery") is None


@pytest.mark.asyncio
async def test_start_and_shutdown():
    scheduler = Scheduler(SettingsStore())

    async def tick(snapshot):
        return None

    scheduler.add("sweep", timedelta(seconds=30), tick)
    scheduler.start()
    assert scheduler.scheduler.running

    scheduler.shutdown()
    assert scheduler.job_ids() == []
