"""
Shared fixtures for printfleet tests.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from printfleet.models import Device, DeviceStatus, Site


class FakeClock:
    """Manually advanced clock, injected wherever the code asks for ``clock``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday, mid-morning UTC
    return FakeClock(datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_device():
    def factory(device_id: int = 1, **overrides) -> Device:
        values = {
            "id": device_id,
            "hostname": f"printer-{device_id:02d}",
            "ip_address": f"10.0.0.{device_id}",
            "site_id": 1,
            "site": Site(id=1, name="HQ"),
            "location": "Floor 2",
            "vendor": "HP",
            "model": "LaserJet M507",
            "status": DeviceStatus.ONLINE,
        }
        values.update(overrides)
        return Device(**values)

    return factory
