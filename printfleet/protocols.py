"""Contracts for the collaborators the monitoring core consumes.

Printer protocol adapters, directory and management discovery sources,
persistence and the notification history log live outside this package;
anything that satisfies these protocols can be plugged in.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from printfleet.models import (
    AlertCategory,
    AlertSeverity,
    Credential,
    DiscoveredDevice,
    Device,
    DeviceInfo,
    ForecastSnapshot,
    SendResult,
    SupplyKind,
    SupplyReading,
)

LOGGER = logging.getLogger(__name__)


class ProtocolError(RuntimeError):
    pass


@runtime_checkable
class PrinterProtocol(Protocol):
    name: str

    async def probe_available(self, address: str, credential: Credential | None = None) -> bool: ...

    async def get_device_info(self, address: str, credential: Credential | None = None) -> DeviceInfo: ...

    async def get_supply_levels(self, address: str, credential: Credential | None = None) -> list[SupplyReading]: ...


class DirectorySource(Protocol):
    async def query(self) -> list[DiscoveredDevice]: ...


class ManagementSource(Protocol):
    async def query(self) -> list[DiscoveredDevice]: ...


class ChannelSender(Protocol):
    async def send(self, address: str, subject: str, body: str, payload: dict | None = None) -> SendResult: ...


class Persistence(Protocol):
    def save_device(self, device: Device) -> Device: ...

    def save_supply_readings(self, device_id: int, readings: Iterable[SupplyReading]) -> None: ...

    def save_forecast_snapshot(self, snapshot: ForecastSnapshot) -> None: ...

    def load_historical_readings(
        self, device_id: int, kind: SupplyKind, limit: int | None = None
    ) -> list[SupplyReading]: ...

    def load_forecast_snapshots(
        self, device_id: int, kind: SupplyKind, limit: int | None = None
    ) -> list[ForecastSnapshot]: ...

    def load_supply_kinds(self, device_id: int) -> list[SupplyKind]: ...


class HistoryLog(Protocol):
    def append(
        self,
        device: Device,
        title: str,
        message: str,
        severity: AlertSeverity,
        category: AlertCategory,
        at: datetime | None = None,
    ) -> None: ...


class ProtocolChain:
    """Tries protocol variants in order until one answers.

    The first adapter that reports itself available for an address serves
    the request. Adapter failures are logged and the next adapter is tried.
    """

    name = "chain"

    def __init__(self, adapters: list[PrinterProtocol]) -> None:
        if not adapters:
            raise ValueError("ProtocolChain needs at least one adapter")
        self.adapters = list(adapters)

    async def _available(self, address: str, credential: Credential | None) -> list[PrinterProtocol]:
        available = []
        for adapter in self.adapters:
            try:
                if await adapter.probe_available(address, credential):
                    available.append(adapter)
            except Exception:  # noqa: BLE001
                LOGGER.warning("Protocol %s probe failed for %s", adapter.name, address, exc_info=True)
        return available

    async def probe_available(self, address: str, credential: Credential | None = None) -> bool:
        return bool(await self._available(address, credential))

    async def get_device_info(self, address: str, credential: Credential | None = None) -> DeviceInfo:
        errors = []
        for adapter in await self._available(address, credential):
            try:
                return await adapter.get_device_info(address, credential)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Protocol %s device info failed for %s: %s", adapter.name, address, exc)
                errors.append(f"{adapter.name}: {exc}")
        raise ProtocolError(f"No protocol could read device info from {address}: {'; '.join(errors) or 'unavailable'}")

    async def get_supply_levels(self, address: str, credential: Credential | None = None) -> list[SupplyReading]:
        available = await self._available(address, credential)
        if not available:
            raise ProtocolError(f"No protocol answered at {address}")
        errors = []
        for adapter in available:
            try:
                readings = await adapter.get_supply_levels(address, credential)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Protocol %s supply read failed for %s: %s", adapter.name, address, exc)
                errors.append(f"{adapter.name}: {exc}")
                continue
            if readings:
                return readings
        if len(errors) == len(available):
            raise ProtocolError(f"No protocol could read supplies from {address}: {'; '.join(errors)}")
        return []
