from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from printfleet.models import DeviceInfo, SupplyKind, SupplyReading
from printfleet.protocols import ProtocolChain, ProtocolError


def _adapter(name, available=True, readings=None, info=None, error=None):
    adapter = AsyncMock()
    adapter.name = name
    adapter.probe_available.return_value = available
    if error is not None:
        adapter.get_supply_levels.side_effect = error
        adapter.get_device_info.side_effect = error
    else:
        adapter.get_supply_levels.return_value = readings or []
        adapter.get_device_info.return_value = info or DeviceInfo(vendor=name)
    return adapter


def test_chain_needs_adapters():
    with pytest.raises(ValueError):
        ProtocolChain([])


@pytest.mark.asyncio
async def test_first_available_adapter_serves_request():
    unavailable = _adapter("ipp", available=False)
    snmp = _adapter("snmp", readings=[SupplyReading(kind=SupplyKind.BLACK, percent=42.0)])
    chain = ProtocolChain([unavailable, snmp])

    readings = await chain.get_supply_levels("10.0.0.5")

    assert [reading.percent for reading in readings] == [42.0]
    unavailable.get_supply_levels.assert_not_awaited()
    assert (await chain.get_device_info("10.0.0.5")).vendor == "snmp"


@pytest.mark.asyncio
async def test_failing_adapter_falls_through():
    broken = _adapter("vendor-api", error=RuntimeError("HTTP 500"))
    snmp = _adapter("snmp", readings=[SupplyReading(kind=SupplyKind.CYAN, percent=7.0)])
    chain = ProtocolChain([broken, snmp])

    readings = await chain.get_supply_levels("10.0.0.5")

    assert readings[0].kind == SupplyKind.CYAN
    assert (await chain.get_device_info("10.0.0.5")).vendor == "snmp"


@pytest.mark.asyncio
async def test_probe_errors_count_as_unavailable():
    flaky = _adapter("ipp")
    flaky.probe_available.side_effect = OSError("connection reset")
    chain = ProtocolChain([flaky])

    assert await chain.probe_available("10.0.0.5") is False
    with pytest.raises(ProtocolError, match="No protocol answered"):
        await chain.get_supply_levels("10.0.0.5")


@pytest.mark.asyncio
async def test_all_adapters_failing_raises():
    chain = ProtocolChain([_adapter("snmp", error=TimeoutError("timed out")), _adapter("ipp", error=OSError("refused"))])

    with pytest.raises(ProtocolError, match="snmp: timed out; ipp: refused"):
        await chain.get_supply_levels("10.0.0.5")
    with pytest.raises(ProtocolError):
        await chain.get_device_info("10.0.0.5")


@pytest.mark.asyncio
async def test_empty_answer_is_not_an_error():
    chain = ProtocolChain([_adapter("snmp", readings=[])])
    assert await chain.get_supply_levels("10.0.0.5") == []
