from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from icmplib import NameLookupError, SocketPermissionError

from printfleet.models import ProbeResult
from printfleet.probes import NetworkProber, port_timeout


def test_port_timeout_is_longer_for_http_ports():
    assert port_timeout(80) == 3.0
    assert port_timeout(443) == 3.0
    assert port_timeout(9100) == 1.0
    assert port_timeout(161) == 1.0


@pytest.mark.asyncio
async def test_probe_port_open_and_closed():
    server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    prober = NetworkProber()
    try:
        opened = await prober.probe_port("127.0.0.1", port, timeout=1.0)
    finally:
        server.close()
        await server.wait_closed()
    closed = await prober.probe_port("127.0.0.1", port, timeout=1.0)

    assert opened.ok is True
    assert opened.elapsed_ms is not None
    assert closed.ok is False
    assert str(port) in closed.error


@pytest.mark.asyncio
async def test_ping_adaptive_splits_the_budget():
    prober = NetworkProber()
    prober.ping = AsyncMock(side_effect=[ProbeResult(ok=False, error="no reply"), ProbeResult(ok=True)])

    result = await prober.ping_adaptive("10.0.0.1", 3.0)

    assert result.ok is True
    budgets = [call.args[1] for call in prober.ping.await_args_list]
    assert budgets == [1.0, 2.0]


@pytest.mark.asyncio
async def test_ping_adaptive_stops_after_first_success():
    prober = NetworkProber()
    prober.ping = AsyncMock(return_value=ProbeResult(ok=True))

    await prober.ping_adaptive("10.0.0.1", 1.0)

    assert prober.ping.await_count == 1
    assert prober.ping.await_args.args[1] == 0.5


@pytest.mark.asyncio
async def test_ping_reports_echo_reply():
    host = MagicMock(is_alive=True, avg_rtt=1.2345)
    with patch("printfleet.probes.async_ping", AsyncMock(return_value=host)) as async_ping:
        result = await NetworkProber().ping("10.0.0.1", 0.5)

    assert result.ok is True
    assert result.elapsed_ms == 1.23
    async_ping.assert_awaited_once_with("10.0.0.1", count=1, timeout=0.5, privileged=False)


@pytest.mark.asyncio
async def test_ping_without_reply_is_not_ok():
    host = MagicMock(is_alive=False, avg_rtt=0.0)
    with patch("printfleet.probes.async_ping", AsyncMock(return_value=host)):
        result = await NetworkProber().ping("10.0.0.1", 0.5)

    assert result.ok is False
    assert result.error == "no echo reply"


@pytest.mark.asyncio
async def test_ping_library_errors_become_results():
    with patch("printfleet.probes.async_ping", AsyncMock(side_effect=NameLookupError("printer.invalid"))):
        result = await NetworkProber().ping("printer.invalid", 0.5)

    assert result.ok is False
    assert result.error.startswith("ping failed")


@pytest.mark.asyncio
async def test_ping_that_never_answers_times_out():
    async def stuck(*args, **kwargs):
        await asyncio.sleep(3600)

    with patch("printfleet.probes.async_ping", stuck), patch("printfleet.probes.ICMP_GRACE_SECONDS", 0.05):
        result = await NetworkProber().ping("10.0.0.1", 0.05)

    assert result.ok is False
    assert result.error == "ping timed out"


@pytest.mark.asyncio
async def test_ping_without_icmp_permission_falls_back_to_tcp():
    prober = NetworkProber()
    denied = AsyncMock(side_effect=SocketPermissionError(False))
    with patch("printfleet.probes.async_ping", denied), patch.object(
        prober,
        "probe_port",
        AsyncMock(side_effect=[ProbeResult(ok=False, error="closed"), ProbeResult(ok=True), ProbeResult(ok=True)]),
    ) as probe_port:
        first = await prober.ping("10.0.0.1", 2.0)
        second = await prober.ping("10.0.0.2", 2.0)

    assert first.ok is True
    assert second.ok is True
    assert prober.icmp_allowed is False
    assert denied.await_count == 1
    assert [call.args[1] for call in probe_port.await_args_list] == [9100, 80, 9100]


@pytest.mark.asyncio
async def test_open_ports_collects_successful_probes():
    prober = NetworkProber()

    async def fake_probe(address, port, timeout=None):
        return ProbeResult(ok=port in (9100, 161))

    prober.probe_port = fake_probe
    assert await prober.open_ports("10.0.0.1") == {9100, 161}
