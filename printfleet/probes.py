from __future__ import annotations

import asyncio
import logging
import socket
import time

from icmplib import ICMPLibError, SocketPermissionError, async_ping

from printfleet.models import ProbeResult

LOGGER = logging.getLogger(__name__)

PRINTER_PORTS = (161, 80, 443, 9100, 515)
HTTP_PORTS = (80, 443)
SLOW_PORT_TIMEOUT = 3.0
FAST_PORT_TIMEOUT = 1.0
# icmplib enforces its own reply timeout; this only bounds a stuck socket
ICMP_GRACE_SECONDS = 0.5


def port_timeout(port: int) -> float:
    return SLOW_PORT_TIMEOUT if port in HTTP_PORTS else FAST_PORT_TIMEOUT


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)


class NetworkProber:
    """ICMP echo, TCP port and reverse DNS probes.

    Every probe carries its own timeout and reports through ``ProbeResult``
    instead of raising. Cancellation is never swallowed. When the process may
    not open ICMP sockets, echo falls back to TCP liveness checks.
    """

    def __init__(self, privileged: bool = False) -> None:
        self.privileged = privileged
        self.icmp_allowed = True

    async def ping(self, address: str, timeout: float) -> ProbeResult:
        if not self.icmp_allowed:
            return await self._tcp_liveness(address, timeout)

        started = time.monotonic()
        try:
            host = await asyncio.wait_for(
                async_ping(address, count=1, timeout=timeout, privileged=self.privileged),
                timeout=timeout + ICMP_GRACE_SECONDS,
            )
        except SocketPermissionError:
            LOGGER.warning("ICMP sockets are not permitted, using TCP liveness checks instead")
            self.icmp_allowed = False
            return await self._tcp_liveness(address, timeout)
        except asyncio.TimeoutError:
            return ProbeResult(ok=False, error="ping timed out", elapsed_ms=_elapsed_ms(started))
        except (ICMPLibError, OSError) as exc:
            LOGGER.debug("Ping of %s failed: %s", address, exc)
            return ProbeResult(ok=False, error=f"ping failed: {exc}", elapsed_ms=_elapsed_ms(started))
        if not host.is_alive:
            return ProbeResult(ok=False, error="no echo reply", elapsed_ms=_elapsed_ms(started))
        return ProbeResult(ok=True, elapsed_ms=round(host.avg_rtt, 2))

    async def ping_adaptive(self, address: str, timeout: float) -> ProbeResult:
        """Quick echo first, then a second attempt with the remaining budget."""
        first = min(timeout / 2, 1.0)
        result = await self.ping(address, first)
        if result.ok:
            return result
        remainder = timeout - first
        if remainder <= 0:
            return result
        return await self.ping(address, remainder)

    async def probe_port(self, address: str, port: int, timeout: float | None = None) -> ProbeResult:
        budget = port_timeout(port) if timeout is None else timeout
        started = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=budget)
        except asyncio.TimeoutError:
            return ProbeResult(ok=False, error=f"port {port} timed out", elapsed_ms=_elapsed_ms(started))
        except OSError as exc:
            return ProbeResult(ok=False, error=f"port {port}: {exc}", elapsed_ms=_elapsed_ms(started))
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(ok=True, elapsed_ms=_elapsed_ms(started))

    async def open_ports(self, address: str, ports: tuple[int, ...] = PRINTER_PORTS) -> set[int]:
        results = await asyncio.gather(*(self.probe_port(address, port) for port in ports))
        return {port for port, result in zip(ports, results) if result.ok}

    async def reverse_dns(self, address: str, timeout: float = 2.0) -> str | None:
        loop = asyncio.get_running_loop()
        try:
            hostname, _, _ = await asyncio.wait_for(
                loop.run_in_executor(None, socket.gethostbyaddr, address),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, OSError):
            return None
        return hostname or None

    async def _tcp_liveness(self, address: str, timeout: float) -> ProbeResult:
        started = time.monotonic()
        for port in (9100, 80):
            result = await self.probe_port(address, port, timeout=min(timeout, port_timeout(port)))
            if result.ok:
                return ProbeResult(ok=True, elapsed_ms=_elapsed_ms(started))
        return ProbeResult(ok=False, error="host did not answer", elapsed_ms=_elapsed_ms(started))
