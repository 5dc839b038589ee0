from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from printfleet.cache import ScanCache, ScanHistory, build_cache_key
from printfleet.models import (
    Credential,
    DeviceType,
    DiscoveredDevice,
    DiscoveryMethod,
    DiscoverySettings,
    ProbeResult,
    utc_now,
)
from printfleet.probes import PRINTER_PORTS, NetworkProber
from printfleet.protocols import DirectorySource, ManagementSource, PrinterProtocol
from printfleet.ranges import normalize_range, parse_ranges

LOGGER = logging.getLogger(__name__)

BATCH_SIZE = 1000
VENDOR_TOKENS = ("hp", "canon", "epson", "brother", "xerox", "lexmark", "ricoh")
PORT_CONFIDENCE = {9100: 0.4, 515: 0.3, 161: 0.2}
DIRECTORY_CONFIDENCE = 0.8
MANAGEMENT_CONFIDENCE = 0.7
SNMP_CONFIDENCE_BOOST = 0.3
SOURCE_QUERY_TIMEOUT = 30.0
SNMP_QUERY_TIMEOUT = 10.0


def estimate_device_type(open_ports: Iterable[int], hostname: str | None) -> DeviceType:
    ports = set(open_ports)
    if 9100 in ports or 515 in ports:
        return DeviceType.PRINTER
    if 161 in ports and (80 in ports or 443 in ports):
        return DeviceType.MULTIFUNCTION
    if hostname:
        lowered = hostname.lower()
        if "printer" in lowered or any(token in lowered for token in VENDOR_TOKENS):
            return DeviceType.PRINTER
    return DeviceType.UNKNOWN


def confidence_score(open_ports: Iterable[int], hostname: str | None) -> float:
    ports = set(open_ports)
    score = sum(weight for port, weight in PORT_CONFIDENCE.items() if port in ports)
    if 80 in ports or 443 in ports:
        score += 0.1
    if hostname:
        lowered = hostname.lower()
        if "printer" in lowered:
            score += 0.3
        if any(token in lowered for token in VENDOR_TOKENS):
            score += 0.2
    return min(1.0, score)


def merge_devices(devices: Iterable[DiscoveredDevice]) -> list[DiscoveredDevice]:
    """Keep the highest-confidence record per address, first seen wins ties."""
    best: dict[str, DiscoveredDevice] = {}
    for device in devices:
        current = best.get(device.ip_address)
        if current is None or device.confidence > current.confidence:
            best[device.ip_address] = device
    return list(best.values())


def chunked(items: list[str], size: int) -> list[list[str]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


class DiscoveryEngine:
    """Finds printers by subnet sweep plus optional directory and management sources.

    Results are cached per scan signature for 30 minutes. Directory and
    management queries are bounded by ``source_timeout`` and each SNMP
    fingerprint by ``snmp_timeout``. A source that does not answer in time
    contributes nothing. A cancelled discovery raises ``CancelledError`` and
    leaves neither cache entries nor partial device lists behind.
    """

    def __init__(
        self,
        prober: NetworkProber | None = None,
        snmp: PrinterProtocol | None = None,
        directory: DirectorySource | None = None,
        management: ManagementSource | None = None,
        cache: ScanCache | None = None,
        history: ScanHistory | None = None,
        credential: Credential | None = None,
        source_timeout: float = SOURCE_QUERY_TIMEOUT,
        snmp_timeout: float = SNMP_QUERY_TIMEOUT,
    ) -> None:
        self.prober = prober or NetworkProber()
        self.snmp = snmp
        self.directory = directory
        self.management = management
        self.cache = cache or ScanCache()
        self.history = history or ScanHistory()
        self.credential = credential or Credential()
        self.source_timeout = source_timeout
        self.snmp_timeout = snmp_timeout

    async def discover(self, settings: DiscoverySettings, force: bool = False) -> list[DiscoveredDevice]:
        targets = parse_ranges(settings.ip_range)
        cache_key = build_cache_key(settings.ip_range, settings)
        if not force:
            cached = self.cache.load(cache_key)
            if cached is not None:
                LOGGER.info("Returning cached discovery results for %s", settings.ip_range)
                return cached

        LOGGER.info(
            "Starting discovery range=%s subnet=%s directory=%s management=%s",
            settings.ip_range,
            settings.use_subnet_scan,
            settings.use_directory,
            settings.use_management,
        )
        jobs = []
        if settings.use_subnet_scan:
            jobs.append(self.scan_subnet(settings, targets))
        if settings.use_directory and self.directory is not None:
            jobs.append(self._query_source(self.directory, DiscoveryMethod.DIRECTORY, DIRECTORY_CONFIDENCE))
        if settings.use_management and self.management is not None:
            jobs.append(self._query_source(self.management, DiscoveryMethod.MANAGEMENT, MANAGEMENT_CONFIDENCE))

        found: list[DiscoveredDevice] = []
        for devices in await asyncio.gather(*jobs):
            found.extend(devices)

        unique = merge_devices(found)
        if settings.enable_snmp_fingerprint and self.snmp is not None:
            await self._enhance_with_snmp(unique, settings.max_concurrent_scans)

        for device in unique:
            self.history.record_responsive(device.ip_address)
        self.cache.store(cache_key, unique)
        LOGGER.info("Discovery completed: %d records, %d unique devices", len(found), len(unique))
        return unique

    async def scan_subnet(self, settings: DiscoverySettings, targets: list[str] | None = None) -> list[DiscoveredDevice]:
        if targets is None:
            targets = parse_ranges(settings.ip_range)
        range_key = normalize_range(settings.ip_range)
        if settings.enable_incremental and self.history.recent_full_scan(range_key):
            total = len(targets)
            targets = self.history.filter_targets(targets)
            LOGGER.info("Incremental scan: %d of %d addresses need probing", len(targets), total)

        batches = chunked(targets, BATCH_SIZE)
        devices: list[DiscoveredDevice] = []
        for number, batch in enumerate(batches, start=1):
            LOGGER.info("Scanning batch %d/%d (%d addresses) for %s", number, len(batches), len(batch), settings.ip_range)
            semaphore = asyncio.Semaphore(settings.max_concurrent_scans)

            async def bounded(address: str) -> DiscoveredDevice | None:
                async with semaphore:
                    try:
                        return await self.scan_address(address, settings)
                    except Exception:  # noqa: BLE001
                        LOGGER.debug("Probe of %s failed", address, exc_info=True)
                        return None

            results = await asyncio.gather(*(bounded(address) for address in batch))
            responsive = [device for device in results if device is not None]
            devices.extend(responsive)
            LOGGER.info("Batch %d/%d found %d printers", number, len(batches), len(responsive))

        self.history.record_full_scan(range_key)
        return devices

    async def scan_address(self, address: str, settings: DiscoverySettings) -> DiscoveredDevice | None:
        for attempt in range(settings.scan_retries + 1):
            alive, device = await self._probe_once(address, settings.scan_timeout)
            if alive:
                return device
            if attempt < settings.scan_retries:
                await asyncio.sleep(settings.retry_delay)
        return None

    async def _probe_once(self, address: str, timeout: float) -> tuple[bool, DiscoveredDevice | None]:
        echo = await self.prober.ping_adaptive(address, timeout)
        if not echo.ok:
            return False, None

        hostname = await self.prober.reverse_dns(address)
        open_ports = await self.prober.open_ports(address, PRINTER_PORTS)
        device_type = estimate_device_type(open_ports, hostname)
        if device_type == DeviceType.UNKNOWN:
            return True, None
        return True, DiscoveredDevice(
            ip_address=address,
            discovery_method=DiscoveryMethod.SUBNET_SCAN,
            hostname=hostname,
            open_ports=open_ports,
            device_type=device_type,
            confidence=confidence_score(open_ports, hostname),
            discovered_at=utc_now(),
        )

    async def _query_source(self, source, method: DiscoveryMethod, confidence: float) -> list[DiscoveredDevice]:
        try:
            devices = list(await asyncio.wait_for(source.query(), timeout=self.source_timeout))
        except asyncio.TimeoutError:
            LOGGER.warning("%s discovery timed out after %.1fs", method.value, self.source_timeout)
            return []
        except Exception:  # noqa: BLE001
            LOGGER.exception("%s discovery failed", method.value)
            return []
        for device in devices:
            device.discovery_method = method
            device.confidence = confidence
        LOGGER.info("%s discovery returned %d devices", method.value, len(devices))
        return devices

    async def _enhance_with_snmp(self, devices: list[DiscoveredDevice], concurrency: int) -> None:
        candidates = [device for device in devices if device.supports_snmp]
        if not candidates:
            return
        semaphore = asyncio.Semaphore(concurrency)

        async def enhance(device: DiscoveredDevice) -> bool:
            async with semaphore:
                try:
                    info = await asyncio.wait_for(self._fingerprint(device.ip_address), timeout=self.snmp_timeout)
                except asyncio.TimeoutError:
                    LOGGER.warning("SNMP fingerprint of %s timed out", device.ip_address)
                    return False
                except Exception:  # noqa: BLE001
                    LOGGER.warning("SNMP fingerprint failed for %s", device.ip_address, exc_info=True)
                    return False
            if info is None:
                return False
            device.vendor = info.vendor
            device.model = info.model
            device.serial_number = info.serial_number
            device.device_type = DeviceType.PRINTER
            device.confidence = min(1.0, device.confidence + SNMP_CONFIDENCE_BOOST)
            return True

        enhanced = await asyncio.gather(*(enhance(device) for device in candidates))
        LOGGER.info("Enhanced %d of %d devices with SNMP information", sum(enhanced), len(candidates))

    async def _fingerprint(self, address: str):
        if not await self.snmp.probe_available(address, self.credential):
            return None
        return await self.snmp.get_device_info(address, self.credential)

    async def test_connectivity(self, address: str, port: int = 161, timeout: float = 5.0) -> ProbeResult:
        """Echo first, then a TCP connect to ``port`` with the same budget."""
        echo = await self.prober.ping(address, timeout)
        if not echo.ok:
            return echo
        return await self.prober.probe_port(address, port, timeout=timeout)
