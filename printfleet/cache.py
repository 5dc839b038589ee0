from __future__ import annotations

import copy
import hashlib
import json
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from printfleet.models import DiscoveredDevice, DiscoverySettings, utc_now
from printfleet.ranges import split_tokens

SCAN_CACHE_TTL = timedelta(minutes=30)
INCREMENTAL_WINDOW = timedelta(minutes=5)


def build_cache_key(ip_range: str, settings: DiscoverySettings, context: dict[str, Any] | None = None) -> str:
    payload = {
        "ranges": sorted(set(split_tokens(ip_range))),
        "timeout": settings.scan_timeout,
        "concurrency": settings.max_concurrent_scans,
        "retries": settings.scan_retries,
        "context": context or {},
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ScanCache:
    """In-memory discovery results keyed by scan signature.

    Entries expire ``ttl`` after they were stored. Callers always receive
    copies, so mutating a returned list never alters the cached result.
    """

    def __init__(self, ttl: timedelta = SCAN_CACHE_TTL, clock: Callable[[], datetime] = utc_now) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[datetime, list[DiscoveredDevice]]] = {}
        self._lock = threading.Lock()

    def load(self, cache_key: str) -> list[DiscoveredDevice] | None:
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return None
            stored_at, devices = entry
            if self._clock() - stored_at > self.ttl:
                del self._entries[cache_key]
                return None
            return copy.deepcopy(devices)

    def store(self, cache_key: str, devices: list[DiscoveredDevice]) -> None:
        with self._lock:
            self._entries[cache_key] = (self._clock(), copy.deepcopy(devices))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ScanHistory:
    """Tracks full scans per range and responsive addresses for incremental scans."""

    def __init__(self, window: timedelta = INCREMENTAL_WINDOW, clock: Callable[[], datetime] = utc_now) -> None:
        self.window = window
        self._clock = clock
        self._full_scans: dict[str, datetime] = {}
        self._responsive: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def record_full_scan(self, range_key: str) -> None:
        with self._lock:
            self._full_scans[range_key] = self._clock()

    def record_responsive(self, address: str) -> None:
        with self._lock:
            self._responsive[address] = self._clock()

    def recent_full_scan(self, range_key: str) -> bool:
        with self._lock:
            last = self._full_scans.get(range_key)
            return last is not None and self._clock() - last <= self.window

    def filter_targets(self, addresses: list[str]) -> list[str]:
        """Drop addresses seen responsive inside the window."""
        now = self._clock()
        with self._lock:
            return [
                address
                for address in addresses
                if address not in self._responsive or now - self._responsive[address] > self.window
            ]
