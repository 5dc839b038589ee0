from __future__ import annotations

from datetime import timedelta

from printfleet.cache import ScanCache, ScanHistory, build_cache_key
from printfleet.models import DiscoveredDevice, DiscoveryMethod, DiscoverySettings


def _device(address: str) -> DiscoveredDevice:
    return DiscoveredDevice(ip_address=address, discovery_method=DiscoveryMethod.SUBNET_SCAN, confidence=0.5)


def test_build_cache_key_stable():
    settings = DiscoverySettings()
    assert build_cache_key("10.0.0.0/24", settings) == build_cache_key("10.0.0.0/24", settings)


def test_build_cache_key_ignores_token_order():
    settings = DiscoverySettings()
    k1 = build_cache_key("10.0.0.0/24,10.0.1.5", settings)
    k2 = build_cache_key("10.0.1.5, 10.0.0.0/24", settings)
    assert k1 == k2


def test_build_cache_key_changes_with_settings_and_context():
    base = build_cache_key("10.0.0.0/24", DiscoverySettings())
    assert base != build_cache_key("10.0.0.0/24", DiscoverySettings(scan_timeout=5.0))
    assert base != build_cache_key("10.0.0.0/24", DiscoverySettings(), {"site": 2})


def test_store_and_load_returns_copies(clock):
    cache = ScanCache(clock=clock)
    cache.store("key", [_device("10.0.0.1")])

    first = cache.load("key")
    first[0].hostname = "changed"
    first.append(_device("10.0.0.2"))

    second = cache.load("key")
    assert len(second) == 1
    assert second[0].hostname is None


def test_cache_expired(clock):
    cache = ScanCache(ttl=timedelta(minutes=30), clock=clock)
    cache.store("key", [_device("10.0.0.1")])

    clock.advance(minutes=29)
    assert cache.load("key") is not None

    clock.advance(minutes=2)
    assert cache.load("key") is None
    assert len(cache) == 0


def test_history_filters_recently_responsive_addresses(clock):
    history = ScanHistory(window=timedelta(minutes=5), clock=clock)
    history.record_full_scan("10.0.0.0/24")
    history.record_responsive("10.0.0.1")

    assert history.recent_full_scan("10.0.0.0/24")
    assert history.filter_targets(["10.0.0.1", "10.0.0.2"]) == ["10.0.0.2"]

    clock.advance(minutes=6)
    assert not history.recent_full_scan("10.0.0.0/24")
    assert history.filter_targets(["10.0.0.1", "10.0.0.2"]) == ["10.0.0.1", "10.0.0.2"]
