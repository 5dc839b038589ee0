from __future__ import annotations

import pytest

from printfleet.ranges import RangeError, normalize_range, parse_range, parse_ranges


def test_cidr_excludes_network_and_broadcast():
    assert parse_ranges("192.168.1.0/30") == ["192.168.1.1", "192.168.1.2"]


def test_cidr_24_has_254_hosts():
    hosts = parse_ranges("10.1.2.0/24")
    assert len(hosts) == 254
    assert hosts[0] == "10.1.2.1"
    assert hosts[-1] == "10.1.2.254"


def test_last_octet_dash_range():
    assert parse_range("10.0.0.1-3") == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


def test_full_address_dash_range_crosses_octets():
    assert parse_range("10.0.0.254-10.0.1.1") == ["10.0.0.254", "10.0.0.255", "10.0.1.0", "10.0.1.1"]


def test_multiple_tokens_are_unique_and_numerically_ordered():
    result = parse_ranges("10.0.0.10, 10.0.0.9,10.0.0.1-2,10.0.0.10")
    assert result == ["10.0.0.1", "10.0.0.2", "10.0.0.9", "10.0.0.10"]


@pytest.mark.parametrize(
    "ip_range",
    ["", "   ", "10.0.0.300", "10.0.0.0/33", "10.0.0.0/x", "10.0.0.1-300", "10.0.0.1-2-3", "printer.local", "fe80::1"],
)
def test_malformed_ranges_raise(ip_range):
    with pytest.raises(RangeError):
        parse_ranges(ip_range)


def test_range_error_is_value_error():
    with pytest.raises(ValueError):
        parse_ranges("not-an-ip")


def test_normalize_range_ignores_order_and_duplicates():
    assert normalize_range("10.0.0.2, 10.0.0.1,10.0.0.2") == normalize_range("10.0.0.1,10.0.0.2")
