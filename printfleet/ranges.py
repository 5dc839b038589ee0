from __future__ import annotations

import ipaddress


class RangeError(ValueError):
    pass


def split_tokens(ip_range: str) -> list[str]:
    if ip_range is None or not str(ip_range).strip():
        raise RangeError("IP range cannot be empty")
    return [token.strip() for token in str(ip_range).split(",") if token.strip()]


def normalize_range(ip_range: str) -> str:
    """Canonical form of a range string: unique tokens, sorted, comma joined."""
    return ",".join(sorted(set(split_tokens(ip_range))))


def _parse_address(value: str) -> ipaddress.IPv4Address:
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError as exc:
        raise RangeError(f"Invalid IP address: {value}") from exc
    if not isinstance(address, ipaddress.IPv4Address):
        raise RangeError(f"Only IPv4 addresses are supported: {value}")
    return address


def _expand_cidr(token: str) -> list[str]:
    base, _, prefix = token.partition("/")
    address = _parse_address(base)
    if not prefix.isdigit() or not 0 <= int(prefix) <= 32:
        raise RangeError(f"Invalid prefix length: {prefix}")
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    # hosts() drops network and broadcast for every prefix shorter than /31
    return [str(host) for host in network.hosts()]


def _expand_dash(token: str) -> list[str]:
    parts = token.split("-")
    if len(parts) != 2:
        raise RangeError(f"Invalid range format: {token}")
    left, right = parts[0].strip(), parts[1].strip()
    start = _parse_address(left)

    if "." not in right:
        if not right.isdigit() or int(right) > 255:
            raise RangeError(f"Invalid range values: {token}")
        octets = str(start).split(".")
        first, last = int(octets[3]), int(right)
        prefix = ".".join(octets[:3])
        return [f"{prefix}.{octet}" for octet in range(first, last + 1)]

    end = _parse_address(right)
    return [str(ipaddress.IPv4Address(value)) for value in range(int(start), int(end) + 1)]


def parse_range(token: str) -> list[str]:
    """Expand one CIDR block, dash range or single address."""
    token = token.strip()
    if not token:
        raise RangeError("Range cannot be empty")
    if "/" in token:
        return _expand_cidr(token)
    if "-" in token:
        return _expand_dash(token)
    return [str(_parse_address(token))]


def parse_ranges(ip_range: str) -> list[str]:
    """Expand a comma-separated range string into unique addresses in numeric order."""
    addresses: set[str] = set()
    for token in split_tokens(ip_range):
        addresses.update(parse_range(token))
    return sorted(addresses, key=lambda value: int(ipaddress.IPv4Address(value)))
