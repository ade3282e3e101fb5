"""
Allowed-IP parsing and matching.

Entries are address literals or CIDR prefixes. They are validated once, when
a role is written; evaluation only ever sees well-formed entries.
"""

import ipaddress
from functools import lru_cache
from typing import Iterable, Optional, Tuple, Union

from shared.errors import MalformedIPEntryError

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def parse_entry(entry: str) -> IPNetwork:
    """Parse an allowed-IP entry into a network.

    A bare address becomes a single-host network. Host bits of a prefix are
    masked off, so ``10.0.0.7/24`` and ``10.0.0.0/24`` are equivalent.
    """
    if not isinstance(entry, str) or not entry.strip():
        raise MalformedIPEntryError(str(entry), "IP entry must be a non-empty string")

    text = entry.strip()
    if "%" in text:
        raise MalformedIPEntryError(entry, f"IPv6 zone identifiers are not supported: {entry!r}")

    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise MalformedIPEntryError(entry) from exc


def validate_allowed_ips(entries: Iterable[str]) -> Tuple[str, ...]:
    """Validate entries and return them stripped and de-duplicated, in order."""
    seen = []
    for entry in entries:
        parse_entry(entry)
        text = entry.strip()
        if text not in seen:
            seen.append(text)
    return tuple(seen)


@lru_cache(maxsize=4096)
def _network(entry: str) -> IPNetwork:
    return parse_entry(entry)


def parse_caller_ip(caller_ip: Optional[str]) -> Optional[IPAddress]:
    if not caller_ip:
        return None
    try:
        return ipaddress.ip_address(caller_ip.strip())
    except ValueError:
        return None


def ip_allowed(caller_ip: Optional[str], entries: Iterable[str]) -> bool:
    """True when the caller address falls inside any entry.

    IPv4 and IPv6 are separate families: an IPv4 entry never matches an
    IPv6 caller (including IPv4-mapped addresses) and vice versa. A caller
    address that does not parse matches nothing.
    """
    address = parse_caller_ip(caller_ip)
    if address is None:
        return False

    for entry in entries:
        network = _network(entry)
        if network.version != address.version:
            continue
        if address in network:
            return True
    return False
