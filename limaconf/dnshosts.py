"""Conversion of a host-name map into DNS zones."""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass
class Record:
    """A named record inside a zone."""

    name: str
    ip: IPAddress | None


@dataclass
class Zone:
    """A DNS zone with an optional default address and a list of records."""

    name: str
    default_ip: IPAddress | None = None
    records: list[Record] = field(default_factory=list)


def _parse_ip(text: str) -> IPAddress | None:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def host_ip(hosts: Mapping[str, str], host: str) -> IPAddress | None:
    """Resolve ``host`` through ``hosts``, following name aliases to an address."""
    seen: set[str] = set()
    while host not in seen:
        seen.add(host)
        value = hosts.get(host, "")
        if not value:
            return None
        ip = _parse_ip(value)
        if ip is not None:
            return ip
        host = value
    return None


def zone_name(host: str) -> str:
    """Return the zone a host belongs to: the part after the last dot, plus a dot."""
    index = host.rfind(".")
    if index < 0:
        return host
    return host[index + 1 :] + "."


def record_name(host: str) -> str:
    """Return the record name of a host: the part before the last dot."""
    index = host.rfind(".")
    if index < 0:
        return ""
    return host[:index]


def extract_zones(hosts: Mapping[str, str]) -> list[Zone]:
    """Group the entries of ``hosts`` into zones."""
    zones: dict[str, Zone] = {}
    for host in hosts:
        name = zone_name(host)
        zone = zones.setdefault(name, Zone(name=name))
        record = record_name(host)
        if record == "":
            if zone.default_ip is None:
                zone.default_ip = host_ip(hosts, host)
        else:
            zone.records.append(Record(name=record, ip=host_ip(hosts, host)))
    return list(zones.values())