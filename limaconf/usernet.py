"""Paths and addresses of user-mode (user-v2) networks."""

from __future__ import annotations

import ipaddress
import os
import sys
from typing import Union

from .netconfig import NetworksConfig

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

FD_SOCK = "fd"
QEMU_SOCK = "qemu"
ENDPOINT_SOCK = "ep"

UNIX_PATH_MAX = 104 if sys.platform == "darwin" else 108


def _check_length(kind: str, path: str) -> str:
    if len(path) >= UNIX_PATH_MAX:
        raise ValueError(
            f'usernet {kind} path "{path}" too long: must be less than '
            f"UNIX_PATH_MAX={UNIX_PATH_MAX} characters, but is {len(path)}"
        )
    return path


def sock_with_directory(directory: str | os.PathLike[str], name: str, sock_type: str) -> str:
    """Return the socket of type ``sock_type`` for network ``name`` inside ``directory``."""
    name = name or "default"
    return _check_length("socket", os.path.join(os.fspath(directory), f"{name}_{sock_type}.sock"))


def sock(networks_dir: str | os.PathLike[str], name: str, sock_type: str) -> str:
    """Return the socket of type ``sock_type`` for network ``name``."""
    return sock_with_directory(os.path.join(os.fspath(networks_dir), name), name, sock_type)


def pid_file(networks_dir: str | os.PathLike[str], name: str) -> str:
    """Return the PID file of the usernet daemon of network ``name``."""
    return os.path.join(os.fspath(networks_dir), name, f"usernet_{name}.pid")


def leases_file(networks_dir: str | os.PathLike[str], name: str) -> str:
    """Return the DHCP leases file of network ``name``."""
    return _check_length("leases", os.path.join(os.fspath(networks_dir), name, "leases.json"))


def _prefix_length(netmask: IPAddress | None) -> int:
    if not isinstance(netmask, ipaddress.IPv4Address):
        return 0
    value = int(netmask)
    ones = bin(value).count("1")
    canonical = 0xFFFFFFFF ^ ((1 << (32 - ones)) - 1)
    return ones if value == canonical else 0


def netmask_to_cidr(
    base_ip: IPAddress | str | None, netmask: IPAddress | str | None
) -> tuple[IPAddress, IPNetwork]:
    """Combine an address and a dotted netmask into the address and its network."""
    if base_ip is None:
        raise ValueError('invalid CIDR address: "<nil>"')
    if isinstance(netmask, str):
        netmask = ipaddress.ip_address(netmask)
    text = f"{base_ip}/{_prefix_length(netmask)}"
    try:
        interface = ipaddress.ip_interface(text)
    except ValueError:
        raise ValueError(f'invalid CIDR address: "{text}"') from None
    return interface.ip, interface.network


def subnet_cidr(config: NetworksConfig, name: str) -> IPNetwork:
    """Return the subnet of network ``name``."""
    nw = config.check(name)
    return netmask_to_cidr(nw.gateway, nw.netmask)[1]


def subnet(config: NetworksConfig, name: str) -> IPAddress:
    """Return the base address of the subnet of network ``name``."""
    return subnet_cidr(config, name).network_address


def _offset(base: IPAddress | str, n: int) -> str:
    return str(ipaddress.ip_address(base) + n)


def gateway_ip(subnet: IPAddress | str) -> str:
    """Return the second address of a subnet."""
    return _offset(subnet, 2)


def dns_ip(subnet: IPAddress | str) -> str:
    """Return the third address of a subnet."""
    return _offset(subnet, 3)