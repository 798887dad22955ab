"""Host network configuration (networks.yaml) and the commands that manage its daemons."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Union

import yaml

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

VDE_SWITCH = "vde_switch"  # deprecated
VDE_VMNET = "vde_vmnet"  # deprecated
SOCKET_VMNET = "socket_vmnet"

MODE_USER_V2 = "user-v2"
MODE_HOST = "host"
MODE_SHARED = "shared"
MODE_BRIDGED = "bridged"

SLIRP_NIC_NAME = "eth0"
# Each QEMU instance has its own independent slirp network, so the CIDR is fixed.
SLIRP_NETWORK = "192.168.5.0/24"
SLIRP_GATEWAY = "192.168.5.2"
SLIRP_IP_ADDRESS = "192.168.5.15"

NETWORKS_CONFIG_FILE = "networks.yaml"

# (YAML key, attribute name) of every entry under ``paths``, in declaration order.
PATH_FIELDS: tuple[tuple[str, str], ...] = (
    ("socketVMNet", "socket_vmnet"),
    ("vdeSwitch", "vde_switch"),
    ("vdeVMNet", "vde_vmnet"),
    ("varRun", "var_run"),
    ("sudoers", "sudoers"),
)

_TOP_FIELDS = frozenset({"paths", "group", "networks"})
_NETWORK_FIELDS = frozenset({"mode", "interface", "gateway", "dhcpEnd", "netmask"})

_SOCKET_VMNET_CANDIDATES = (
    "/opt/socket_vmnet/bin/socket_vmnet",  # the hard-coded path of older releases
    "socket_vmnet",
    "/usr/local/opt/socket_vmnet/bin/socket_vmnet",  # Homebrew (Intel)
    "/opt/homebrew/opt/socket_vmnet/bin/socket_vmnet",  # Homebrew (ARM)
)

_DEFAULT_CONFIG_TEMPLATE = """\
# Paths to vde executables. Because vde_switch and vde_vmnet (or socket_vmnet)
# are run via sudo, they must be owned by root and not writable by others.
paths:
  socketVMNet: {socket_vmnet}
  varRun: /private/var/run/lima
  sudoers: /etc/sudoers.d/lima
  vdeSwitch: /opt/vde/bin/vde_switch
  vdeVMNet: /opt/vde/bin/vde_vmnet

group: everyone

networks:
  user-v2:
    mode: user-v2
    gateway: 192.168.104.1
    netmask: 255.255.255.0
  shared:
    mode: shared
    gateway: 192.168.105.1
    dhcpEnd: 192.168.105.254
    netmask: 255.255.255.0
  bridged:
    mode: bridged
    interface: en0
  host:
    mode: host
    gateway: 192.168.106.1
    dhcpEnd: 192.168.106.254
    netmask: 255.255.255.0
"""


@dataclass
class Paths:
    """Locations of the network daemons and of their runtime directory."""

    socket_vmnet: str = ""
    vde_switch: str = ""
    vde_vmnet: str = ""
    var_run: str = ""
    sudoers: str = ""


@dataclass
class Network:
    """One named network definition."""

    mode: str = ""
    interface: str = ""
    gateway: IPAddress | None = None
    dhcp_end: IPAddress | None = None
    netmask: IPAddress | None = None


@dataclass
class DaemonUser:
    """The account and group a daemon runs as."""

    user: str
    group: str
    uid: int
    gid: int


def _lookup_user(name: str) -> DaemonUser:
    import grp
    import pwd

    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        raise LookupError(f'could not find user "{name}"') from None
    try:
        group_name = grp.getgrgid(entry.pw_gid).gr_name
    except KeyError:
        raise LookupError(f'could not find group {entry.pw_gid} of user "{name}"') from None
    return DaemonUser(user=entry.pw_name, group=group_name, uid=entry.pw_uid, gid=entry.pw_gid)


def _lookup_group(name: str) -> tuple[str, int]:
    import grp

    try:
        entry = grp.getgrnam(name)
    except KeyError:
        raise LookupError(f'could not find group "{name}"') from None
    return entry.gr_name, entry.gr_gid


def _ip_text(ip: IPAddress | None) -> str:
    return "<nil>" if ip is None else str(ip)


def _trim_daemon(daemon: str) -> str:
    return daemon.removeprefix("vde_")  # for compatibility


def _mapping(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where} must be a mapping")
    return value


def _check_keys(data: dict, allowed: frozenset[str], where: str) -> None:
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ValueError(f'unknown field "{unknown[0]}" in {where}')


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValueError(f"{where} must be a string")
    return str(value)


def _ip(value: Any, where: str) -> IPAddress | None:
    text = _string(value, where)
    if not text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        raise ValueError(f'invalid IP address "{text}" in {where}') from None


def _parse_network(name: str, value: Any) -> Network:
    where = f"networks.{name}"
    data = _mapping(value, where)
    _check_keys(data, _NETWORK_FIELDS, where)
    return Network(
        mode=_string(data.get("mode"), f"{where}.mode"),
        interface=_string(data.get("interface"), f"{where}.interface"),
        gateway=_ip(data.get("gateway"), f"{where}.gateway"),
        dhcp_end=_ip(data.get("dhcpEnd"), f"{where}.dhcpEnd"),
        netmask=_ip(data.get("netmask"), f"{where}.netmask"),
    )


@dataclass
class NetworksConfig:
    """The contents of networks.yaml."""

    paths: Paths = field(default_factory=Paths)
    group: str = ""
    networks: dict[str, Network] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, text: str | bytes) -> NetworksConfig:
        """Parse networks.yaml text; unknown fields are rejected."""
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ValueError(str(exc)) from exc
        data = _mapping(data, "document")
        _check_keys(data, _TOP_FIELDS, "document")

        raw_paths = _mapping(data.get("paths"), "paths")
        _check_keys(raw_paths, frozenset(key for key, _ in PATH_FIELDS), "paths")
        paths = Paths(
            **{attr: _string(raw_paths.get(key), f"paths.{key}") for key, attr in PATH_FIELDS}
        )
        networks = {
            str(name): _parse_network(str(name), value)
            for name, value in _mapping(data.get("networks"), "networks").items()
        }
        return cls(paths=paths, group=_string(data.get("group"), "group"), networks=networks)

    def check(self, name: str) -> Network:
        """Return the network called ``name``; raise ``LookupError`` if it is not defined."""
        try:
            return self.networks[name]
        except KeyError:
            raise LookupError(f'network "{name}" is not defined') from None

    def usernet(self, name: str) -> bool:
        """Whether the network called ``name`` is a user-v2 network."""
        return self.check(name).mode == MODE_USER_V2

    def daemon_path(self, daemon: str) -> str:
        """Return the configured path of ``daemon``."""
        paths = {
            VDE_SWITCH: self.paths.vde_switch,
            VDE_VMNET: self.paths.vde_vmnet,
            SOCKET_VMNET: self.paths.socket_vmnet,
        }
        try:
            return paths[daemon]
        except KeyError:
            raise ValueError(f'unknown daemon type "{daemon}"') from None

    def is_daemon_installed(self, daemon: str) -> bool:
        """Whether the daemon's configured path names an executable."""
        path = self.daemon_path(daemon)
        return bool(path) and shutil.which(path) is not None

    def _installed(self, daemon: str) -> bool:
        try:
            return self.is_daemon_installed(daemon)
        except ValueError:
            return False

    def sock(self, name: str) -> str:
        """Return the socket_vmnet socket of a network."""
        return os.path.join(self.paths.var_run, f"socket_vmnet.{name}")

    def vde_sock(self, name: str) -> str:
        """Return the (deprecated) vde socket of a network."""
        return os.path.join(self.paths.var_run, f"{name}.ctl")

    def checked_sock(self, name: str) -> str:
        """Return the socket_vmnet socket of a defined network, when socket_vmnet is configured."""
        self.check(name)
        if not self.paths.socket_vmnet:
            raise ValueError("socketVMNet is not set")
        return self.sock(name)

    def checked_vde_sock(self, name: str) -> str:
        """Return the vde socket of a defined network, when vde_vmnet is configured."""
        self.check(name)
        if not self.paths.vde_vmnet:
            raise ValueError("vdeVMnet is not set")
        return self.vde_sock(name)

    def pid_file(self, name: str, daemon: str) -> str:
        return os.path.join(self.paths.var_run, f"{name}_{_trim_daemon(daemon)}.pid")

    def log_file(self, name: str, daemon: str, stream: str, networks_dir: str) -> str:
        return os.path.join(networks_dir, f"{name}_{_trim_daemon(daemon)}.{stream}.log")

    def user(self, daemon: str) -> DaemonUser:
        """Return the account ``daemon`` runs as."""
        if not self._installed(daemon):
            try:
                path = self.daemon_path(daemon)
            except ValueError:
                path = ""
            raise LookupError(f'daemon "{daemon}" (path="{path}") is not available')
        if daemon == VDE_SWITCH:
            account = _lookup_user("daemon")
            group_name, gid = _lookup_group(self.group)
            return dataclasses.replace(account, group=group_name, gid=gid)
        return _lookup_user("root")

    def mkdir_cmd(self) -> str:
        return f"/bin/mkdir -m 775 -p {self.paths.var_run}"

    def start_cmd(self, name: str, daemon: str) -> str:
        """Return the command line that starts ``daemon`` for network ``name``."""
        if not self._installed(daemon):
            raise RuntimeError(f'daemon "{daemon}" is not available')
        if daemon == VDE_SWITCH:
            return (
                f"{self.paths.vde_switch} --pidfile={self.pid_file(name, VDE_SWITCH)} "
                f"--sock={self.vde_sock(name)} --group={self.group} --dirmode=0770 --nostdin"
            )
        nw = self.networks.get(name, Network())
        if daemon == VDE_VMNET:
            head = (
                f"{self.paths.vde_vmnet} --pidfile={self.pid_file(name, VDE_VMNET)} "
                f"--vde-group={self.group} --vmnet-mode={nw.mode}"
            )
            socket = self.vde_sock(name)
        else:
            head = (
                f"{self.paths.socket_vmnet} --pidfile={self.pid_file(name, SOCKET_VMNET)} "
                f"--socket-group={self.group} --vmnet-mode={nw.mode}"
            )
            socket = self.sock(name)
        return f"{head}{_mode_options(nw)} {socket}"

    def stop_cmd(self, name: str, daemon: str) -> str:
        return f"/usr/bin/pkill -F {self.pid_file(name, daemon)}"


def _mode_options(nw: Network) -> str:
    if nw.mode == MODE_BRIDGED:
        return f" --vmnet-interface={nw.interface}"
    if nw.mode in (MODE_HOST, MODE_SHARED):
        return (
            f" --vmnet-gateway={_ip_text(nw.gateway)} --vmnet-dhcp-end={_ip_text(nw.dhcp_end)}"
            f" --vmnet-mask={_ip_text(nw.netmask)}"
        )
    return ""


def default_config_text() -> str:
    """Return the default networks.yaml, pointing at the socket_vmnet found on this host."""
    socket_vmnet = ""
    for candidate in _SOCKET_VMNET_CANDIDATES:
        found = shutil.which(candidate)
        if found is not None:
            socket_vmnet = os.path.realpath(found)
            break
        logger.debug('Failed to look up socket_vmnet path "%s"', candidate)
    if not socket_vmnet:
        socket_vmnet = _SOCKET_VMNET_CANDIDATES[0]
    return _DEFAULT_CONFIG_TEMPLATE.format(socket_vmnet=json.dumps(socket_vmnet))


def default_config() -> NetworksConfig:
    """Return the parsed default networks.yaml."""
    return NetworksConfig.from_yaml(default_config_text())


def fill_defaults(config: NetworksConfig) -> NetworksConfig:
    """Return ``config`` with the default user-v2 network added unless one with a gateway exists."""
    networks = dict(config.networks or {})
    if not any(nw.mode == MODE_USER_V2 and nw.gateway is not None for nw in networks.values()):
        networks[MODE_USER_V2] = default_config().networks[MODE_USER_V2]
    return dataclasses.replace(config, networks=networks)


def config_file(config_dir: str | os.PathLike[str]) -> str:
    """Return the path of networks.yaml inside ``config_dir``."""
    return os.path.join(os.fspath(config_dir), NETWORKS_CONFIG_FILE)


def load_config(config_file: str | os.PathLike[str]) -> NetworksConfig:
    """Read networks.yaml, writing the default file first if it does not exist."""
    path = os.fspath(config_file)
    try:
        os.stat(path)
    except FileNotFoundError:
        directory = os.path.dirname(path) or "."
        try:
            os.makedirs(directory, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise OSError(exc.errno, f'could not create "{directory}" directory: {exc.strerror}') from exc
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(default_config_text())
    with open(path, encoding="utf-8") as handle:
        text = handle.read()
    try:
        config = NetworksConfig.from_yaml(text)
    except ValueError as exc:
        raise ValueError(f'cannot parse "{path}": {exc}') from exc
    return fill_defaults(config)