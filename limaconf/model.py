"""Data model of an instance configuration (lima.yaml) and its dict form."""

import dataclasses
import ipaddress
import logging
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Union

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

LINUX = "Linux"

X8664 = "x86_64"
AARCH64 = "aarch64"
ARMV7L = "armv7l"
RISCV64 = "riscv64"

REVSSHFS = "reverse-sshfs"
NINEP = "9p"
VIRTIOFS = "virtiofs"
WSL_MOUNT = "wsl2"

QEMU = "qemu"
VZ = "vz"
WSL2 = "wsl2"

SFTP_DRIVER_BUILTIN = "builtin"
SFTP_DRIVER_OPENSSH_SFTP_SERVER = "openssh-sftp-server"

PROVISION_MODE_SYSTEM = "system"
PROVISION_MODE_USER = "user"
PROVISION_MODE_BOOT = "boot"
PROVISION_MODE_DEPENDENCY = "dependency"

PROBE_MODE_READINESS = "readiness"

TCP = "tcp"

_NONE = type(None)
_IP_TYPES = frozenset({ipaddress.IPv4Address, ipaddress.IPv6Address})


def _key(
    name: str,
    default: Any = dataclasses.MISSING,
    *,
    factory: Any = dataclasses.MISSING,
    omit: bool = True,
    bounds: "tuple[int, int] | None" = None,
) -> Any:
    metadata = {"key": name, "omit": omit, "bounds": bounds}
    if factory is not dataclasses.MISSING:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


@dataclass
class File:
    location: str = _key("location", "", omit=False)
    arch: str = _key("arch", "")
    digest: str = _key("digest", "")


@dataclass
class Kernel(File):
    cmdline: str = _key("cmdline", "")


@dataclass
class Image(File):
    kernel: Kernel | None = _key("kernel", None)
    initrd: File | None = _key("initrd", None)


@dataclass
class Disk:
    name: str = _key("name", "", omit=False)
    format: bool | None = _key("format", None)
    fs_type: str | None = _key("fsType", None)
    fs_args: list[str] | None = _key("fsArgs", None)


@dataclass
class SSHFS:
    cache: bool | None = _key("cache", None)
    follow_symlinks: bool | None = _key("followSymlinks", None)
    sftp_driver: str | None = _key("sftpDriver", None)


@dataclass
class NineP:
    security_model: str | None = _key("securityModel", None)
    protocol_version: str | None = _key("protocolVersion", None)
    msize: str | None = _key("msize", None)
    cache: str | None = _key("cache", None)


@dataclass
class Virtiofs:
    queue_size: int | None = _key("queueSize", None)


@dataclass
class Mount:
    location: str = _key("location", "", omit=False)
    mount_point: str = _key("mountPoint", "")
    writable: bool | None = _key("writable", None)
    sshfs: SSHFS = _key("sshfs", factory=SSHFS)
    nine_p: NineP = _key("9p", factory=NineP)
    virtiofs: Virtiofs = _key("virtiofs", factory=Virtiofs)


@dataclass
class SSH:
    local_port: int | None = _key("localPort", None)
    load_dot_ssh_pub_keys: bool | None = _key("loadDotSSHPubKeys", None)
    forward_agent: bool | None = _key("forwardAgent", None)
    forward_x11: bool | None = _key("forwardX11", None)
    forward_x11_trusted: bool | None = _key("forwardX11Trusted", None)


@dataclass
class Firmware:
    # Disables UEFI when set; ignored for aarch64.
    legacy_bios: bool | None = _key("legacyBIOS", None)


@dataclass
class Audio:
    device: str | None = _key("device", None)


@dataclass
class VNCOptions:
    display: str | None = _key("display", None)


@dataclass
class Video:
    display: str | None = _key("display", None)
    vnc: VNCOptions = _key("vnc", factory=VNCOptions, omit=False)


@dataclass
class Provision:
    mode: str = _key("mode", "", omit=False)
    skip_default_dependency_resolution: bool | None = _key("skipDefaultDependencyResolution", None)
    script: str = _key("script", "", omit=False)


@dataclass
class Containerd:
    system: bool | None = _key("system", None)
    user: bool | None = _key("user", None)
    archives: list[File] = _key("archives", factory=list)


@dataclass
class Probe:
    mode: str = _key("mode", "", omit=False)
    description: str = _key("description", "", omit=False)
    script: str = _key("script", "", omit=False)
    hint: str = _key("hint", "", omit=False)


@dataclass
class PortForward:
    guest_ip_must_be_zero: bool = _key("guestIPMustBeZero", False)
    guest_ip: IPAddress | None = _key("guestIP", None)
    guest_port: int = _key("guestPort", 0)
    guest_port_range: tuple[int, int] = _key("guestPortRange", (0, 0))
    guest_socket: str = _key("guestSocket", "")
    host_ip: IPAddress | None = _key("hostIP", None)
    host_port: int = _key("hostPort", 0)
    host_port_range: tuple[int, int] = _key("hostPortRange", (0, 0))
    host_socket: str = _key("hostSocket", "")
    proto: str = _key("proto", "")
    reverse: bool = _key("reverse", False)
    ignore: bool = _key("ignore", False)


@dataclass
class CopyToHost:
    guest_file: str = _key("guest", "")
    host_file: str = _key("host", "")
    delete_on_stop: bool = _key("deleteOnStop", False)


@dataclass
class Network:
    # lima, socket and vnl are mutually exclusive; exactly one is required
    lima: str = _key("lima", "")
    socket: str = _key("socket", "")
    vz_nat: bool | None = _key("vzNAT", None)
    vnl_deprecated: str = _key("vnl", "")
    switch_port_deprecated: int = _key("switchPort", 0, bounds=(0, 65535))
    mac_address: str = _key("macAddress", "")
    interface: str = _key("interface", "")


@dataclass
class HostResolver:
    enabled: bool | None = _key("enabled", None)
    ipv6: bool | None = _key("ipv6", None)
    hosts: dict[str, str] = _key("hosts", factory=dict)


@dataclass
class CACertificates:
    remove_defaults: bool | None = _key("removeDefaults", None)
    files: list[str] = _key("files", factory=list)
    certs: list[str] = _key("certs", factory=list)


@dataclass
class Rosetta:
    enabled: bool | None = _key("enabled", None, omit=False)
    binfmt: bool | None = _key("binfmt", None, omit=False)


@dataclass
class LimaYAML:
    """An instance configuration; unset optional values are ``None``."""

    vm_type: str | None = _key("vmType", None)
    os: str | None = _key("os", None)
    arch: str | None = _key("arch", None)
    images: list[Image] = _key("images", factory=list, omit=False)
    cpu_type: dict[str, str] = _key("cpuType", factory=dict)
    cpus: int | None = _key("cpus", None)
    memory: str | None = _key("memory", None)
    disk: str | None = _key("disk", None)
    additional_disks: list[Disk] = _key("additionalDisks", factory=list)
    mounts: list[Mount] = _key("mounts", factory=list)
    mount_type: str | None = _key("mountType", None)
    ssh: SSH = _key("ssh", factory=SSH)
    firmware: Firmware = _key("firmware", factory=Firmware)
    audio: Audio = _key("audio", factory=Audio)
    video: Video = _key("video", factory=Video)
    provision: list[Provision] = _key("provision", factory=list)
    containerd: Containerd = _key("containerd", factory=Containerd)
    guest_install_prefix: str | None = _key("guestInstallPrefix", None)
    probes: list[Probe] = _key("probes", factory=list)
    port_forwards: list[PortForward] = _key("portForwards", factory=list)
    copy_to_host: list[CopyToHost] = _key("copyToHost", factory=list)
    message: str = _key("message", "")
    networks: list[Network] = _key("networks", factory=list)
    env: dict[str, str] = _key("env", factory=dict)
    dns: list[IPAddress] = _key("dns", factory=list)
    host_resolver: HostResolver = _key("hostResolver", factory=HostResolver)
    propagate_proxy_env: bool | None = _key("propagateProxyEnv", None)
    ca_certificates: CACertificates = _key("caCerts", factory=CACertificates)
    rosetta: Rosetta = _key("rosetta", factory=Rosetta)
    plain: bool | None = _key("plain", None)

    @classmethod
    def from_dict(cls, data: Any) -> "LimaYAML":
        """Build a configuration from parsed YAML; type errors raise ``ValueError``.

        Unknown fields are ignored with a warning.
        """
        return _decode_struct(cls, data, "")

    def to_dict(self) -> "dict[str, Any]":
        """Return the YAML form, leaving out unset fields."""
        return _encode_struct(self)


def _is_optional(tp: Any) -> bool:
    return typing.get_origin(tp) in (Union, types.UnionType) and _NONE in typing.get_args(tp)


def _join(where: str, key: Any) -> str:
    return f"{where}.{key}" if where else str(key)


def _type_error(where: str, expected: str, value: Any) -> ValueError:
    return ValueError(f"{where or 'document'}: expected {expected}, got {value!r}")


def _decode_ip(value: Any, where: str) -> Any:
    if not isinstance(value, str):
        raise _type_error(where, "an IP address", value)
    if value == "":
        return None
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        raise ValueError(f'{where}: invalid IP address "{value}"') from None


def _decode(tp: Any, value: Any, where: str) -> Any:
    origin = typing.get_origin(tp)
    if origin in (Union, types.UnionType):
        args = typing.get_args(tp)
        rest = tuple(arg for arg in args if arg is not _NONE)
        if value is None:
            if len(rest) < len(args):
                return None
            raise _type_error(where, "a value", value)
        if frozenset(rest) == _IP_TYPES:
            return _decode_ip(value, where)
        return _decode(rest[0], value, where)
    if origin is list:
        if value is None:
            return []
        if not isinstance(value, list):
            raise _type_error(where, "a list", value)
        (item,) = typing.get_args(tp)
        return [_decode(item, v, f"{where}[{i}]") for i, v in enumerate(value)]
    if origin is dict:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise _type_error(where, "a mapping", value)
        key_type, value_type = typing.get_args(tp)
        return {
            _decode(key_type, k, where): _decode(value_type, v, _join(where, k))
            for k, v in value.items()
        }
    if origin is tuple:
        args = typing.get_args(tp)
        if value is None:
            return tuple(_decode(arg, None, where) for arg in args)
        if not isinstance(value, list) or len(value) != len(args):
            raise _type_error(where, f"a list of {len(args)} items", value)
        return tuple(_decode(arg, v, f"{where}[{i}]") for i, (arg, v) in enumerate(zip(args, value)))
    if dataclasses.is_dataclass(tp):
        return _decode_struct(tp, value, where)
    if tp is bool:
        if value is None:
            return False
        if not isinstance(value, bool):
            raise _type_error(where, "a boolean", value)
        return value
    if tp is int:
        if value is None:
            return 0
        if isinstance(value, bool) or not isinstance(value, int):
            raise _type_error(where, "an integer", value)
        return value
    if tp is str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (str, int, float)):
            return str(value)
        raise _type_error(where, "a string", value)
    raise TypeError(f"unsupported field type {tp!r}")


def _decode_struct(cls: type, value: Any, where: str) -> Any:
    if value is None:
        return cls()
    if cls is Disk and isinstance(value, str):
        return Disk(name=value)
    if not isinstance(value, dict):
        raise _type_error(where, "a mapping", value)
    known = set()
    kwargs = {}
    for f in dataclasses.fields(cls):
        key = f.metadata["key"]
        known.add(key)
        if key not in value:
            continue
        path = _join(where, key)
        decoded = _decode(f.type, value[key], path)
        bounds = f.metadata.get("bounds")
        if bounds is not None and not bounds[0] <= decoded <= bounds[1]:
            raise ValueError(f"{path}: {decoded} is out of range [{bounds[0]}, {bounds[1]}]")
        kwargs[f.name] = decoded
    for key in value:
        if key not in known:
            logger.warning(
                'unknown field "%s" in %s; non-strict YAML is deprecated and will be unsupported in a future version',
                key,
                where or "document",
            )
    return cls(**kwargs)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if dataclasses.is_dataclass(value):
        return value == type(value)()
    if isinstance(value, tuple):
        return all(item == 0 for item in value)
    if isinstance(value, (str, list, dict)):
        return not value
    if isinstance(value, bool):
        return not value
    if isinstance(value, int):
        return value == 0
    return False


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return _encode_struct(value)
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


def _encode_struct(obj: Any) -> "dict[str, Any]":
    out: dict[str, Any] = {}
    for f in dataclasses.fields(obj):
        value = getattr(obj, f.name)
        if f.metadata["omit"]:
            empty = value is None if _is_optional(f.type) else _is_empty(value)
            if empty:
                continue
        out[f.metadata["key"]] = _encode(value)
    return out