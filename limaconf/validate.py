"""Validation of filled-in instance configurations."""

from __future__ import annotations

import getpass
import ipaddress
import logging
import os
import re
import stat
import sys
from typing import Optional

from .localpath import expand
from .model import (
    AARCH64,
    ARMV7L,
    LINUX,
    NINEP,
    PROBE_MODE_READINESS,
    PROVISION_MODE_BOOT,
    PROVISION_MODE_DEPENDENCY,
    PROVISION_MODE_SYSTEM,
    PROVISION_MODE_USER,
    QEMU,
    REVSSHFS,
    RISCV64,
    TCP,
    VIRTIOFS,
    VZ,
    WSL2,
    WSL_MOUNT,
    X8664,
    File,
    LimaYAML,
)
from .netconfig import NetworksConfig, config_file, load_config
from .resolve import is_native_arch, ram_in_bytes, resolve_arch
from .usernet import UNIX_PATH_MAX

logger = logging.getLogger(__name__)

SLIRP_NIC_NAME = "eth0"

_ARCHES = (X8664, AARCH64, ARMV7L, RISCV64)
_SYSTEM_PATHS = frozenset(
    {"/", "/bin", "/dev", "/etc", "/home", "/opt", "/sbin", "/tmp", "/usr", "/var"}
)
_DIGEST_SIZES = {"sha256": 32, "sha384": 48, "sha512": 64}
_HEX_RE = re.compile(r"^[a-f0-9]+$")
_IPV4_ZERO = ipaddress.IPv4Address("0.0.0.0")


class ValidationError(ValueError):
    """Raised when a configuration is not valid."""


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


def _goos() -> str:
    if sys.platform == "win32":
        return "windows"
    for name in ("darwin", "linux", "netbsd", "freebsd", "openbsd"):
        if sys.platform.startswith(name):
            return name
    return sys.platform


def _username() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError) as exc:
        raise ValidationError(f"internal error (not an error of YAML): {exc}") from exc


def _check_digest(digest: str, field_name: str) -> None:
    sep = digest.find(":")
    if sep < 0:
        raise ValidationError(
            f"field `{field_name}.digest` is invalid: {digest}: invalid checksum digest format"
        )
    algorithm, encoded = digest[:sep], digest[sep + 1 :]
    size = _DIGEST_SIZES.get(algorithm)
    if size is None:
        raise ValidationError(
            f"field `{field_name}.digest` refers to an unavailable digest algorithm"
        )
    if sep == 0 or not encoded:
        problem = "invalid checksum digest format"
    elif len(encoded) != size * 2:
        problem = "invalid checksum digest length"
    elif not _HEX_RE.match(encoded):
        problem = "invalid checksum digest format"
    else:
        return
    raise ValidationError(f"field `{field_name}.digest` is invalid: {digest}: {problem}")


def validate_file_object(f: File, field_name: str) -> None:
    """Check the location, architecture and digest of a file reference."""
    if "://" not in f.location:
        try:
            expand(f.location)
        except (OSError, ValueError) as exc:
            raise ValidationError(
                f'field `{field_name}.location` refers to an invalid local file path: '
                f'"{f.location}": {exc}'
            ) from exc
        # the location need not exist yet
    if f.arch not in _ARCHES:
        raise ValidationError(
            f'field `arch` must be "{X8664}", "{AARCH64}", "{ARMV7L}", or "{RISCV64}"; got "{f.arch}"'
        )
    if f.digest:
        _check_digest(f.digest, field_name)


def validate_port(field: str, port: int) -> None:
    """Check that ``port`` is a usable TCP port other than 22."""
    if port < 0:
        raise ValidationError(f"field `{field}` must be > 0")
    if port == 0:
        raise ValidationError(f"field `{field}` must be set")
    if port == 22:
        raise ValidationError(f"field `{field}` must not be 22")
    if port > 65535:
        raise ValidationError(f"field `{field}` must be < 65536")


def _validate_images(y: LimaYAML) -> None:
    if not y.images:
        raise ValidationError("field `images` must be set")
    for i, image in enumerate(y.images):
        validate_file_object(image, f"images[{i}]")
        if image.kernel is not None:
            validate_file_object(image.kernel, f"images[{i}].kernel")
            if image.kernel.arch != image.arch:
                raise ValidationError(
                    f'images[{i}].kernel has unexpected architecture "{image.kernel.arch}", '
                    f'must be "{image.arch}"'
                )
        elif image.arch == RISCV64:
            raise ValidationError('riscv64 needs the kernel (e.g., "uboot.elf") to be specified')
        if image.initrd is not None:
            validate_file_object(image.initrd, f"images[{i}].initrd")
            if image.kernel is None:
                raise ValidationError("initrd requires the kernel to be specified")
            if image.initrd.arch != image.arch:
                raise ValidationError(
                    f'images[{i}].initrd has unexpected architecture "{image.initrd.arch}", '
                    f'must be "{image.arch}"'
                )


def _validate_mounts(y: LimaYAML) -> None:
    reserved_home = f"/home/{_username()}.linux"
    for i, mount in enumerate(y.mounts):
        location = mount.location
        if not os.path.isabs(location) and not location.startswith("~"):
            raise ValidationError(
                f'field `mounts[{i}].location` must be an absolute path, got "{location}"'
            )
        try:
            loc = expand(location)
        except (OSError, ValueError) as exc:
            raise ValidationError(
                f'field `mounts[{i}].location` refers to an unexpandable path: "{location}": {exc}'
            ) from exc
        if loc in _SYSTEM_PATHS:
            raise ValidationError(
                f"field `mounts[{i}].location` must not be a system path such as /etc or /usr"
            )
        if loc == reserved_home:
            raise ValidationError(f"field `mounts[{i}].location` is internally reserved")
        try:
            st = os.stat(loc)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise ValidationError(
                f'field `mounts[{i}].location` refers to an inaccessible path: "{location}": {exc}'
            ) from exc
        else:
            if not stat.S_ISDIR(st.st_mode):
                raise ValidationError(
                    f'field `mounts[{i}].location` refers to a non-directory path: "{location}"'
                )
        try:
            ram_in_bytes(mount.nine_p.msize or "")
        except ValueError as exc:
            raise ValidationError(f"field `msize` has an invalid value: {exc}") from exc


def _validate_port_forwards(y: LimaYAML) -> None:
    for i, rule in enumerate(y.port_forwards):
        field = f"portForwards[{i}]"
        guest_range = rule.guest_port_range
        host_range = rule.host_port_range
        if rule.guest_ip_must_be_zero and rule.guest_ip != _IPV4_ZERO:
            raise ValidationError(
                f"field `{field}.guestIPMustBeZero` can only be true when field "
                f"`{field}.guestIP` is 0.0.0.0"
            )
        if rule.guest_port != 0:
            if rule.guest_socket:
                raise ValidationError(
                    f"field `{field}.guestPort` must be 0 when field `{field}.guestSocket` is set"
                )
            if rule.guest_port != guest_range[0]:
                raise ValidationError(
                    f"field `{field}.guestPort` must match field `{field}.guestPortRange[0]`"
                )
            validate_port(f"{field}.guestPort", rule.guest_port)
        if rule.host_port != 0:
            if rule.host_socket:
                raise ValidationError(
                    f"field `{field}.hostPort` must be 0 when field `{field}.hostSocket` is set"
                )
            if rule.host_port != host_range[0]:
                raise ValidationError(
                    f"field `{field}.hostPort` must match field `{field}.hostPortRange[0]`"
                )
            validate_port(f"{field}.hostPort", rule.host_port)
        for j in range(2):
            validate_port(f"{field}.guestPortRange[{j}]", guest_range[j])
            validate_port(f"{field}.hostPortRange[{j}]", host_range[j])
        if guest_range[0] > guest_range[1]:
            raise ValidationError(
                f"field `{field}.guestPortRange[1]` must be greater than or equal to "
                f"field `{field}.guestPortRange[0]`"
            )
        if host_range[0] > host_range[1]:
            raise ValidationError(
                f"field `{field}.hostPortRange[1]` must be greater than or equal to "
                f"field `{field}.hostPortRange[0]`"
            )
        if guest_range[1] - guest_range[0] != host_range[1] - host_range[0]:
            raise ValidationError(
                f"field `{field}.hostPortRange` must specify the same number of ports as "
                f"field `{field}.guestPortRange`"
            )
        if rule.guest_socket:
            if not rule.guest_socket.startswith("/"):
                raise ValidationError(f"field `{field}.guestSocket` must be an absolute path")
            if not rule.host_socket and host_range[1] - host_range[0] > 0:
                raise ValidationError(
                    f"field `{field}.guestSocket` can only be mapped to a single port or socket. "
                    "not a range"
                )
        if rule.host_socket:
            if not os.path.isabs(rule.host_socket):
                raise ValidationError(
                    f'field `{field}.hostSocket` must be an absolute path, but is "{rule.host_socket}"'
                )
            if not rule.guest_socket and guest_range[1] - guest_range[0] > 0:
                raise ValidationError(
                    f"field `{field}.hostSocket` can only be mapped from a single port or socket. "
                    "not a range"
                )
        if len(rule.host_socket) >= UNIX_PATH_MAX:
            raise ValidationError(
                f"field `{field}.hostSocket` must be less than UNIX_PATH_MAX={UNIX_PATH_MAX} "
                f"characters, but is {len(rule.host_socket)}"
            )
        if rule.proto != TCP:
            raise ValidationError(f'field `{field}.proto` must be "{TCP}"')
        if rule.reverse and (not rule.guest_socket or not rule.host_socket):
            raise ValidationError(f"field `{field}.reverse` must be false")
        # Overlapping ranges are allowed: the first matching rule wins.


def validate(
    y: LimaYAML, warn: bool, networks_config: Optional[NetworksConfig] = None
) -> None:
    """Check a filled-in configuration; raise ``ValidationError`` on the first problem.

    ``networks_config`` is consulted for ``lima`` networks; when omitted it is loaded
    from ``$LIMA_HOME/_config/networks.yaml`` on demand.
    """
    if y.os != LINUX:
        raise ValidationError(f'field `os` must be "{LINUX}"; got "{y.os}"')
    if y.arch not in _ARCHES:
        raise ValidationError(
            f'field `arch` must be "{X8664}", "{AARCH64}", "{ARMV7L}" or "{RISCV64}"; got "{y.arch}"'
        )
    if y.vm_type == VZ:
        if not is_native_arch(y.arch):
            raise ValidationError(
                f'field `arch` must be "{resolve_arch(None)}" for VZ; got "{y.arch}"'
            )
    elif y.vm_type not in (QEMU, WSL2):
        raise ValidationError(
            f'field `vmType` must be "{QEMU}", "{VZ}", "{WSL2}"; got "{y.vm_type}"'
        )

    _validate_images(y)

    for arch in y.cpu_type:
        if arch not in _ARCHES:
            raise ValidationError(f'field `cpuType` uses unsupported arch "{arch}"')

    if not y.cpus:
        raise ValidationError("field `cpus` must be set")
    try:
        ram_in_bytes(y.memory or "")
    except ValueError as exc:
        raise ValidationError(f"field `memory` has an invalid value: {exc}") from exc
    try:
        ram_in_bytes(y.disk or "")
    except ValueError as exc:
        raise ValidationError(f"field `memory` has an invalid value: {exc}") from exc

    _validate_mounts(y)

    if y.ssh.local_port:
        validate_port("ssh.localPort", y.ssh.local_port)

    if y.mount_type not in (REVSSHFS, NINEP, VIRTIOFS, WSL_MOUNT):
        raise ValidationError(
            f'field `mountType` must be "{REVSSHFS}" or "{NINEP}" or "{VIRTIOFS}", or '
            f'"{WSL_MOUNT}", got "{y.mount_type}"'
        )

    if warn and not _is_linux():
        for i, mount in enumerate(y.mounts):
            if mount.virtiofs.queue_size is not None:
                logger.warning("field mounts[%d].virtiofs.queueSize is only supported on Linux", i)

    for i, p in enumerate(y.provision):
        if p.mode in (PROVISION_MODE_SYSTEM, PROVISION_MODE_USER, PROVISION_MODE_BOOT):
            if p.skip_default_dependency_resolution is not None:
                raise ValidationError(
                    f"field `provision[{i}].mode` cannot set skipDefaultDependencyResolution, "
                    f'only valid on scripts of type "{PROVISION_MODE_DEPENDENCY}"'
                )
        elif p.mode != PROVISION_MODE_DEPENDENCY:
            raise ValidationError(
                f'field `provision[{i}].mode` must one of "{PROVISION_MODE_SYSTEM}", '
                f'"{PROVISION_MODE_USER}", "{PROVISION_MODE_BOOT}", or "{PROVISION_MODE_DEPENDENCY}"'
            )

    needs_archives = bool(y.containerd.user) or bool(y.containerd.system)
    if needs_archives and not y.containerd.archives:
        raise ValidationError("field `containerd.archives` must be provided")

    for i, probe in enumerate(y.probes):
        if probe.mode != PROBE_MODE_READINESS:
            raise ValidationError(
                f'field `probe[{i}].mode` can only be "{PROBE_MODE_READINESS}"'
            )

    _validate_port_forwards(y)

    for i, rule in enumerate(y.copy_to_host):
        field = f"CopyToHost[{i}]"
        if rule.guest_file and not rule.guest_file.startswith("/"):
            raise ValidationError(f"field `{field}.guest` must be an absolute path")
        if rule.host_file and not os.path.isabs(rule.host_file):
            raise ValidationError(
                f'field `{field}.host` must be an absolute path, but is "{rule.host_file}"'
            )

    if y.host_resolver.enabled and y.dns:
        raise ValidationError("field `dns` must be empty when field `HostResolver.Enabled` is true")

    validate_network(y, warn, networks_config)
    if warn:
        _warn_experimental(y)


def _load_networks_config() -> NetworksConfig:
    home = os.environ.get("LIMA_HOME", "")
    lima_home = os.path.abspath(home) if home else os.path.join(os.path.expanduser("~"), ".lima")
    return load_config(config_file(os.path.join(lima_home, "_config")))


def _parse_mac(text: str) -> bytes:
    bad = ValidationError(f"field `vmnet.mac` invalid: address {text}: invalid MAC address")
    n = len(text)
    if n < 14:
        raise bad
    if text[2] in ":-":
        sep, width = text[2], 2
    elif text[4] == ".":
        sep, width = ".", 4
    else:
        raise bad
    groups = text.split(sep)
    if any(len(g) != width for g in groups):
        raise bad
    try:
        hw = b"".join(bytes.fromhex(g) for g in groups)
    except ValueError:
        raise bad from None
    if len(hw) not in (6, 8, 20):
        raise bad
    return hw


def _is_socket(path: str) -> Optional[bool]:
    """Return whether ``path`` is a socket, or ``None`` if it does not exist."""
    try:
        return stat.S_ISSOCK(os.stat(path).st_mode)
    except FileNotFoundError:
        return None


def _validate_vnl(field: str, nw, warn: bool) -> None:
    vnl = nw.vnl_deprecated
    if "://" not in vnl or vnl.startswith("vde://"):
        vde_switch = vnl[len("vde://"):] if vnl.startswith("vde://") else vnl
        try:
            st = os.stat(vde_switch)
        except OSError as exc:
            # negligible while the instance is stopped
            logger.debug('field `%s.vnl` "%s" failed stat: %s', field, vde_switch, exc)
            return
        if stat.S_ISDIR(st.st_mode):
            ctl_socket = os.path.join(vde_switch, "ctl")
            try:
                ctl = os.stat(ctl_socket)
            except OSError:
                ctl = None
            if ctl is not None and not stat.S_ISSOCK(ctl.st_mode):
                raise ValidationError(
                    f'field `{field}.vnl` file "{ctl_socket}" is not a UNIX socket'
                )
            if nw.switch_port_deprecated == 65535:
                raise ValidationError(
                    f"field `{field}.vnl` points to a non-PTP switch, so the port number "
                    "must not be 65535"
                )
        else:
            if not stat.S_ISSOCK(st.st_mode):
                raise ValidationError(
                    f'field `{field}.vnl` "{vde_switch}" is not a directory nor a UNIX socket'
                )
            if nw.switch_port_deprecated != 65535:
                raise ValidationError(
                    f'field `{field}.vnl` points to a PTP (switchless) socket "{vde_switch}", '
                    f"so the port number has to be 65535 (got {nw.switch_port_deprecated})"
                )
    elif not _is_linux() and warn:
        goos = _goos()
        logger.warning(
            "field `%s.vnl` is unlikely to work for %s (unless libvdeplug4 has been ported to %s "
            "and is installed)",
            field, goos, goos,
        )


def validate_network(
    y: LimaYAML, warn: bool, networks_config: Optional[NetworksConfig] = None
) -> None:
    """Check the ``networks`` entries of a filled-in configuration."""
    interface_name: dict[str, int] = {}
    config = networks_config
    for i, nw in enumerate(y.networks):
        field = f"networks[{i}]"
        if nw.lima:
            if config is None:
                config = _load_networks_config()
            try:
                config.check(nw.lima)
            except (LookupError, ValueError):
                raise ValidationError(
                    f'field `{field}.lima` references network "{nw.lima}" which is not defined '
                    "in networks.yaml"
                ) from None
            try:
                is_usernet = config.usernet(nw.lima)
            except (LookupError, ValueError) as exc:
                raise ValidationError(str(exc)) from exc
            if not is_usernet and sys.platform != "darwin":
                raise ValidationError(f"field `{field}.lima` is only supported on macOS right now")
            if nw.socket:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.socket` are mutually exclusive"
                )
            if nw.vz_nat:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vzNAT` are mutually exclusive"
                )
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.lima` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.lima`"
                )
        elif nw.socket:
            if nw.vz_nat:
                raise ValidationError(
                    f"field `{field}.socket` and field `{field}.vzNAT` are mutually exclusive"
                )
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.socket` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.socket`"
                )
            try:
                is_socket = _is_socket(nw.socket)
            except OSError as exc:
                raise ValidationError(str(exc)) from exc
            if is_socket is False:
                raise ValidationError(
                    f'field `{field}.socket` "{nw.socket}" points to a non-socket file'
                )
        elif nw.vz_nat:
            if y.vm_type != VZ:
                raise ValidationError(f'field `{field}.vzNAT` requires `vmType` to be "{VZ}"')
            if nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.vzNAT` and field `{field}.vnl` are mutually exclusive"
                )
            if nw.switch_port_deprecated:
                raise ValidationError(
                    f"field `{field}.switchPort` cannot be used with field `{field}.vzNAT`"
                )
        else:
            if not nw.vnl_deprecated:
                raise ValidationError(
                    f"field `{field}.lima`, field `{field}.socket`, or field `{field}.vnl` must be set"
                )
            _validate_vnl(field, nw, warn)

        if nw.mac_address:
            hw = _parse_mac(nw.mac_address)
            if len(hw) != 6:
                raise ValidationError(
                    f"field `{field}.macAddress` must be a 48 bit (6 bytes) MAC address; "
                    f'actual length of "{nw.mac_address}" is {len(hw)} bytes'
                )
        size = len(nw.interface.encode("utf-8"))
        if size >= 16:
            raise ValidationError(
                f"field `{field}.interface` must be less than 16 bytes, but is {size} bytes: "
                f'"{nw.interface}"'
            )
        if any(c in nw.interface for c in " \t\n/"):
            raise ValidationError(
                f"field `{field}.interface` must not contain whitespace or slashes"
            )
        if nw.interface == SLIRP_NIC_NAME:
            raise ValidationError(
                f'field `{field}.interface` must not be set to "{SLIRP_NIC_NAME}" because it is '
                "reserved for slirp"
            )
        if nw.interface in interface_name:
            raise ValidationError(
                f'field `{field}.interface` value "{nw.interface}" has already been used by '
                f"field `networks[{interface_name[nw.interface]}].interface`"
            )
        interface_name[nw.interface] = i


def _warn_experimental(y: LimaYAML) -> None:
    if y.mount_type == NINEP:
        logger.warning("`mountType: 9p` is experimental")
    if y.mount_type == VIRTIOFS and _is_linux():
        logger.warning("`mountType: virtiofs` on Linux is experimental")
    if y.vm_type == VZ:
        logger.warning("`vmType: vz` is experimental")
    if y.arch == RISCV64:
        logger.warning("`arch: riscv64` is experimental")
    if y.video.display is not None and "vnc" in y.video.display:
        logger.warning("`video.display: vnc` is experimental")
    if y.audio.device:
        logger.warning("`audio.device` is experimental")