"""Resolution of host-dependent values and of per-rule defaults in instance configurations."""

from __future__ import annotations

import getpass
import hashlib
import ipaddress
import logging
import os
import platform
import re
import socket
import sys
from collections.abc import Mapping

from .model import (
    AARCH64,
    ARMV7L,
    LINUX,
    QEMU,
    RISCV64,
    TCP,
    VZ,
    WSL2,
    X8664,
    CopyToHost,
    File,
    PortForward,
)

logger = logging.getLogger(__name__)

IPV4_LOOPBACK1 = ipaddress.IPv4Address("127.0.0.1")
IPV4_ZERO = ipaddress.IPv4Address("0.0.0.0")

SOCKET_DIR = "sock"

NERDCTL_VERSION = "1.6.2"

_BINARY_ABBRS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB", "EiB", "ZiB", "YiB")
_BINARY_MAP = {"k": 1 << 10, "m": 1 << 20, "g": 1 << 30, "t": 1 << 40, "p": 1 << 50}
_FLOAT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_FIELD_RE = re.compile(r"^\.([A-Za-z_]\w*)$")

_NO_VALUE = "<no value>"


def _goos() -> str:
    plat = sys.platform
    if plat == "win32":
        return "windows"
    for name in ("darwin", "linux", "netbsd", "freebsd", "openbsd"):
        if plat.startswith(name):
            return name
    return plat


def _goarch() -> str:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return "amd64"
    if machine in ("arm64", "aarch64"):
        return "arm64"
    if machine.startswith("arm"):
        return "arm"
    if machine == "riscv64":
        return "riscv64"
    return machine


def _goarm() -> int:
    if _goos() != "linux" or _goarch() != "arm":
        return 0
    machine = platform.machine().lower()
    if machine.startswith("armv7") or machine.startswith("armv8"):
        return 7
    if machine.startswith("armv6"):
        return 6
    return 5


def new_os(osname: str) -> str:
    """Map an operating-system name to the configuration's OS value."""
    if osname == "linux":
        return LINUX
    logger.warning("Unknown os: %s", osname)
    return osname


def new_arch(arch: str) -> str:
    """Map an architecture name such as ``amd64`` to the configuration's arch value."""
    if arch == "amd64":
        return X8664
    if arch == "arm64":
        return AARCH64
    if arch == "arm":
        arm = _goarm()
        if arm == 7:
            return ARMV7L
        logger.warning("Unknown arm: %d", arm)
        return arch
    if arch == "riscv64":
        return RISCV64
    logger.warning("Unknown arch: %s", arch)
    return arch


def new_vm_type(driver: str) -> str:
    """Map a driver name to the configuration's VM type."""
    if driver in (VZ, QEMU, WSL2):
        return driver
    logger.warning("Unknown driver: %s", driver)
    return driver


def _is_default(s: str | None) -> bool:
    return s is None or s == "" or s == "default"


def resolve_vm_type(s: str | None) -> str:
    return QEMU if _is_default(s) else new_vm_type(s)


def resolve_os(s: str | None) -> str:
    return new_os("linux") if _is_default(s) else s


def resolve_arch(s: str | None) -> str:
    return new_arch(_goarch()) if _is_default(s) else s


def is_accel_os() -> bool:
    """Whether the host OS offers hardware acceleration."""
    return _goos() in ("darwin", "linux", "netbsd", "windows")


def has_host_cpu() -> bool:
    return _goos() in ("darwin", "linux")


def has_max_cpu() -> bool:
    # WHPX: Unexpected VP exit code 4
    return _goos() != "windows"


def is_native_arch(arch: str) -> bool:
    """Whether ``arch`` matches the host's architecture."""
    goarch = _goarch()
    return (
        (arch == X8664 and goarch == "amd64")
        or (arch == AARCH64 and goarch == "arm64")
        or (arch == ARMV7L and goarch == "arm" and _goarm() == 7)
        or (arch == RISCV64 and goarch == "riscv64")
    )


def _machine_id() -> str:
    for path in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
        try:
            with open(path, encoding="utf-8") as handle:
                value = handle.read().strip()
        except OSError:
            continue
        if value:
            return value
    return socket.gethostname()


def mac_address(unique_id: str) -> str:
    """Return a stable, locally administered MAC address derived from the host and ``unique_id``."""
    digest = hashlib.sha256((_machine_id() + unique_id).encode("utf-8")).digest()
    # "5" is the magic number; the second digit 2 marks a locally administered address.
    hw = bytes((0x52, 0x55, 0x55)) + digest[:3]
    return ":".join(f"{b:02x}" for b in hw)


def bytes_size(size: float) -> str:
    """Format a byte count with binary units, e.g. ``4GiB``."""
    size = float(size)
    index = 0
    while size >= 1024.0 and index < len(_BINARY_ABBRS) - 1:
        size /= 1024.0
        index += 1
    return "%.4g%s" % (size, _BINARY_ABBRS[index])


def ram_in_bytes(size: str) -> int:
    """Parse a human-readable size with binary units, such as ``5GiB``, into bytes."""
    sep = max(size.rfind(c) for c in "0123456789. ")
    if sep == -1:
        raise ValueError(f"invalid size: '{size}'")
    if size[sep] != " ":
        num, sfx = size[: sep + 1], size[sep + 1 :]
    else:
        num, sfx = size[:sep], size[sep + 1 :]
    if not _FLOAT_RE.match(num):
        raise ValueError(f'strconv.ParseFloat: parsing "{num}": invalid syntax')
    value = float(num)
    if value < 0:
        raise ValueError(f"invalid size: '{size}'")
    if not sfx:
        return int(value)
    bad = ValueError(f"invalid suffix: '{sfx.lower() if len(sfx) <= 3 else sfx}'")
    if len(sfx) > 3:
        raise bad
    sfx = sfx.lower()
    if sfx[0] == "b":
        if len(sfx) > 1:
            raise bad
        return int(value)
    mul = _BINARY_MAP.get(sfx[0])
    if mul is None:
        raise bad
    if (len(sfx) == 2 and sfx[1] != "b") or (len(sfx) == 3 and sfx[1:] != "ib"):
        raise bad
    return int(value * mul)


def default_cpus() -> int:
    return min(os.cpu_count() or 1, 4)


def _total_memory() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return 0


def default_memory() -> int:
    """Half of the host memory, but at most 4GiB."""
    return min(_total_memory() // 2, 4 * 1024 * 1024 * 1024)


def default_memory_as_string() -> str:
    return bytes_size(default_memory())


def default_disk_size_as_string() -> str:
    return "100GiB"


def default_guest_install_prefix() -> str:
    return "/usr/local"


def default_containerd_archives() -> list[File]:
    """Return the nerdctl-full archives installed by default."""

    def location(goos: str, goarch: str) -> str:
        return (
            "https://github.com/containerd/nerdctl/releases/download/v"
            f"{NERDCTL_VERSION}/nerdctl-full-{NERDCTL_VERSION}-{goos}-{goarch}.tar.gz"
        )

    return [
        File(
            location=location("linux", "amd64"),
            arch=X8664,
            digest="sha256:37678f27ad341a7c568c5064f62bcbe90cddec56e65f5d684edf8ca955c3e6a4",
        ),
        File(
            location=location("linux", "arm64"),
            arch=AARCH64,
            digest="sha256:ea30ab544c057e3a0457194ecd273ffbce58067de534bdfaffe4edf3a4da6357",
        ),
    ]


def _current_user() -> tuple[str, str]:
    try:
        import pwd

        entry = pwd.getpwuid(os.getuid())
        return entry.pw_name, str(entry.pw_uid)
    except (ImportError, KeyError, AttributeError):
        pass
    try:
        return getpass.getuser(), ""
    except (OSError, KeyError):
        return "", ""


def _lima_home() -> str:
    home = os.environ.get("LIMA_HOME", "")
    if home:
        return os.path.abspath(home)
    return os.path.join(os.path.expanduser("~"), ".lima")


def _render(fmt: str, data: Mapping[str, str]) -> str:
    out: list[str] = []
    pos = 0
    while True:
        start = fmt.find("{{", pos)
        if start < 0:
            out.append(fmt[pos:])
            return "".join(out)
        end = fmt.find("}}", start + 2)
        if end < 0:
            raise ValueError("template: unclosed action")
        text = fmt[pos:start]
        body = fmt[start + 2 : end]
        pos = end + 2
        if body.startswith("- "):
            text = text.rstrip()
            body = body[2:]
        trim_right = body.endswith(" -")
        if trim_right:
            body = body[:-2]
        out.append(text)
        body = body.strip()
        if body.startswith("/*") and body.endswith("*/"):
            pass
        elif not body:
            raise ValueError("template: missing value for command")
        else:
            match = _FIELD_RE.match(body)
            if match is None:
                raise ValueError(f"template: unsupported action {body!r}")
            out.append(data.get(match.group(1), _NO_VALUE))
        if trim_right:
            rest = fmt[pos:]
            pos += len(rest) - len(rest.lstrip())


def execute_guest_template(fmt: str) -> str:
    """Expand ``{{.Home}}``, ``{{.UID}}`` and ``{{.User}}`` for the guest user."""
    user, uid = _current_user()
    return _render(fmt, {"Home": f"/home/{user}.linux", "UID": uid, "User": user})


def execute_host_template(fmt: str, inst_dir: str) -> str:
    """Expand host-side fields such as ``{{.Dir}}`` and ``{{.Name}}`` for an instance directory."""
    user, uid = _current_user()
    name = os.path.basename(inst_dir.rstrip(os.sep)) or inst_dir
    data = {
        "Dir": inst_dir,
        "Home": os.path.expanduser("~"),
        "Name": name,
        "UID": uid,
        "User": user,
        "Instance": name,  # deprecated, use Name
        "LimaHome": _lima_home(),  # deprecated, use Dir
    }
    return _render(fmt, data)


def fill_port_forward_defaults(rule: PortForward, inst_dir: str) -> None:
    """Fill unset fields of a port-forward rule in place."""
    if not rule.proto:
        rule.proto = TCP
    if rule.guest_ip is None:
        rule.guest_ip = IPV4_ZERO if rule.guest_ip_must_be_zero else IPV4_LOOPBACK1
    if rule.host_ip is None:
        rule.host_ip = IPV4_LOOPBACK1
    if rule.guest_port_range == (0, 0):
        if rule.guest_port == 0:
            rule.guest_port_range = (1, 65535)
        else:
            rule.guest_port_range = (rule.guest_port, rule.guest_port)
    if rule.host_port_range == (0, 0):
        if rule.host_port == 0:
            rule.host_port_range = tuple(rule.guest_port_range)
        else:
            rule.host_port_range = (rule.host_port, rule.host_port)
    if rule.guest_socket:
        try:
            rule.guest_socket = execute_guest_template(rule.guest_socket)
        except ValueError as exc:
            logger.warning("Couldn't process guestSocket %r as a template: %s", rule.guest_socket, exc)
    if rule.host_socket:
        try:
            rule.host_socket = execute_host_template(rule.host_socket, inst_dir)
        except ValueError as exc:
            logger.warning("Couldn't process hostSocket %r as a template: %s", rule.host_socket, exc)
        if not os.path.isabs(rule.host_socket):
            rule.host_socket = os.path.join(inst_dir, SOCKET_DIR, rule.host_socket)


def fill_copy_to_host_defaults(rule: CopyToHost, inst_dir: str) -> None:
    """Expand the templates of a copy-to-host rule in place."""
    if rule.guest_file:
        try:
            rule.guest_file = execute_guest_template(rule.guest_file)
        except ValueError as exc:
            logger.warning("Couldn't process guest %r as a template: %s", rule.guest_file, exc)
    if rule.host_file:
        try:
            rule.host_file = execute_host_template(rule.host_file, inst_dir)
        except ValueError as exc:
            logger.warning("Couldn't process host %r as a template: %s", rule.host_file, exc)