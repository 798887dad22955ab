"""Merging of an instance configuration with user defaults, overrides and built-in defaults."""

from __future__ import annotations

import copy
import logging
import os
import sys
from collections.abc import Hashable, Iterable, Mapping
from typing import Optional, TypeVar

from .model import (
    AARCH64,
    ARMV7L,
    PROBE_MODE_READINESS,
    PROVISION_MODE_DEPENDENCY,
    PROVISION_MODE_SYSTEM,
    QEMU,
    REVSSHFS,
    RISCV64,
    VIRTIOFS,
    VZ,
    X8664,
    LimaYAML,
    Mount,
    Network,
)
from .netconfig import NetworksConfig
from .resolve import (
    default_containerd_archives,
    default_cpus,
    default_disk_size_as_string,
    default_guest_install_prefix,
    default_memory_as_string,
    fill_copy_to_host_defaults,
    fill_port_forward_defaults,
    has_host_cpu,
    has_max_cpu,
    is_accel_os,
    is_native_arch,
    mac_address,
    resolve_arch,
    resolve_os,
    resolve_vm_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
H = TypeVar("H", bound=Hashable)

# "none" keeps symlinks working
DEFAULT_9P_SECURITY_MODEL = "none"
DEFAULT_9P_PROTOCOL_VERSION = "9p2000.L"
DEFAULT_9P_MSIZE = "128KiB"
DEFAULT_9P_CACHE_FOR_RO = "fscache"
DEFAULT_9P_CACHE_FOR_RW = "mmap"
DEFAULT_VIRTIOFS_QUEUE_SIZE = 1024

_BUILTIN_CPU_TYPE = {
    AARCH64: "cortex-a72",
    ARMV7L: "cortex-a7",
    X8664: "qemu64",
    RISCV64: "rv64",
}


def _pick(y_value: Optional[T], d_value: Optional[T], o_value: Optional[T]) -> Optional[T]:
    """Return the override if set, else the config value if set, else the user default."""
    if o_value is not None:
        return o_value
    return d_value if y_value is None else y_value


def _combine(*lists: Iterable[T]) -> list[T]:
    return [copy.deepcopy(item) for items in lists for item in items]


def _merge_maps(*maps: Mapping[str, str]) -> dict[str, str]:
    merged: dict[str, str] = {}
    for layer in maps:
        merged.update(layer or {})
    return merged


def unique(items: Iterable[H]) -> list[H]:
    """Return the items without duplicates, keeping the first occurrence of each."""
    return list(dict.fromkeys(items))


def first_usernet_index(y: LimaYAML, config: NetworksConfig) -> int:
    """Return the index of the first user-v2 network of ``y``, or -1 if there is none."""
    for index, nw in enumerate(y.networks):
        try:
            if config.usernet(nw.lima):
                return index
        except LookupError:
            continue
    return -1


def _cpu_types(y: LimaYAML, d: LimaYAML, o: LimaYAML) -> tuple[dict[str, str], bool]:
    cpu_type = dict(_BUILTIN_CPU_TYPE)
    for arch in cpu_type:
        if is_native_arch(arch) and is_accel_os():
            if has_host_cpu():
                cpu_type[arch] = "host"
            elif has_max_cpu():
                cpu_type[arch] = "max"
        # pdpe1gb breaks host/max CPUs on Intel Macs
        if arch == X8664 and sys.platform == "darwin" and cpu_type[arch] in ("host", "max"):
            cpu_type[arch] += ",-pdpe1gb"
    overridden = False
    for layer in (d, y, o):
        for arch, value in layer.cpu_type.items():
            if value:
                overridden = True
                cpu_type[arch] = value
    return cpu_type, overridden


def _merge_networks(layers: list[Network]) -> list[Network]:
    merged: list[Network] = []
    by_interface: dict[str, int] = {}
    for nw in layers:
        index = by_interface.get(nw.interface) if nw.interface else None
        if index is None:
            # unnamed network definitions are never combined
            if nw.interface:
                by_interface[nw.interface] = len(merged)
            merged.append(nw)
            continue
        target = merged[index]
        if nw.vnl_deprecated:
            target.vnl_deprecated = nw.vnl_deprecated
            target.switch_port_deprecated = nw.switch_port_deprecated
            target.socket = ""
            target.lima = ""
        if nw.socket:
            if nw.vnl_deprecated:
                logger.error(
                    'Network "%s" has both vnl="%s" and socket="%s" fields; ignoring vnl',
                    nw.interface, nw.vnl_deprecated, nw.socket,
                )
            target.socket = nw.socket
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
            target.lima = ""
        if nw.lima:
            if nw.vnl_deprecated:
                logger.error(
                    'Network "%s" has both vnl="%s" and lima="%s" fields; ignoring vnl',
                    nw.interface, nw.vnl_deprecated, nw.lima,
                )
            if nw.socket:
                logger.error(
                    'Network "%s" has both socket="%s" and lima="%s" fields; ignoring socket',
                    nw.interface, nw.socket, nw.lima,
                )
            target.lima = nw.lima
            target.socket = ""
            target.vnl_deprecated = ""
            target.switch_port_deprecated = 0
        if nw.mac_address:
            target.mac_address = nw.mac_address
    return merged


def _merge_mounts(layers: list[Mount]) -> list[Mount]:
    # Only exact location matches are combined; no case folding or symlink resolution.
    merged: list[Mount] = []
    by_location: dict[str, int] = {}
    for mount in layers:
        index = by_location.get(mount.location)
        if index is None:
            by_location[mount.location] = len(merged)
            merged.append(mount)
            continue
        target = merged[index]
        for attr in ("cache", "follow_symlinks", "sftp_driver"):
            value = getattr(mount.sshfs, attr)
            if value is not None:
                setattr(target.sshfs, attr, value)
        for attr in ("security_model", "protocol_version", "msize", "cache"):
            value = getattr(mount.nine_p, attr)
            if value is not None:
                setattr(target.nine_p, attr, value)
        if mount.virtiofs.queue_size is not None:
            target.virtiofs.queue_size = mount.virtiofs.queue_size
        if mount.writable is not None:
            target.writable = mount.writable
        if mount.mount_point:
            target.mount_point = mount.mount_point
    return merged


def _fill_mount(mount: Mount, vm_type: str, mount_type: str) -> None:
    if mount.sshfs.cache is None:
        mount.sshfs.cache = True
    if mount.sshfs.follow_symlinks is None:
        mount.sshfs.follow_symlinks = False
    if mount.sshfs.sftp_driver is None:
        mount.sshfs.sftp_driver = ""
    if mount.nine_p.security_model is None:
        mount.nine_p.security_model = DEFAULT_9P_SECURITY_MODEL
    if mount.nine_p.protocol_version is None:
        mount.nine_p.protocol_version = DEFAULT_9P_PROTOCOL_VERSION
    if mount.nine_p.msize is None:
        mount.nine_p.msize = DEFAULT_9P_MSIZE
    if mount.virtiofs.queue_size is None and vm_type == QEMU and mount_type == VIRTIOFS:
        mount.virtiofs.queue_size = DEFAULT_VIRTIOFS_QUEUE_SIZE
    if mount.writable is None:
        mount.writable = False
    if mount.nine_p.cache is None:
        mount.nine_p.cache = DEFAULT_9P_CACHE_FOR_RW if mount.writable else DEFAULT_9P_CACHE_FOR_RO
    if not mount.mount_point:
        mount.mount_point = mount.location


def _fix_up_for_plain_mode(y: LimaYAML) -> None:
    if not y.plain:
        return
    y.mounts = []
    y.port_forwards = []
    y.containerd.system = False
    y.containerd.user = False
    y.rosetta.binfmt = False
    y.rosetta.enabled = False


def fill_default(y: LimaYAML, d: LimaYAML, o: LimaYAML, file_path: str) -> None:
    """Fill unset fields of ``y`` in place from ``d`` (or built-in defaults), then apply ``o``.

    Maps are merged d, y, o with later layers winning. Lists are concatenated o, y, d so
    that higher-priority entries come first, except networks and mounts, which are
    concatenated d, y, o and combined by interface name or location. DNS comes from the
    highest-priority layer that has any, and CA files and certificates are appended
    d, y, o without duplicates. ``d`` and ``o`` are not modified.
    """
    file_path = os.fspath(file_path)

    y.vm_type = resolve_vm_type(_pick(y.vm_type, d.vm_type, o.vm_type))
    y.os = resolve_os(_pick(y.os, d.os, o.os))
    y.arch = resolve_arch(_pick(y.arch, d.arch, o.arch))

    y.images = _combine(o.images, y.images, d.images)
    for image in y.images:
        if not image.arch:
            image.arch = y.arch
        if image.kernel is not None and not image.kernel.arch:
            image.kernel.arch = image.arch
        if image.initrd is not None and not image.initrd.arch:
            image.initrd.arch = image.arch

    cpu_type, overridden = _cpu_types(y, d, o)
    if y.vm_type == QEMU or overridden:
        y.cpu_type = cpu_type

    y.cpus = _pick(y.cpus, d.cpus, o.cpus)
    if not y.cpus:
        y.cpus = default_cpus()

    y.memory = _pick(y.memory, d.memory, o.memory)
    if not y.memory:
        y.memory = default_memory_as_string()

    y.disk = _pick(y.disk, d.disk, o.disk)
    if not y.disk:
        y.disk = default_disk_size_as_string()

    y.additional_disks = _combine(o.additional_disks, y.additional_disks, d.additional_disks)

    y.audio.device = _pick(y.audio.device, d.audio.device, o.audio.device)
    if y.audio.device is None:
        y.audio.device = ""

    y.video.display = _pick(y.video.display, d.video.display, o.video.display)
    if not y.video.display:
        y.video.display = "none"

    y.video.vnc.display = _pick(y.video.vnc.display, d.video.vnc.display, o.video.vnc.display)
    if not y.video.vnc.display and y.vm_type == QEMU:
        y.video.vnc.display = "127.0.0.1:0,to=9"

    y.firmware.legacy_bios = _pick(y.firmware.legacy_bios, d.firmware.legacy_bios, o.firmware.legacy_bios)
    if y.firmware.legacy_bios is None:
        y.firmware.legacy_bios = False

    ssh_defaults = {
        # the local port itself is chosen later, when the instance starts
        "local_port": 0,
        "load_dot_ssh_pub_keys": True,
        "forward_agent": False,
        "forward_x11": False,
        "forward_x11_trusted": False,
    }
    for attr, default in ssh_defaults.items():
        value = _pick(getattr(y.ssh, attr), getattr(d.ssh, attr), getattr(o.ssh, attr))
        setattr(y.ssh, attr, default if value is None else value)

    # Values are names or IP addresses; names are canonicalized by the host resolver.
    y.host_resolver.hosts = _merge_maps(d.host_resolver.hosts, y.host_resolver.hosts, o.host_resolver.hosts)

    y.provision = _combine(o.provision, y.provision, d.provision)
    for provision in y.provision:
        if not provision.mode:
            provision.mode = PROVISION_MODE_SYSTEM
        if provision.mode == PROVISION_MODE_DEPENDENCY and provision.skip_default_dependency_resolution is None:
            provision.skip_default_dependency_resolution = False

    y.guest_install_prefix = _pick(y.guest_install_prefix, d.guest_install_prefix, o.guest_install_prefix)
    if y.guest_install_prefix is None:
        y.guest_install_prefix = default_guest_install_prefix()

    system = _pick(y.containerd.system, d.containerd.system, o.containerd.system)
    y.containerd.system = False if system is None else system
    user = _pick(y.containerd.user, d.containerd.user, o.containerd.user)
    y.containerd.user = True if user is None else user

    y.containerd.archives = _combine(o.containerd.archives, y.containerd.archives, d.containerd.archives)
    if not y.containerd.archives:
        y.containerd.archives = default_containerd_archives()
    for archive in y.containerd.archives:
        if not archive.arch:
            archive.arch = y.arch

    y.probes = _combine(o.probes, y.probes, d.probes)
    for number, probe in enumerate(y.probes, start=1):
        if not probe.mode:
            probe.mode = PROBE_MODE_READINESS
        if not probe.description:
            probe.description = f"user probe {number}/{len(y.probes)}"

    inst_dir = os.path.dirname(file_path) or "."
    y.port_forwards = _combine(o.port_forwards, y.port_forwards, d.port_forwards)
    for rule in y.port_forwards:
        # only the port ranges are meaningful once defaults are filled
        fill_port_forward_defaults(rule, inst_dir)

    y.copy_to_host = _combine(o.copy_to_host, y.copy_to_host, d.copy_to_host)
    for copy_rule in y.copy_to_host:
        fill_copy_to_host_defaults(copy_rule, inst_dir)

    enabled = _pick(y.host_resolver.enabled, d.host_resolver.enabled, o.host_resolver.enabled)
    y.host_resolver.enabled = True if enabled is None else enabled
    ipv6 = _pick(y.host_resolver.ipv6, d.host_resolver.ipv6, o.host_resolver.ipv6)
    y.host_resolver.ipv6 = False if ipv6 is None else ipv6

    proxy = _pick(y.propagate_proxy_env, d.propagate_proxy_env, o.propagate_proxy_env)
    y.propagate_proxy_env = True if proxy is None else proxy

    y.networks = _merge_networks(_combine(d.networks, y.networks, o.networks))
    for index, nw in enumerate(y.networks):
        if not nw.mac_address:
            # every interface in every configuration file gets its own MAC address
            nw.mac_address = mac_address(f"{file_path}#{index}")
        if not nw.interface:
            nw.interface = f"lima{index}"

    # the mount type must be known before the mounts are filled
    y.mount_type = _pick(y.mount_type, d.mount_type, o.mount_type)
    if not y.mount_type:
        y.mount_type = VIRTIOFS if y.vm_type == VZ else REVSSHFS

    y.mounts = _merge_mounts(_combine(d.mounts, y.mounts, o.mounts))
    for mount in y.mounts:
        _fill_mount(mount, y.vm_type, y.mount_type)

    # DNS lists are not combined; the highest-priority non-empty list wins
    if not y.dns:
        y.dns = list(d.dns)
    if o.dns:
        y.dns = list(o.dns)

    y.env = _merge_maps(d.env, y.env, o.env)

    remove = _pick(
        y.ca_certificates.remove_defaults,
        d.ca_certificates.remove_defaults,
        o.ca_certificates.remove_defaults,
    )
    y.ca_certificates.remove_defaults = False if remove is None else remove
    y.ca_certificates.files = unique(
        [*d.ca_certificates.files, *y.ca_certificates.files, *o.ca_certificates.files]
    )
    y.ca_certificates.certs = unique(
        [*d.ca_certificates.certs, *y.ca_certificates.certs, *o.ca_certificates.certs]
    )

    if sys.platform == "darwin" and is_native_arch(AARCH64):
        rosetta = _pick(y.rosetta.enabled, d.rosetta.enabled, o.rosetta.enabled)
        y.rosetta.enabled = False if rosetta is None else rosetta
    else:
        y.rosetta.enabled = False

    binfmt = _pick(y.rosetta.binfmt, d.rosetta.binfmt, o.rosetta.binfmt)
    y.rosetta.binfmt = False if binfmt is None else binfmt

    plain = _pick(y.plain, d.plain, o.plain)
    y.plain = False if plain is None else plain

    _fix_up_for_plain_mode(y)