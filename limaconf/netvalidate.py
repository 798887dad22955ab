"""Security checks of the paths configured in networks.yaml."""

from __future__ import annotations

import os
import stat
import sys

from .netconfig import PATH_FIELDS, NetworksConfig

_DAEMON_PATHS = ("socketVMNet", "vdeVMNet", "vdeSwitch")


def _parent(path: str) -> str:
    return os.path.dirname(path) or "."


def find_base_directory(path: str) -> str:
    """Strip components that do not exist from the end of ``path``."""
    while path != "/":
        try:
            os.lstat(path)
        except FileNotFoundError:
            path = _parent(path)
            continue
        except OSError:
            return path
        return path
    return path


def _user(name: str):
    import pwd

    try:
        return pwd.getpwnam(name)
    except KeyError:
        raise LookupError(f'could not find user "{name}"') from None


def _user_by_id(uid: int):
    import pwd

    try:
        return pwd.getpwuid(uid)
    except KeyError:
        raise LookupError(f"could not find user with uid {uid}") from None


def _group(name: str):
    import grp

    try:
        return grp.getgrnam(name)
    except KeyError:
        raise LookupError(f'could not find group "{name}"') from None


def validate_path(path: str, allow_daemon_group_writable: bool) -> None:
    """Check that ``path`` and all its parents are owned by an admin and not writable by others.

    Policy violations raise ``ValueError``; a missing path raises ``FileNotFoundError``.
    """
    if not path:
        return
    while True:
        if not path.startswith("/"):
            raise ValueError(f'path "{path}" is not an absolute path')
        if " " in path:
            raise ValueError(f'path "{path}" contains whitespace')
        st = os.lstat(path)
        mode = st.st_mode
        is_dir = stat.S_ISDIR(mode)
        kind = "dir" if is_dir else "file"
        if stat.S_ISLNK(mode):
            raise ValueError(f'{kind} "{path}" is a symlink')
        if sys.platform != "darwin":
            raise ValueError("vmnet code must not be called on non-Darwin")

        root = _user("root")
        admin = _group("admin")
        owner = _user_by_id(st.st_uid)
        owner_is_admin = owner.pw_uid == 0 or admin.gr_gid in os.getgrouplist(
            owner.pw_name, owner.pw_gid
        )
        if not owner_is_admin:
            raise ValueError(f'{kind} "{path}" owner {st.st_uid} is not an admin')

        group_writable = mode & 0o20 != 0
        if allow_daemon_group_writable:
            daemon = _user("daemon")
            if group_writable and st.st_gid not in (root.pw_gid, admin.gr_gid, daemon.pw_gid):
                raise ValueError(
                    f'{kind} "{path}" is group-writable and group {st.st_gid} '
                    "is not one of [wheel, admin, daemon]"
                )
            if is_dir and mode & 0o001 == 0 and (mode & 0o010 == 0 or st.st_gid != daemon.pw_gid):
                raise ValueError(
                    f'{kind} "{path}" is not executable by the "{daemon.pw_name}" '
                    f"(gid: {daemon.pw_gid}) group"
                )
        elif group_writable and st.st_gid not in (root.pw_gid, admin.gr_gid):
            raise ValueError(
                f'{kind} "{path}" is group-writable and group {st.st_gid} is not one of [wheel, admin]'
            )
        if mode & 0o002 != 0:
            raise ValueError(f'{kind} "{path}" is world-writable')
        if path == "/":
            return
        path = _parent(path)


def validate_config(config: NetworksConfig) -> None:
    """Check that every configured path is secure and that a usable daemon is installed."""
    paths_map: dict[str, str] = {}
    not_found: set[str] = set()
    for name, attr in PATH_FIELDS:
        path = getattr(config.paths, attr)
        paths_map[name] = path
        is_var_run = name == "varRun"
        # varRun is created securely later, but its existing parents must already be secure
        if is_var_run:
            path = find_base_directory(path)
        try:
            validate_path(path, is_var_run)
        except FileNotFoundError as exc:
            # the sudoers file need not exist, so that it can be bootstrapped
            if name == "sudoers":
                continue
            if name in _DAEMON_PATHS:
                not_found.add(name)
                continue
            raise ValueError(f"networks.yaml field `paths.{name}` error: {exc}") from exc
        except (OSError, ValueError, LookupError) as exc:
            raise ValueError(f"networks.yaml field `paths.{name}` error: {exc}") from exc

    if "socketVMNet" in not_found and "vdeVMNet" in not_found:
        raise ValueError(
            f'networks.yaml: either "{paths_map["socketVMNet"]}" (`paths.socketVMNet`) or '
            f'"{paths_map["vdeVMNet"]}" (`paths.vdeVMNet`) has to be installed'
        )
    if "socketVMNet" in not_found and "vdeVMNet" not in not_found and "vdeSwitch" in not_found:
        raise ValueError(
            f'networks.yaml: "{paths_map["vdeVMNet"]}" (`paths.vdeVMNet`) requires '
            f'"{paths_map["vdeSwitch"]}" (`paths.vdeSwitch`) to be installed'
        )