"""Generation and verification of the sudoers rules that manage the network daemons."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Iterator, Sequence

from .netconfig import MODE_USER_V2, SOCKET_VMNET, VDE_SWITCH, VDE_VMNET, NetworksConfig

logger = logging.getLogger(__name__)

DAEMONS = (VDE_SWITCH, VDE_VMNET, SOCKET_VMNET)


def _installed_daemons(config: NetworksConfig) -> Iterator[str]:
    for daemon in DAEMONS:
        if config.is_daemon_installed(daemon):
            yield daemon


def _format_args(args: Sequence[str]) -> str:
    return "[" + " ".join(args) + "]"


def _run(args: Sequence[str]) -> None:
    try:
        result = subprocess.run(
            list(args),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as exc:
        raise RuntimeError(f"failed to run {_format_args(args)}: {exc}") from exc
    if result.returncode != 0:
        raise RuntimeError(
            f"failed to run {_format_args(args)}: exit status {result.returncode}"
        )


def sudoers(config: NetworksConfig) -> str:
    """Return the sudoers rules that let the configured group manage the network daemons."""
    lines = [
        f"%{config.group} ALL=(root:wheel) NOPASSWD:NOSETENV: {config.mkdir_cmd()}\n"
    ]
    # names are sorted so that an existing sudoers file can be compared with this output
    names = sorted(name for name, nw in config.networks.items() if nw.mode != MODE_USER_V2)
    for name in names:
        lines.append("\n")
        lines.append(f'# Manage "{name}" network daemons\n')
        for daemon in _installed_daemons(config):
            account = config.user(daemon)
            lines.append("\n")
            lines.append(
                f"%{config.group} ALL=({account.user}:{account.group}) NOPASSWD:NOSETENV: \\\n"
            )
            lines.append(f"    {config.start_cmd(name, daemon)}, \\\n")
            lines.append(f"    {config.stop_cmd(name, daemon)}\n")
    return "".join(lines)


def password_less_sudo(config: NetworksConfig) -> None:
    """Check that sudo runs every installed daemon's account without asking for a password."""
    # flush the cached sudo credentials first
    _run(["sudo", "-k"])
    for daemon in _installed_daemons(config):
        account = config.user(daemon)
        _run(
            [
                "sudo",
                "--user",
                account.user,
                "--group",
                account.group,
                "--non-interactive",
                "true",
            ]
        )


def verify_sudo_access(config: NetworksConfig, sudoers_file: str | os.PathLike[str]) -> None:
    """Check that the daemons can be managed through sudo; raise ``RuntimeError`` if not."""
    path = os.fspath(sudoers_file)
    if not path:
        try:
            password_less_sudo(config)
        except RuntimeError as exc:
            raise RuntimeError(f"passwordLessSudo error: {exc}") from exc
        logger.debug("sudo doesn't seem to require a password")
        return

    hint = (
        f"run `{sys.argv[0]} sudoers >etc_sudoers.d_lima && "
        f'sudo install -o root etc_sudoers.d_lima "{path}"`)'
    )
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            content = handle.read()
    except OSError as exc:
        # A missing sudoers file is fine as long as sudo needs no password.
        if isinstance(exc, FileNotFoundError):
            try:
                password_less_sudo(config)
            except RuntimeError as sudo_error:
                logger.debug('"%s" does not exist; passwordLessSudo error: %s', path, sudo_error)
            else:
                logger.debug('"%s" does not exist, but sudo doesn\'t seem to require a password', path)
                return
        raise RuntimeError(f'can\'t read "{path}": {exc} (Hint: {hint})') from exc

    if content != sudoers(config):
        raise RuntimeError(
            f'sudoers file "{path}" is out of sync and must be regenerated (Hint: {hint})'
        )