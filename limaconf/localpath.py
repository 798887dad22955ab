"""Expansion of user-supplied local paths such as ``~`` and ``~/foo``."""

from __future__ import annotations

import os


def _home_dir() -> str:
    home = os.path.expanduser("~")
    if home == "~":
        raise OSError("cannot determine the home directory")
    return home


def expand(orig: str) -> str:
    """Expand ``~`` and ``~/...`` and return an absolute, cleaned path.

    Paths like ``~foo/bar`` are not supported and raise ``ValueError``.
    """
    if not orig:
        raise ValueError("empty path")
    path = orig
    if path.startswith("~"):
        if path == "~" or path.startswith("~/"):
            path = _home_dir() + path[1:]
        else:
            raise ValueError(f'unexpandable path "{orig}"')
    return os.path.abspath(path)