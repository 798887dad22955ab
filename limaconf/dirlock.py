"""Exclusive advisory locks on directories."""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from collections.abc import Callable, Iterator
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _flock(fd: int, flags: int) -> None:
    import fcntl

    while True:
        try:
            fcntl.flock(fd, flags)
            return
        except InterruptedError:
            continue


@contextlib.contextmanager
def _unix_lock(directory: str) -> Iterator[None]:
    import fcntl

    fd = os.open(directory, os.O_RDONLY)
    try:
        try:
            _flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise OSError(exc.errno, f'failed to lock "{directory}": {exc.strerror}') from exc
        try:
            yield
        finally:
            try:
                _flock(fd, fcntl.LOCK_UN)
            except OSError:
                logger.exception('failed to unlock "%s"', directory)
    finally:
        os.close(fd)


@contextlib.contextmanager
def _windows_lock(directory: str) -> Iterator[None]:
    import msvcrt

    fd = os.open(directory + ".lock", os.O_CREAT | os.O_RDWR, 0o644)
    try:
        try:
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        except OSError as exc:
            raise OSError(exc.errno, f'failed to lock "{directory}": {exc.strerror}') from exc
        try:
            yield
        finally:
            try:
                os.lseek(fd, 0, os.SEEK_SET)
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            except OSError:
                logger.exception('failed to unlock "%s"', directory)
    finally:
        os.close(fd)


@contextlib.contextmanager
def dir_lock(directory: str | os.PathLike[str]) -> Iterator[None]:
    """Hold an exclusive lock on ``directory`` for the duration of the block."""
    path = os.fspath(directory)
    lock = _windows_lock if sys.platform == "win32" else _unix_lock
    with lock(path):
        yield


def with_dir_lock(directory: str | os.PathLike[str], fn: Callable[[], T]) -> T:
    """Call ``fn`` while holding the lock on ``directory`` and return its result."""
    with dir_lock(directory):
        return fn()