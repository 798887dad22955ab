"""Re-emission of JSON-formatted log lines through a ``logging.Logger``."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone

TRACE = 5

_EPSILON = timedelta(seconds=1)

# name -> (whether the original level is kept as a record attribute, logging level)
_LEVELS: dict[str, tuple[bool, int]] = {
    "panic": (True, logging.ERROR),
    "fatal": (True, logging.ERROR),
    "error": (False, logging.ERROR),
    "warn": (False, logging.WARNING),
    "warning": (False, logging.WARNING),
    "info": (False, logging.INFO),
    "debug": (False, logging.DEBUG),
    "trace": (False, TRACE),
}

_TIME_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid time {text!r}")
    date, clock, frac, tz = match.groups()
    micros = (frac[1:] + "000000")[:6] if frac else "000000"
    offset = "+00:00" if tz.upper() == "Z" else tz
    return datetime.fromisoformat(f"{date}T{clock}.{micros}{offset}")


def _is_zero(when: datetime) -> bool:
    try:
        return when == datetime(1, 1, 1, tzinfo=timezone.utc)
    except OverflowError:
        return False


def _string_field(entry: dict, key: str) -> str:
    value = entry.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} is not a string")
    return value


def _decode(text: str) -> tuple[str, str, datetime | None]:
    entry = json.loads(text)
    if not isinstance(entry, dict):
        raise ValueError("not a JSON object")
    level = _string_field(entry, "level")
    msg = _string_field(entry, "msg")
    when = None
    if entry.get("time") is not None:
        when = _parse_time(_string_field(entry, "time"))
        if _is_zero(when):
            when = None
    return level, msg, when


def propagate_json(
    logger: logging.Logger,
    json_line: bytes | str,
    header: str,
    begin: datetime | None = None,
) -> None:
    """Log a JSON log line through ``logger``, prefixing the message with ``header``.

    Lines older than ``begin`` (with one second of tolerance) are dropped.
    Panic and fatal entries are logged as errors. Lines that cannot be decoded
    are logged verbatim at info level on the root logger.
    """
    text = json_line.decode("utf-8", errors="replace") if isinstance(json_line, bytes) else json_line
    if not text.strip():
        return

    try:
        level_name, msg, when = _decode(text)
    except (ValueError, OverflowError):
        logging.getLogger().info(header + text)
        return

    if when is not None and begin is not None:
        start = begin if begin.tzinfo is not None else begin.astimezone()
        if start > when + _EPSILON:
            return

    known = _LEVELS.get(level_name.lower())
    if known is None:
        logging.getLogger().info(header + text)
        return
    keep_level, level = known
    if keep_level:
        logger.log(level, header + msg, extra={"level": level_name.lower()})
    else:
        logger.log(level, header + msg)