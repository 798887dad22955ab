"""Reading of DNS search domains from a resolv.conf file."""

from __future__ import annotations

import logging
import os
import sys

logger = logging.getLogger(__name__)

RESOLV_CONF = "/etc/resolv.conf"

_SEARCH_PREFIX = "search "


def resolve_search_domain(file: str | os.PathLike[str]) -> list[str]:
    """Return the domains of the first ``search`` line in ``file``, or an empty list."""
    try:
        with open(file, "rb") as handle:
            for raw in handle:
                line = raw.decode("utf-8", errors="replace").removesuffix("\n").removesuffix("\r")
                if line.startswith(_SEARCH_PREFIX):
                    domains = line[len(_SEARCH_PREFIX) :].split(" ")
                    logger.debug("Using search domains: %s", domains)
                    return domains
    except OSError as exc:
        logger.error("open file error: %s", exc)
    return []


def search_domains() -> list[str]:
    """Return the host's DNS search domains; none are read on Windows."""
    if sys.platform == "win32":
        return []
    return resolve_search_domain(RESOLV_CONF)