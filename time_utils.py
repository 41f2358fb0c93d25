from __future__ import annotations

import logging
from datetime import datetime, time, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Zone named ``name``, or the system zone if unset or unknown."""
    if not name:
        return local_timezone()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:  # pragma: no cover - environment-dependent
        logger.warning("Failed to load timezone %s via zoneinfo (%s)", name, exc)
    local_tz = local_timezone()
    logger.warning("Using system local timezone instead: %s", getattr(local_tz, "key", local_tz))
    return local_tz


def parse_clock_time(text: str) -> time:
    """Parse ``HH:MM``."""
    hours, sep, minutes = text.strip().partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Invalid time of day: {text}")
    return time(int(hours), int(minutes))


