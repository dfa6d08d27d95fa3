"""Business-hours gate for campaign dialing.

Config shape::

    {
        "enabled": true,
        "schedule": {
            "monday": [{"start": "09:00", "end": "17:00"}],
            "saturday": [],
        }
    }

Times are local to the campaign's timezone and both ends are inclusive.
A disabled or missing config is always open; a weekday with no slots (or
missing from the schedule) is closed.
"""

import logging
from datetime import datetime, time, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("control-plane.campaigns")

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def is_within_business_hours(
    config: dict[str, Any] | None,
    tz_name: str | None,
    now: datetime | None = None,
) -> bool:
    """Whether ``now`` falls inside one of today's slots."""
    if not config or not config.get("enabled"):
        return True

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(_zone(tz_name))

    slots = (config.get("schedule") or {}).get(WEEKDAYS[local.weekday()]) or []
    current = local.time().replace(second=0, microsecond=0)
    for slot in slots:
        try:
            start = _parse_hhmm(slot["start"])
            end = _parse_hhmm(slot["end"])
        except (KeyError, ValueError, TypeError):
            logger.warning(f"Ignoring malformed business-hours slot: {slot!r}")
            continue
        if start <= current <= end:
            return True
    return False
