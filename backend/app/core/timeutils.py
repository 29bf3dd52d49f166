"""
Key-local calendar helpers.

Every "day" and "month" in the quota system is the key's own local one,
derived from its IANA timezone. Arithmetic across a boundary is done in
UTC so DST transitions never skew a retry-after.
"""

from __future__ import annotations

import datetime
import logging
import math
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


@lru_cache(maxsize=512)
def resolve_zone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for `name`, falling back to UTC for unknown zones."""
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r — falling back to UTC", name)
    return ZoneInfo("UTC")


def local_today(now: datetime.datetime, zone: ZoneInfo) -> datetime.date:
    return now.astimezone(zone).date()


def month_start(day: datetime.date) -> datetime.date:
    return day.replace(day=1)


def _seconds_until(now: datetime.datetime, local_target: datetime.datetime) -> int:
    delta = local_target.astimezone(UTC) - now.astimezone(UTC)
    return max(math.ceil(delta.total_seconds()), 1)


def seconds_until_local_midnight(now: datetime.datetime, zone: ZoneInfo) -> int:
    """Seconds from `now` to the next 00:00 in `zone`."""
    tomorrow = local_today(now, zone) + datetime.timedelta(days=1)
    midnight = datetime.datetime.combine(tomorrow, datetime.time.min, tzinfo=zone)
    return _seconds_until(now, midnight)


def seconds_until_next_local_month(now: datetime.datetime, zone: ZoneInfo) -> int:
    """Seconds from `now` to 00:00 on the 1st of the next month in `zone`."""
    today = local_today(now, zone)
    if today.month == 12:
        first = datetime.date(today.year + 1, 1, 1)
    else:
        first = datetime.date(today.year, today.month + 1, 1)
    target = datetime.datetime.combine(first, datetime.time.min, tzinfo=zone)
    return _seconds_until(now, target)
