"""Datetime utilities for consistent day-boundary handling.

Timestamps are stored as naive UTC. "Today" is a calendar day in the
dispatch timezone (DISPATCH_TIMEZONE, or the host's local zone when unset),
converted back to naive UTC bounds for queries.
"""
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """
    Get current UTC time as a naive datetime.

    Matches what the model defaults (`datetime.utcnow`) write, so values
    compare cleanly against stored columns on every backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_zone(tz_name: Optional[str] = None) -> tzinfo:
    if tz_name:
        return ZoneInfo(tz_name)
    return datetime.now().astimezone().tzinfo


def local_today(tz_name: Optional[str] = None, *, now: Optional[datetime] = None) -> date:
    """Calendar date in the dispatch timezone."""
    now = now or utcnow()
    return now.replace(tzinfo=timezone.utc).astimezone(local_zone(tz_name)).date()


def day_bounds_utc(day: date, tz_name: Optional[str] = None) -> Tuple[datetime, datetime]:
    """
    Naive UTC [start, end) covering one local calendar day.

    Args:
        day: Local calendar date
        tz_name: IANA zone name; empty means host local time

    Returns:
        Tuple of (start, end) naive UTC datetimes
    """
    zone = local_zone(tz_name)
    start_local = datetime.combine(day, time.min, tzinfo=zone)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return (
        start_local.astimezone(timezone.utc).replace(tzinfo=None),
        end_local.astimezone(timezone.utc).replace(tzinfo=None),
    )


def today_bounds_utc(tz_name: Optional[str] = None) -> Tuple[datetime, datetime]:
    return day_bounds_utc(local_today(tz_name), tz_name)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a naive UTC timestamp for API responses."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def to_naive_utc(value: datetime) -> datetime:
    """Normalize a caller-supplied bound to the naive UTC the columns store."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
