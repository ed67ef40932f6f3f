"""Time utilities for quarter-hour price interval handling.

KEY PRINCIPLE: a day is split into fixed-length slots (default 15 minutes,
96 per day). Every price interval is identified by its start timestamp and
carries its slot number within the local day (``interval_of_day``), which is
what historical demand samples are keyed on.

All functions are pure and never raise for malformed input: a missing or
invalid timestamp yields ``-1``, ``None`` or an empty list so that callers can
degrade to a safe default.
"""

import dataclasses
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

# Constants - NOT configurable
TIMEZONE = ZoneInfo("Europe/Berlin")
INTERVAL_MINUTES = 15
INTERVALS_PER_DAY = 96


@dataclass
class IntervalBlock:
    """A run of consecutive intervals, e.g. one charging window."""

    start: datetime
    end: datetime
    intervals: list[Any]

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


def parse_timestamp(value: Any) -> datetime | None:
    """Convert a datetime or ISO-8601 string to a datetime.

    Returns:
        The parsed datetime, or None if the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            # Python < 3.11 does not understand a trailing "Z"
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparsable timestamp: {value!r}")
            return None
    return None


def ensure_aware(dt: datetime) -> datetime:
    """Attach the price timezone to naive timestamps; aware ones are unchanged."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=TIMEZONE)
    return dt


def _has_start(interval: Any) -> bool:
    return isinstance(getattr(interval, "starts_at", None), datetime)


def to_local(dt: datetime) -> datetime:
    """Express an aware timestamp in the price timezone; naive ones are kept as local."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(TIMEZONE)


def local_date(dt: datetime) -> date:
    """Calendar date of a timestamp in the price timezone."""
    return to_local(dt).date()


def minutes_since_midnight(dt: datetime) -> int:
    """Wall-clock minutes since local midnight."""
    local = to_local(dt)
    return local.hour * 60 + local.minute


def get_interval_of_day(dt: Any, interval_minutes: int = INTERVAL_MINUTES) -> int:
    """Get interval of day (0-95 for 15-minute intervals).

    Example:
        >>> get_interval_of_day(datetime(2025, 1, 15, 14, 30, tzinfo=TIMEZONE))
        58  # (14 * 4) + 2

    Returns:
        Slot index within the local day, or -1 for invalid input
    """
    if not isinstance(dt, datetime) or interval_minutes <= 0:
        return -1
    return minutes_since_midnight(dt) // interval_minutes


def intervals_per_day(interval_minutes: int = INTERVAL_MINUTES) -> int:
    """Number of intervals in 24 hours."""
    return (24 * 60) // interval_minutes


def interval_minutes_to_hours(interval_minutes: int) -> float:
    return interval_minutes / 60


def find_current_interval_index(
    now: Any, intervals: Any, interval_minutes: int = INTERVAL_MINUTES
) -> int:
    """Find the position of the interval whose [start, start + length) contains now.

    Naive timestamps on either side are read as local time.

    Returns:
        Index into ``intervals``, or -1 if no interval matches
    """
    if not isinstance(now, datetime) or not isinstance(intervals, Sequence):
        return -1

    now = ensure_aware(now)
    length = timedelta(minutes=interval_minutes)
    for i, interval in enumerate(intervals):
        if not _has_start(interval):
            continue
        start = ensure_aware(interval.starts_at)
        if start <= now < start + length:
            return i

    return -1


def filter_future_intervals(intervals: Any, now: datetime) -> list:
    """Keep only intervals starting at or after now."""
    if not isinstance(intervals, Iterable) or isinstance(intervals, (str, bytes)):
        return []
    if not isinstance(now, datetime):
        return []

    now = ensure_aware(now)
    return [p for p in intervals if _has_start(p) and ensure_aware(p.starts_at) >= now]


def filter_current_and_future_intervals(
    intervals: Any, now: datetime, interval_minutes: int = INTERVAL_MINUTES
) -> list:
    """Keep the interval in progress plus all future ones, sorted by start.

    The interval in progress is included by going back one interval length.
    Entries without a ``starts_at`` datetime are dropped.
    """
    if not isinstance(intervals, Iterable) or isinstance(intervals, (str, bytes)):
        return []
    if not isinstance(now, datetime):
        return []

    buffer_time = ensure_aware(now) - timedelta(minutes=interval_minutes)
    return sorted(
        (
            p
            for p in intervals
            if _has_start(p) and ensure_aware(p.starts_at) >= buffer_time
        ),
        key=lambda p: ensure_aware(p.starts_at),
    )


def enrich_price_data(intervals: Any, interval_minutes: int = INTERVAL_MINUTES) -> list:
    """Return copies of the intervals with ``index`` and ``interval_of_day`` set.

    Only dataclass intervals with a start timestamp are kept.
    """
    if not isinstance(intervals, Iterable) or isinstance(intervals, (str, bytes)):
        return []

    usable = [
        p for p in intervals if dataclasses.is_dataclass(p) and _has_start(p)
    ]
    return [
        dataclasses.replace(
            p,
            index=index,
            interval_of_day=get_interval_of_day(p.starts_at, interval_minutes),
        )
        for index, p in enumerate(usable)
    ]


def get_price_at_time(
    dt: datetime, intervals: Any, interval_minutes: int = INTERVAL_MINUTES
) -> float | None:
    """Price of the interval containing dt, or None if not covered."""
    index = find_current_interval_index(dt, intervals, interval_minutes)
    if index == -1:
        return None
    return intervals[index].price


def group_consecutive_intervals(
    intervals: Sequence, interval_minutes: int = INTERVAL_MINUTES
) -> list[IntervalBlock]:
    """Group consecutive intervals into time blocks.

    Intervals whose starts are at most 1.5 interval lengths apart are
    considered consecutive.
    """
    if not intervals:
        return []

    length = timedelta(minutes=interval_minutes)
    max_gap = length * 1.5
    blocks: list[IntervalBlock] = []

    current = [intervals[0]]
    for prev, interval in zip(intervals, intervals[1:]):
        if interval.starts_at - prev.starts_at <= max_gap:
            current.append(interval)
        else:
            blocks.append(
                IntervalBlock(current[0].starts_at, prev.starts_at + length, current)
            )
            current = [interval]

    blocks.append(
        IntervalBlock(current[0].starts_at, current[-1].starts_at + length, current)
    )
    return blocks


def get_next_interval_start(intervals: Any, now: datetime) -> datetime | None:
    """Start time of the earliest interval strictly after now."""
    now = ensure_aware(now)
    future = [
        ensure_aware(p.starts_at)
        for p in intervals or []
        if _has_start(p) and ensure_aware(p.starts_at) > now
    ]
    return min(future) if future else None


def is_same_day(first: Any, second: Any) -> bool:
    if not isinstance(first, datetime) or not isinstance(second, datetime):
        return False
    return local_date(first) == local_date(second)


def format_time(dt: Any) -> str:
    """HH:MM in the price timezone."""
    if not isinstance(dt, datetime):
        return "Invalid Date"
    return to_local(dt).strftime("%H:%M")
