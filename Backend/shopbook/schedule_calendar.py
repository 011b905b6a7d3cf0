"""
Schedule calendar: when is a staff member working on a given date.

The pure functions here turn a weekly working-hours template plus time-off
blocks into concrete UTC intervals for one calendar date in the shop's clock.
They never touch the database; load_working_intervals is the thin async
wrapper that fetches the rows for one staff member.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, NamedTuple, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from .tenancy.queries import list_time_off_in_range, list_working_hours


class Interval(NamedTuple):
    """Half-open [start, end) span of time."""
    start: datetime
    end: datetime

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def widen(self, delta: timedelta) -> "Interval":
        return Interval(self.start - delta, self.end + delta)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    merged: list[Interval] = []
    for interval in sorted(i for i in intervals if i.start < i.end):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def subtract_intervals(base: Iterable[Interval], blocked: Iterable[Interval]) -> list[Interval]:
    """Remove every blocked span from the base intervals, keeping what is left in order."""
    free = merge_intervals(base)
    for block in merge_intervals(blocked):
        remaining: list[Interval] = []
        for interval in free:
            if not interval.overlaps(block):
                remaining.append(interval)
                continue
            if interval.start < block.start:
                remaining.append(Interval(interval.start, block.start))
            if block.end < interval.end:
                remaining.append(Interval(block.end, interval.end))
        free = remaining
    return free


def day_bounds(target_date: date, tz: ZoneInfo) -> Interval:
    """Local midnight to the next local midnight, as UTC instants."""
    start = datetime.combine(target_date, time.min, tzinfo=tz)
    end = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return Interval(start.astimezone(timezone.utc), end.astimezone(timezone.utc))


def to_utc(target_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(target_date, local_time, tzinfo=tz).astimezone(timezone.utc)


def working_intervals(
    target_date: date,
    tz: ZoneInfo,
    working_hours: Sequence,
    time_off: Sequence = (),
) -> list[Interval]:
    """
    Working intervals for one date, net of breaks and time off.

    Args:
        target_date: Calendar date in the shop's clock
        tz: The shop's canonical timezone
        working_hours: Rows with day_of_week (0 = Monday), start_time, end_time
        time_off: Rows with start_at, end_at (aware datetimes)

    Returns:
        Ordered, disjoint UTC intervals. Empty when the staff member is off.
    """
    weekday = target_date.weekday()
    windows = [
        Interval(to_utc(target_date, row.start_time, tz), to_utc(target_date, row.end_time, tz))
        for row in working_hours
        if row.day_of_week == weekday and row.start_time < row.end_time
    ]
    if not windows:
        return []

    blocked = [Interval(block.start_at, block.end_at) for block in time_off]
    return subtract_intervals(windows, blocked)


async def load_working_intervals(
    session: AsyncSession,
    staff_id: int,
    target_date: date,
    tz: ZoneInfo,
) -> list[Interval]:
    hours = await list_working_hours(session, staff_id, target_date.weekday())
    if not hours:
        return []
    bounds = day_bounds(target_date, tz)
    time_off = await list_time_off_in_range(session, staff_id, bounds.start, bounds.end)
    return working_intervals(target_date, tz, hours, time_off)
