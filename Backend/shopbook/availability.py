"""
Availability engine: which start times can be booked for a service on a date.

The computation is read-only and may be stale by the time the customer books;
the booking coordinator re-checks everything inside its write transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.results import ErrorKind, Result
from .schedule_calendar import Interval, day_bounds, load_working_intervals, subtract_intervals
from .tenancy.context import resolve_shop_context
from .tenancy.queries import (
    get_active_service,
    get_active_staff,
    list_blocking_appointments,
    list_capable_staff,
    staff_can_perform,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AvailabilityQuery:
    shop_id: int
    service_id: int
    date: date
    staff_id: Optional[int] = None
    step_minutes: int = 15
    lead_minutes: int = 30
    buffer_minutes: int = 0

    @classmethod
    def from_settings(
        cls,
        shop_id: int,
        service_id: int,
        target_date: date,
        staff_id: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> "AvailabilityQuery":
        settings = settings or get_settings()
        return cls(
            shop_id=shop_id,
            service_id=service_id,
            date=target_date,
            staff_id=staff_id,
            step_minutes=settings.slot_step_minutes,
            lead_minutes=settings.booking_lead_minutes,
            buffer_minutes=settings.appointment_buffer_minutes,
        )


@dataclass(frozen=True)
class Slot:
    start_at: datetime
    end_at: datetime
    staff_id: int
    staff_name: str


def generate_slots(
    free_intervals: Sequence[Interval],
    duration: timedelta,
    day: Interval,
    step: timedelta,
    earliest_start: datetime,
) -> list[datetime]:
    """
    Candidate start instants inside the free intervals.

    Starts sit on the step grid counted from local midnight (day.start), the
    whole [start, start + duration) fits in one free interval, no start is
    before earliest_start and every start falls on the requested day.
    """
    starts: list[datetime] = []
    for interval in free_intervals:
        lower = max(interval.start, earliest_start, day.start)
        steps_from_midnight = -(-(lower - day.start) // step)
        cursor = day.start + steps_from_midnight * step
        while cursor < day.end and cursor + duration <= interval.end:
            starts.append(cursor)
            cursor += step
    return starts


async def busy_intervals(
    session: AsyncSession,
    staff_id: int,
    window: Interval,
    buffer: timedelta,
) -> list[Interval]:
    """Non-cancelled appointments near the window, widened by the buffer on both sides."""
    appointments = await list_blocking_appointments(
        session, staff_id, window.start - buffer, window.end + buffer
    )
    return [Interval(a.start_at, a.end_at).widen(buffer) for a in appointments]


async def get_availability(
    session: AsyncSession,
    query: AvailabilityQuery,
    now: datetime,
) -> Result[list[Slot]]:
    """
    Compute bookable slots for a service on a date.

    Without a staff filter each start time is offered once, paired with the
    lowest staff id that can take it. An empty list is a valid answer.
    """
    ctx = await resolve_shop_context(session, query.shop_id)
    if not ctx:
        return Result.failure(ErrorKind.NOT_FOUND, "Shop not found.")

    service = await get_active_service(session, ctx.shop_id, query.service_id)
    if not service:
        return Result.failure(ErrorKind.NOT_FOUND, "Service not found or no longer offered.")

    if query.staff_id is not None:
        staff = await get_active_staff(session, ctx.shop_id, query.staff_id)
        if not staff:
            return Result.failure(ErrorKind.NOT_FOUND, "Staff member not found or unavailable.")
        if not await staff_can_perform(session, staff.id, service.id):
            return Result.failure(
                ErrorKind.INVALID_INPUT, "The selected staff member does not perform this service."
            )
        candidates = [staff]
    else:
        candidates = list(await list_capable_staff(session, ctx.shop_id, service.id))

    duration = timedelta(minutes=service.duration_minutes)
    step = timedelta(minutes=query.step_minutes)
    buffer = timedelta(minutes=query.buffer_minutes)
    earliest_start = now + timedelta(minutes=query.lead_minutes)
    day = day_bounds(query.date, ctx.tz)

    if day.end <= earliest_start or not candidates:
        return Result.success([])

    slots: list[Slot] = []
    offered: set[datetime] = set()

    for staff in candidates:
        working = await load_working_intervals(session, staff.id, query.date, ctx.tz)
        if not working:
            continue
        busy = await busy_intervals(session, staff.id, day, buffer)
        free = subtract_intervals(working, busy)

        for start in generate_slots(free, duration, day, step, earliest_start):
            if start in offered:
                continue
            offered.add(start)
            slots.append(
                Slot(start_at=start, end_at=start + duration, staff_id=staff.id, staff_name=staff.name)
            )

    slots.sort(key=lambda s: (s.start_at, s.staff_id))
    logger.debug(
        f"Availability shop={ctx.shop_id} service={service.id} date={query.date} "
        f"staff_filter={query.staff_id}: {len(slots)} slot(s)"
    )
    return Result.success(slots)
