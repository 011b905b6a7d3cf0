"""
Booking coordinator: turn a chosen slot into a durable appointment.

The availability read that produced the slot holds nothing, so everything is
re-validated here. The overlap check and both inserts run in one transaction:

1. the staff row is locked (SELECT ... FOR UPDATE on PostgreSQL, BEGIN
   IMMEDIATE on SQLite) so concurrent bookings for one staff member queue up;
2. busy intervals are re-derived and any intersection is a Conflict;
3. customer and appointment are inserted and committed together.

The unique index on (staff_id, start_at) and, on PostgreSQL, the exclusion
constraint on the whole interval back this up: a racing writer that slips
past the check gets an IntegrityError, reported as Conflict.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import busy_intervals
from .core.config import Settings, get_settings
from .core.results import ErrorKind, Result, invalid_input, persistence_failure
from .customers import create_customer, normalize_email, normalize_phone
from .models import Appointment, AppointmentStatus
from .schedule_calendar import Interval, load_working_intervals
from .tenancy.context import resolve_shop_context
from .tenancy.queries import get_active_service, get_active_staff, staff_can_perform

logger = logging.getLogger(__name__)


class BookingRequest(BaseModel):
    """
    Request to book a slot.

    staff_id is optional at the schema level so that a slot without an
    assigned staff member reaches the coordinator and is rejected there with
    a specific message.
    """
    shop_id: int
    service_id: int
    staff_id: Optional[int] = None
    start_at: datetime
    customer_name: str = Field(..., max_length=120)
    customer_phone: str
    customer_email: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("start_at")
    @classmethod
    def validate_start_at(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            raise ValueError("start_at must include a UTC offset")
        return v.astimezone(timezone.utc)

    @field_validator("customer_name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Customer name is required")
        return v

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return normalize_phone(v)

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        return normalize_email(v)

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


@dataclass(frozen=True)
class BookingConfirmation:
    appointment_id: uuid.UUID
    start_at: datetime


def parse_booking_request(payload: dict[str, Any]) -> Result[BookingRequest]:
    """Validate a raw payload, reporting problems as INVALID_INPUT."""
    try:
        return Result.success(BookingRequest.model_validate(payload))
    except ValidationError as e:
        return invalid_input(e, "Invalid booking data.")


async def _insert_appointment(session: AsyncSession, appointment: Appointment) -> Appointment:
    session.add(appointment)
    await session.flush()
    return appointment


def _fallback_email(caller_email: Optional[str]) -> Optional[str]:
    """Signed-in caller's email, or None when the header value is not a usable address."""
    try:
        return normalize_email(caller_email)
    except ValueError:
        logger.warning("[BOOKING] Ignoring malformed caller email")
        return None


async def _book(
    session: AsyncSession,
    request: BookingRequest,
    now: datetime,
    caller_email: Optional[str],
    settings: Settings,
) -> Result[BookingConfirmation]:
    if request.staff_id is None:
        return Result.failure(
            ErrorKind.INVALID_INPUT, "Select a time slot with an assigned staff member."
        )

    start_at = request.start_at
    if start_at < now + timedelta(minutes=settings.booking_lead_minutes):
        return Result.failure(
            ErrorKind.INVALID_INPUT,
            f"Appointments must start at least {settings.booking_lead_minutes} minutes from now.",
        )

    ctx = await resolve_shop_context(session, request.shop_id)
    if not ctx:
        return Result.failure(ErrorKind.NOT_FOUND, "Shop not found.")

    service = await get_active_service(session, ctx.shop_id, request.service_id)
    if not service:
        return Result.failure(ErrorKind.INVALID_INPUT, "The selected service is not available.")

    # Lock before reading busy time so a concurrent booking waits for us.
    staff = await get_active_staff(session, ctx.shop_id, request.staff_id, for_update=True)
    if not staff:
        return Result.failure(ErrorKind.INVALID_INPUT, "The selected staff member is not available.")
    if not await staff_can_perform(session, staff.id, service.id):
        return Result.failure(
            ErrorKind.INVALID_INPUT, "The selected staff member does not perform this service."
        )

    requested = Interval(start_at, start_at + timedelta(minutes=service.duration_minutes))
    local_date = start_at.astimezone(ctx.tz).date()
    working = await load_working_intervals(session, staff.id, local_date, ctx.tz)
    if not any(window.contains(requested) for window in working):
        return Result.failure(
            ErrorKind.INVALID_INPUT, "The selected time is outside the staff member's working hours."
        )

    buffer = timedelta(minutes=settings.appointment_buffer_minutes)
    busy = await busy_intervals(session, staff.id, requested, buffer)
    if any(requested.overlaps(interval) for interval in busy):
        logger.info(f"[BOOKING] Conflict for staff={staff.id} at {start_at.isoformat()}")
        return Result.failure(
            ErrorKind.CONFLICT,
            "This time slot is no longer available. Please choose a different time.",
        )

    customer = await create_customer(
        session,
        shop_id=ctx.shop_id,
        name=request.customer_name,
        phone=request.customer_phone,
        email=request.customer_email or _fallback_email(caller_email),
    )
    appointment = await _insert_appointment(
        session,
        Appointment(
            shop_id=ctx.shop_id,
            staff_id=staff.id,
            customer_id=customer.id,
            service_id=service.id,
            start_at=requested.start,
            end_at=requested.end,
            price_cents=service.price_cents,
            status=AppointmentStatus.PENDING,
            notes=request.notes,
        ),
    )
    return Result.success(BookingConfirmation(appointment_id=appointment.id, start_at=appointment.start_at))


async def book_appointment(
    session: AsyncSession,
    request: BookingRequest,
    now: Optional[datetime] = None,
    caller_email: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Result[BookingConfirmation]:
    """
    Book a slot atomically.

    Args:
        session: Session for this request; committed on success, rolled back otherwise
        request: Validated booking request
        now: Current instant (defaults to the wall clock)
        caller_email: Verified email of a signed-in visitor, used when the
            form leaves customer_email empty
        settings: Scheduling policy (defaults to the process settings)

    Returns:
        BookingConfirmation, or INVALID_INPUT / NOT_FOUND / CONFLICT /
        PERSISTENCE_FAILURE. Nothing is written unless the result is ok.
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    try:
        outcome = await _book(session, request, now, caller_email, settings)
        if not outcome.ok:
            await session.rollback()
            return outcome
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info(
            f"[BOOKING] Storage rejected overlapping appointment for staff={request.staff_id} "
            f"at {request.start_at.isoformat()}"
        )
        return Result.failure(
            ErrorKind.CONFLICT,
            "This time slot is no longer available. Please choose a different time.",
        )
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[BOOKING] Failed to persist booking for staff={request.staff_id}")
        return persistence_failure()

    logger.info(
        f"[BOOKING] Created appointment {outcome.value.appointment_id} "
        f"staff={request.staff_id} start={outcome.value.start_at.isoformat()}"
    )
    return outcome
