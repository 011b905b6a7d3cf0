"""
Tenant-scoped query helpers.

ALL queries for tenant data MUST use these helpers or include explicit
shop_id filtering.

Usage:
    from shopbook.tenancy.queries import get_active_service, scoped_select

    service = await get_active_service(session, ctx.shop_id, service_id)

    # Or using composable helpers:
    stmt = scoped_select(Staff, shop_id).where(Staff.is_active.is_(True))
"""

from datetime import datetime
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import (
    Appointment,
    AppointmentReview,
    AppointmentStatus,
    ReviewInvite,
    Service,
    Staff,
    StaffService,
    TimeOffBlock,
    WorkingHours,
)

T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], shop_id: int) -> Select:
    """
    Create a SELECT statement pre-filtered by shop_id.

    Usage:
        stmt = scoped_select(Service, ctx.shop_id).where(Service.is_active.is_(True))
    """
    return select(model).where(model.shop_id == shop_id)


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id,
    shop_id: int,
) -> Optional[T]:
    """
    Fetch an entity by ID, validating shop ownership.
    Returns None if not found or wrong shop.

    Rows already in the session are refreshed: status changes are written
    with bulk UPDATEs that bypass the identity map.
    """
    result = await session.execute(
        select(model)
        .where(
            model.id == entity_id,
            model.shop_id == shop_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Service / Staff Queries
# ────────────────────────────────────────────────────────────────

async def get_active_service(
    session: AsyncSession, shop_id: int, service_id: int
) -> Optional[Service]:
    """Get an active service by ID, scoped to shop."""
    result = await session.execute(
        scoped_select(Service, shop_id).where(
            Service.id == service_id,
            Service.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def get_active_staff(
    session: AsyncSession,
    shop_id: int,
    staff_id: int,
    for_update: bool = False,
) -> Optional[Staff]:
    """
    Get an active staff member by ID, scoped to shop.

    With for_update the row is locked until the transaction ends, which
    serializes bookings for the same staff member on PostgreSQL.
    """
    query = scoped_select(Staff, shop_id).where(
        Staff.id == staff_id,
        Staff.is_active.is_(True),
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def staff_can_perform(session: AsyncSession, staff_id: int, service_id: int) -> bool:
    result = await session.execute(
        select(StaffService.id).where(
            StaffService.staff_id == staff_id,
            StaffService.service_id == service_id,
        )
    )
    return result.first() is not None


async def list_capable_staff(
    session: AsyncSession, shop_id: int, service_id: int
) -> Sequence[Staff]:
    """Active staff who can perform the service, ordered by id."""
    result = await session.execute(
        scoped_select(Staff, shop_id)
        .join(StaffService, StaffService.staff_id == Staff.id)
        .where(
            Staff.is_active.is_(True),
            StaffService.service_id == service_id,
        )
        .order_by(Staff.id)
    )
    return result.scalars().all()


# ────────────────────────────────────────────────────────────────
# Calendar Queries
# ────────────────────────────────────────────────────────────────

async def list_working_hours(
    session: AsyncSession, staff_id: int, day_of_week: int
) -> Sequence[WorkingHours]:
    result = await session.execute(
        select(WorkingHours)
        .where(
            WorkingHours.staff_id == staff_id,
            WorkingHours.day_of_week == day_of_week,
        )
        .order_by(WorkingHours.start_time)
    )
    return result.scalars().all()


async def list_time_off_in_range(
    session: AsyncSession, staff_id: int, start: datetime, end: datetime
) -> Sequence[TimeOffBlock]:
    result = await session.execute(
        select(TimeOffBlock).where(
            TimeOffBlock.staff_id == staff_id,
            TimeOffBlock.end_at > start,
            TimeOffBlock.start_at < end,
        )
    )
    return result.scalars().all()


# ────────────────────────────────────────────────────────────────
# Appointment Queries
# ────────────────────────────────────────────────────────────────

async def get_appointment_by_id(
    session: AsyncSession,
    shop_id: int,
    appointment_id,
) -> Optional[Appointment]:
    """Get an appointment by ID, scoped to shop."""
    return await require_owned(session, Appointment, appointment_id, shop_id)


async def get_review_for_appointment(
    session: AsyncSession, appointment_id
) -> Optional[AppointmentReview]:
    result = await session.execute(
        select(AppointmentReview).where(AppointmentReview.appointment_id == appointment_id)
    )
    return result.scalar_one_or_none()


async def get_invite_by_token_hash(session: AsyncSession, token_hash: str) -> Optional[ReviewInvite]:
    """Look up a review invite by the sha256 of its raw token. Not shop-scoped: the hash is the key."""
    result = await session.execute(
        select(ReviewInvite)
        .where(ReviewInvite.token_hash == token_hash)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_blocking_appointments(
    session: AsyncSession,
    staff_id: int,
    start: datetime,
    end: datetime,
) -> Sequence[Appointment]:
    """Non-cancelled appointments for a staff member that intersect [start, end)."""
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.staff_id == staff_id,
            Appointment.start_at < end,
            Appointment.end_at > start,
            Appointment.status != AppointmentStatus.CANCELLED,
        )
        .order_by(Appointment.start_at)
    )
    return result.scalars().all()
