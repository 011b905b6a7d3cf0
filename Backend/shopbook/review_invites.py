"""
Review invites: single-use, expiring links that let a customer review a
completed appointment without signing in.

Every way a link can be unusable (bad signature, unknown hash, expired,
consumed, appointment not done) produces the same generic error so that the
response never reveals which check failed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.request_context import CallerContext, CallerRole
from .core.results import ErrorKind, Result, persistence_failure, token_failure
from .models import Appointment, AppointmentStatus, ReviewInvite, Service, Staff
from .review_tokens import create_signed_review_token, hash_token, verify_signed_review_token
from .tenancy.queries import (
    get_appointment_by_id,
    get_invite_by_token_hash,
    get_review_for_appointment,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvitePreview:
    appointment_id: uuid.UUID
    staff_id: int
    staff_name: str
    service_name: str
    appointment_start_at: datetime
    expires_at: datetime


class ResolvedInvite(NamedTuple):
    invite: ReviewInvite
    appointment: Appointment


def review_link(signed_token: str, settings: Optional[Settings] = None) -> str:
    settings = settings or get_settings()
    return f"{settings.public_app_url.rstrip('/')}/review/{signed_token}"


async def issue_review_invite(
    session: AsyncSession,
    appointment: Appointment,
    now: datetime,
    settings: Optional[Settings] = None,
) -> str:
    """
    Add a new invite for a completed appointment and return its signed token.

    Only flushes; the caller owns the transaction so the invite commits or
    rolls back together with whatever else the caller changed.
    """
    settings = settings or get_settings()
    token = create_signed_review_token(settings.review_link_secret)
    session.add(
        ReviewInvite(
            shop_id=appointment.shop_id,
            appointment_id=appointment.id,
            token_hash=token.token_hash,
            issued_at=now,
            expires_at=now + timedelta(days=settings.review_invite_ttl_days),
        )
    )
    await session.flush()
    return token.signed_token


async def _check_invite_allowed(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    caller: CallerContext,
) -> Result[Appointment]:
    appointment = await get_appointment_by_id(session, shop_id, appointment_id)
    if not appointment:
        return Result.failure(ErrorKind.NOT_FOUND, "Appointment not found.")
    if not caller.can_manage(appointment.staff_id):
        return Result.failure(ErrorKind.UNAUTHORIZED, "You can only manage your own appointments.")
    if appointment.status != AppointmentStatus.DONE:
        return Result.failure(
            ErrorKind.INVALID_INPUT, "Review links can only be issued for completed appointments."
        )
    if await get_review_for_appointment(session, appointment.id):
        return Result.failure(ErrorKind.ALREADY_REVIEWED, "This appointment has already been reviewed.")
    return Result.success(appointment)


async def issue_invite_for_appointment(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    caller: CallerContext,
    now: datetime,
    settings: Optional[Settings] = None,
) -> Result[str]:
    """
    Issue a fresh review link for a completed appointment on request.

    Earlier invites stay valid until they expire; the first review stored
    makes all of them useless.
    """
    settings = settings or get_settings()

    if caller.role == CallerRole.CUSTOMER:
        return Result.failure(ErrorKind.UNAUTHORIZED, "Only shop staff can issue review links.")

    try:
        allowed = await _check_invite_allowed(session, shop_id, appointment_id, caller)
        if not allowed.ok:
            await session.rollback()
            return allowed
        signed_token = await issue_review_invite(session, allowed.value, now, settings)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[REVIEW] Failed to issue invite for appointment {appointment_id}")
        return persistence_failure()

    logger.info(f"[REVIEW] Issued invite for appointment {appointment_id}")
    return Result.success(review_link(signed_token, settings))


async def resolve_invite(
    session: AsyncSession,
    signed_token: str,
    now: datetime,
    settings: Optional[Settings] = None,
) -> Result[ResolvedInvite]:
    """
    Verify a signed link and load its invite and appointment.

    Fails with TOKEN_ALREADY_USED when the invite was consumed and
    TOKEN_INVALID for everything else; both carry the same message. Whether
    the appointment already has a review is left to the caller.
    """
    settings = settings or get_settings()

    raw_token = verify_signed_review_token(signed_token, settings.review_link_secret)
    if raw_token is None:
        return token_failure()

    invite = await get_invite_by_token_hash(session, hash_token(raw_token))
    if not invite:
        return token_failure()
    if invite.is_consumed:
        return token_failure(ErrorKind.TOKEN_ALREADY_USED)
    if invite.is_expired(now):
        return token_failure()

    appointment = await get_appointment_by_id(session, invite.shop_id, invite.appointment_id)
    if not appointment or appointment.status != AppointmentStatus.DONE:
        return token_failure()

    return Result.success(ResolvedInvite(invite=invite, appointment=appointment))


async def get_review_invite_preview(
    session: AsyncSession,
    signed_token: str,
    now: datetime,
    settings: Optional[Settings] = None,
) -> Result[InvitePreview]:
    try:
        return await _load_invite_preview(session, signed_token, now, settings)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[REVIEW] Failed to load invite preview")
        return persistence_failure()


async def _load_invite_preview(
    session: AsyncSession,
    signed_token: str,
    now: datetime,
    settings: Optional[Settings],
) -> Result[InvitePreview]:
    resolved = await resolve_invite(session, signed_token, now, settings)
    if not resolved.ok:
        # Same answer for every failure
        return token_failure()

    invite, appointment = resolved.value
    if await get_review_for_appointment(session, appointment.id):
        return token_failure()

    result = await session.execute(
        select(Service.name, Staff.name)
        .select_from(Appointment)
        .join(Staff, Staff.id == Appointment.staff_id)
        .join(Service, Service.id == Appointment.service_id)
        .where(Appointment.id == appointment.id)
    )
    service_name, staff_name = result.one()

    return Result.success(
        InvitePreview(
            appointment_id=appointment.id,
            staff_id=appointment.staff_id,
            staff_name=staff_name,
            service_name=service_name,
            appointment_start_at=appointment.start_at,
            expires_at=invite.expires_at,
        )
    )
