"""
Review Access Resolver

Two ways in, one write:

    Token path          submit_review_with_token()  anyone holding a valid invite
    Self-service path   submit_own_review()         signed-in customer, own appointment

Both end in a single AppointmentReview insert. The unique constraint on
appointment_reviews.appointment_id decides concurrent double submissions;
the loser gets ALREADY_REVIEWED. On the token path the invite is consumed by
a conditional UPDATE in the same transaction, so a link is never spent
without a review being stored, nor redeemed twice.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings
from .core.request_context import CallerContext, CallerRole
from .core.results import (
    ErrorKind,
    Result,
    invalid_input,
    persistence_failure,
    token_failure,
)
from .models import (
    Appointment,
    AppointmentReview,
    AppointmentStatus,
    Customer,
    ReviewInvite,
    ReviewSource,
    Service,
    Staff,
)
from .review_invites import resolve_invite
from .review_tokens import hash_opaque_value
from .tenancy.queries import get_review_for_appointment

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 1000
ACCOUNT_APPOINTMENTS_LIMIT = 50


# ────────────────────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────────────────────

class ReviewDraft(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

    @field_validator("comment")
    @classmethod
    def validate_comment(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        if len(v) > MAX_COMMENT_LENGTH:
            raise ValueError(f"Comment must be at most {MAX_COMMENT_LENGTH} characters")
        return v


@dataclass(frozen=True)
class SubmittedReview:
    review_id: uuid.UUID
    appointment_id: uuid.UUID
    staff_id: int
    rating: int
    comment: Optional[str]
    submitted_at: datetime
    status: str


@dataclass(frozen=True)
class AccountAppointment:
    id: uuid.UUID
    customer_id: int
    staff_id: int
    start_at: datetime
    status: AppointmentStatus
    service_name: str
    staff_name: str
    has_review: bool
    review_rating: Optional[int]


@dataclass(frozen=True)
class ExistingReview:
    id: uuid.UUID
    rating: int
    comment: Optional[str]
    submitted_at: datetime


@dataclass(frozen=True)
class ReviewAccess:
    appointment: AccountAppointment
    existing_review: Optional[ExistingReview]
    can_review: bool


def parse_review_draft(payload: dict[str, Any]) -> Result[ReviewDraft]:
    try:
        return Result.success(ReviewDraft.model_validate(payload))
    except ValidationError as e:
        return invalid_input(e, "Invalid review data.")


# ────────────────────────────────────────────────────────────────
# Writes
# ────────────────────────────────────────────────────────────────

async def _insert_review(
    session: AsyncSession,
    appointment: Appointment,
    draft: ReviewDraft,
    source: ReviewSource,
    now: datetime,
    ip_hash: Optional[str] = None,
    user_agent_hash: Optional[str] = None,
) -> AppointmentReview:
    review = AppointmentReview(
        shop_id=appointment.shop_id,
        appointment_id=appointment.id,
        staff_id=appointment.staff_id,
        customer_id=appointment.customer_id,
        rating=draft.rating,
        comment=draft.comment,
        status="published",
        is_verified=True,
        source=source,
        ip_hash=ip_hash,
        user_agent_hash=user_agent_hash,
        submitted_at=now,
        published_at=now,
    )
    session.add(review)
    await session.flush()
    return review


def _submitted(review: AppointmentReview) -> SubmittedReview:
    return SubmittedReview(
        review_id=review.id,
        appointment_id=review.appointment_id,
        staff_id=review.staff_id,
        rating=review.rating,
        comment=review.comment,
        submitted_at=review.submitted_at,
        status=review.status,
    )


def _already_reviewed() -> Result:
    return Result.failure(ErrorKind.ALREADY_REVIEWED, "This appointment has already been reviewed.")


async def submit_review_with_token(
    session: AsyncSession,
    signed_token: str,
    draft: ReviewDraft,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Result[SubmittedReview]:
    """
    Store a review using a single-use invite link.

    Returns:
        SubmittedReview, or TOKEN_INVALID / TOKEN_ALREADY_USED (generic
        message), ALREADY_REVIEWED, PERSISTENCE_FAILURE. On any failure the
        invite stays exactly as it was.
    """
    now = now or datetime.now(timezone.utc)

    try:
        resolved = await resolve_invite(session, signed_token, now, settings)
        if not resolved.ok:
            await session.rollback()
            return resolved
        invite, appointment = resolved.value

        if await get_review_for_appointment(session, appointment.id):
            await session.rollback()
            return _already_reviewed()

        consumed = await session.execute(
            update(ReviewInvite)
            .where(ReviewInvite.id == invite.id, ReviewInvite.consumed_at.is_(None))
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            await session.rollback()
            logger.info(f"[REVIEW] Invite for appointment {appointment.id} was redeemed concurrently")
            return token_failure(ErrorKind.TOKEN_ALREADY_USED)

        review = await _insert_review(
            session,
            appointment,
            draft,
            ReviewSource.INVITE,
            now,
            ip_hash=hash_opaque_value(ip_address),
            user_agent_hash=hash_opaque_value(user_agent),
        )
        submitted = _submitted(review)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return _already_reviewed()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[REVIEW] Failed to store review from invite")
        return persistence_failure()

    logger.info(f"[REVIEW] Stored invite review for appointment {submitted.appointment_id}")
    return Result.success(submitted)


async def _find_customer_appointment(
    session: AsyncSession, shop_id: int, appointment_id: uuid.UUID, email: str
) -> Optional[Appointment]:
    result = await session.execute(
        select(Appointment)
        .join(Customer, Customer.id == Appointment.customer_id)
        .where(
            Appointment.shop_id == shop_id,
            Appointment.id == appointment_id,
            func.lower(Customer.email) == email,
        )
    )
    return result.scalar_one_or_none()


async def submit_own_review(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    draft: ReviewDraft,
    caller: CallerContext,
    now: Optional[datetime] = None,
) -> Result[SubmittedReview]:
    """Store a review for a signed-in customer's own completed appointment."""
    now = now or datetime.now(timezone.utc)

    email = caller.normalized_email
    if caller.role != CallerRole.CUSTOMER or not email:
        return Result.failure(ErrorKind.UNAUTHORIZED, "Sign in with your email to review your appointments.")

    try:
        appointment = await _find_customer_appointment(session, shop_id, appointment_id, email)
        if not appointment:
            await session.rollback()
            return Result.failure(ErrorKind.NOT_FOUND, "Appointment not found.")
        if appointment.status != AppointmentStatus.DONE:
            await session.rollback()
            return Result.failure(ErrorKind.INVALID_INPUT, "Only completed appointments can be reviewed.")
        if await get_review_for_appointment(session, appointment.id):
            await session.rollback()
            return _already_reviewed()

        review = await _insert_review(session, appointment, draft, ReviewSource.ACCOUNT, now)
        submitted = _submitted(review)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return _already_reviewed()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[REVIEW] Failed to store account review for appointment {appointment_id}")
        return persistence_failure()

    logger.info(f"[REVIEW] Stored account review for appointment {appointment_id}")
    return Result.success(submitted)


# ────────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────────

def _account_appointments_query(shop_id: int, email: str):
    return (
        select(Appointment, Service.name, Staff.name)
        .join(Customer, Customer.id == Appointment.customer_id)
        .join(Service, Service.id == Appointment.service_id)
        .join(Staff, Staff.id == Appointment.staff_id)
        .where(
            Appointment.shop_id == shop_id,
            func.lower(Customer.email) == email,
        )
    )


async def _reviews_by_appointment(
    session: AsyncSession, appointment_ids: Sequence[uuid.UUID]
) -> dict[uuid.UUID, AppointmentReview]:
    if not appointment_ids:
        return {}
    result = await session.execute(
        select(AppointmentReview).where(AppointmentReview.appointment_id.in_(appointment_ids))
    )
    return {review.appointment_id: review for review in result.scalars().all()}


def _account_item(
    appointment: Appointment,
    service_name: str,
    staff_name: str,
    review: Optional[AppointmentReview],
) -> AccountAppointment:
    return AccountAppointment(
        id=appointment.id,
        customer_id=appointment.customer_id,
        staff_id=appointment.staff_id,
        start_at=appointment.start_at,
        status=appointment.status,
        service_name=service_name,
        staff_name=staff_name,
        has_review=review is not None,
        review_rating=review.rating if review else None,
    )


async def list_account_appointments(
    session: AsyncSession,
    shop_id: int,
    email: str,
    limit: int = ACCOUNT_APPOINTMENTS_LIMIT,
) -> Result[list[AccountAppointment]]:
    """A customer's appointments, matched by email at query time, newest first."""
    email = email.strip().lower()
    try:
        result = await session.execute(
            _account_appointments_query(shop_id, email)
            .order_by(Appointment.start_at.desc())
            .limit(limit)
        )
        rows = result.all()
        reviews = await _reviews_by_appointment(session, [row[0].id for row in rows])
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[REVIEW] Failed to load account appointments for shop={shop_id}")
        return persistence_failure()

    return Result.success(
        [
            _account_item(appointment, service_name, staff_name, reviews.get(appointment.id))
            for appointment, service_name, staff_name in rows
        ]
    )


async def get_review_access(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    email: str,
) -> Result[ReviewAccess]:
    """
    Whether a customer may review one of their appointments.

    can_review is true only for a completed appointment without a review.
    Appointments that belong to someone else are reported as NOT_FOUND.
    """
    try:
        return await _load_review_access(session, shop_id, appointment_id, email)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[REVIEW] Failed to load review access for appointment {appointment_id}")
        return persistence_failure()


async def _load_review_access(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    email: str,
) -> Result[ReviewAccess]:
    email = email.strip().lower()
    result = await session.execute(
        _account_appointments_query(shop_id, email).where(Appointment.id == appointment_id)
    )
    row = result.first()
    if not row:
        return Result.failure(ErrorKind.NOT_FOUND, "Appointment not found.")

    appointment, service_name, staff_name = row
    review = await get_review_for_appointment(session, appointment.id)
    existing = (
        ExistingReview(
            id=review.id,
            rating=review.rating,
            comment=review.comment,
            submitted_at=review.submitted_at,
        )
        if review
        else None
    )
    return Result.success(
        ReviewAccess(
            appointment=_account_item(appointment, service_name, staff_name, review),
            existing_review=existing,
            can_review=appointment.status == AppointmentStatus.DONE and review is None,
        )
    )
