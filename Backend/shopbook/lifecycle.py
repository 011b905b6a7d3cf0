"""
Appointment lifecycle.

    pending   -> confirmed | cancelled
    confirmed -> cancelled | no_show | done

cancelled, no_show and done are terminal. Only admins, or the staff member
who owns the appointment, may move it. Reaching done issues a review invite
in the same transaction as the status change.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.request_context import CallerContext, CallerRole
from .core.results import ErrorKind, Result, persistence_failure
from .models import Appointment, AppointmentStatus
from .review_invites import issue_review_invite, review_link
from .tenancy.queries import get_appointment_by_id, get_review_for_appointment

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW, AppointmentStatus.DONE}
    ),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.DONE: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class TransitionOutcome:
    appointment_id: uuid.UUID
    status: AppointmentStatus
    # Set only when completing the appointment issued a review invite
    review_link: Optional[str] = None


async def _transition(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    target: AppointmentStatus,
    caller: CallerContext,
    now: datetime,
    price_cents: Optional[int],
    settings: Settings,
) -> Result[TransitionOutcome]:
    appointment = await get_appointment_by_id(session, shop_id, appointment_id)
    if not appointment:
        return Result.failure(ErrorKind.NOT_FOUND, "Appointment not found.")
    if not caller.can_manage(appointment.staff_id):
        logger.warning(
            f"[BOOKING] Staff {caller.staff_id} tried to change appointment {appointment_id} "
            f"owned by staff {appointment.staff_id}"
        )
        return Result.failure(ErrorKind.UNAUTHORIZED, "You can only manage your own appointments.")

    current = appointment.status
    if not can_transition(current, target):
        return Result.failure(
            ErrorKind.INVALID_TRANSITION,
            f"Cannot change an appointment from {current.value} to {target.value}.",
        )

    if price_cents is not None:
        if target != AppointmentStatus.DONE:
            return Result.failure(
                ErrorKind.INVALID_INPUT, "A final price can only be set when completing an appointment."
            )
        if price_cents < 0:
            return Result.failure(ErrorKind.INVALID_INPUT, "Price cannot be negative.")

    values: dict = {"status": target, "updated_at": now}
    if target == AppointmentStatus.CANCELLED:
        values["cancelled_by"] = caller.role.value
    if target == AppointmentStatus.DONE:
        values["completed_at"] = now
        if price_cents is not None:
            values["price_cents"] = price_cents

    # Conditional on the status we read: a concurrent transition wins and we lose cleanly.
    result = await session.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment.id,
            Appointment.shop_id == shop_id,
            Appointment.status == current,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return Result.failure(
            ErrorKind.INVALID_TRANSITION,
            "The appointment was changed by someone else. Reload and try again.",
        )

    link: Optional[str] = None
    if target == AppointmentStatus.DONE and not await get_review_for_appointment(session, appointment.id):
        signed_token = await issue_review_invite(session, appointment, now, settings)
        link = review_link(signed_token, settings)

    logger.info(
        f"[BOOKING] Appointment {appointment_id}: {current.value} -> {target.value} "
        f"by {caller.role.value}"
        + (" (review invite issued)" if link else "")
    )
    return Result.success(TransitionOutcome(appointment_id=appointment_id, status=target, review_link=link))


async def transition_appointment(
    session: AsyncSession,
    shop_id: int,
    appointment_id: uuid.UUID,
    target: AppointmentStatus,
    caller: CallerContext,
    now: Optional[datetime] = None,
    price_cents: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> Result[TransitionOutcome]:
    """
    Move an appointment along one edge of the lifecycle.

    Args:
        session: Session for this request; committed on success, rolled back otherwise
        shop_id: Shop the appointment must belong to
        appointment_id: Appointment to move
        target: Requested status
        caller: Resolved caller; customers are always refused
        now: Current instant (defaults to the wall clock)
        price_cents: Final price, accepted only when completing

    Returns:
        TransitionOutcome, or UNAUTHORIZED / NOT_FOUND / INVALID_TRANSITION /
        INVALID_INPUT / PERSISTENCE_FAILURE.
    """
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    if caller.role == CallerRole.CUSTOMER:
        return Result.failure(ErrorKind.UNAUTHORIZED, "Customers cannot change appointment status.")

    try:
        outcome = await _transition(
            session, shop_id, appointment_id, target, caller, now, price_cents, settings
        )
        if not outcome.ok:
            await session.rollback()
            return outcome
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(f"[BOOKING] Failed to move appointment {appointment_id} to {target.value}")
        return persistence_failure()

    return outcome
