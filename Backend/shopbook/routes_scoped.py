"""
Caller-scoped routes.

Every route here needs a caller resolved by the gateway (X-Caller-Role,
X-Caller-Id, X-Caller-Email). The caller is passed into the core operation,
which decides what that caller may do.

Staff / admin:
    POST /appointments/{appointment_id}/status        -> move along the lifecycle
    POST /appointments/{appointment_id}/review-invite -> issue a fresh review link

Customer account:
    GET  /account/appointments                        -> my appointments, newest first
    GET  /account/appointments/{appointment_id}/review -> can I review this one?
    POST /account/reviews                             -> review my own appointment
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import CallerContext, CallerRole, get_caller_context
from .core.responses import service_error_response
from .core.results import ErrorKind, ServiceError
from .lifecycle import transition_appointment
from .models import AppointmentStatus
from .public_booking import ErrorResponse, ReviewSubmitResponse
from .review_invites import issue_invite_for_appointment
from .reviews import (
    AccountAppointment,
    get_review_access,
    list_account_appointments,
    parse_review_draft,
    submit_own_review,
)

router = APIRouter(tags=["scoped-api"])


# ────────────────────────────────────────────────────────────────
# Request / Response Models
# ────────────────────────────────────────────────────────────────

class StatusChangeRequest(BaseModel):
    shop_id: int = Field(..., gt=0)
    status: AppointmentStatus
    price_cents: Optional[int] = Field(None, ge=0, description="Final price; only when completing")


class StatusChangeResponse(BaseModel):
    appointment_id: uuid.UUID
    status: AppointmentStatus
    review_link: Optional[str] = None


class ReviewInviteRequest(BaseModel):
    shop_id: int = Field(..., gt=0)


class ReviewLinkResponse(BaseModel):
    review_link: str


class AccountAppointmentResponse(BaseModel):
    id: uuid.UUID
    staff_id: int
    start_at: datetime
    status: AppointmentStatus
    service_name: str
    staff_name: str
    has_review: bool
    review_rating: Optional[int] = None


class ExistingReviewResponse(BaseModel):
    id: uuid.UUID
    rating: int
    comment: Optional[str] = None
    submitted_at: datetime


class ReviewAccessResponse(BaseModel):
    appointment: AccountAppointmentResponse
    existing_review: Optional[ExistingReviewResponse] = None
    can_review: bool


class AccountReviewRequest(BaseModel):
    shop_id: int = Field(..., gt=0)
    appointment_id: uuid.UUID
    rating: int
    comment: Optional[str] = None


def _appointment_response(item: AccountAppointment) -> AccountAppointmentResponse:
    return AccountAppointmentResponse(
        id=item.id,
        staff_id=item.staff_id,
        start_at=item.start_at,
        status=item.status,
        service_name=item.service_name,
        staff_name=item.staff_name,
        has_review=item.has_review,
        review_rating=item.review_rating,
    )


def _customer_email(caller: CallerContext) -> Optional[str]:
    if caller.role != CallerRole.CUSTOMER:
        return None
    return caller.normalized_email


_NOT_A_CUSTOMER = ServiceError(
    kind=ErrorKind.UNAUTHORIZED,
    message="Sign in with your email to see your appointments.",
)


# ────────────────────────────────────────────────────────────────
# Staff / Admin
# ────────────────────────────────────────────────────────────────

@router.post(
    "/appointments/{appointment_id}/status",
    response_model=StatusChangeResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def change_appointment_status(
    appointment_id: uuid.UUID,
    request: StatusChangeRequest,
    caller: CallerContext = Depends(get_caller_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Move an appointment to a new status.

    Completing an appointment also issues a review invite; its link is
    returned once in review_link and cannot be recovered later.
    """
    result = await transition_appointment(
        session,
        shop_id=request.shop_id,
        appointment_id=appointment_id,
        target=request.status,
        caller=caller,
        now=datetime.now(timezone.utc),
        price_cents=request.price_cents,
    )
    if not result.ok:
        return service_error_response(result.error)

    outcome = result.value
    return StatusChangeResponse(
        appointment_id=outcome.appointment_id,
        status=outcome.status,
        review_link=outcome.review_link,
    )


@router.post(
    "/appointments/{appointment_id}/review-invite",
    response_model=ReviewLinkResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def create_review_invite(
    appointment_id: uuid.UUID,
    request: ReviewInviteRequest,
    caller: CallerContext = Depends(get_caller_context),
    session: AsyncSession = Depends(get_session),
):
    result = await issue_invite_for_appointment(
        session,
        shop_id=request.shop_id,
        appointment_id=appointment_id,
        caller=caller,
        now=datetime.now(timezone.utc),
    )
    if not result.ok:
        return service_error_response(result.error)
    return ReviewLinkResponse(review_link=result.value)


# ────────────────────────────────────────────────────────────────
# Customer Account
# ────────────────────────────────────────────────────────────────

@router.get(
    "/account/appointments",
    response_model=list[AccountAppointmentResponse],
    responses={403: {"model": ErrorResponse}},
)
async def my_appointments(
    shop_id: int = Query(..., gt=0),
    caller: CallerContext = Depends(get_caller_context),
    session: AsyncSession = Depends(get_session),
):
    email = _customer_email(caller)
    if not email:
        return service_error_response(_NOT_A_CUSTOMER)

    result = await list_account_appointments(session, shop_id, email)
    if not result.ok:
        return service_error_response(result.error)
    return [_appointment_response(item) for item in result.value]


@router.get(
    "/account/appointments/{appointment_id}/review",
    response_model=ReviewAccessResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def my_review_access(
    appointment_id: uuid.UUID,
    shop_id: int = Query(..., gt=0),
    caller: CallerContext = Depends(get_caller_context),
    session: AsyncSession = Depends(get_session),
):
    email = _customer_email(caller)
    if not email:
        return service_error_response(_NOT_A_CUSTOMER)

    result = await get_review_access(session, shop_id, appointment_id, email)
    if not result.ok:
        return service_error_response(result.error)

    access = result.value
    existing = access.existing_review
    return ReviewAccessResponse(
        appointment=_appointment_response(access.appointment),
        existing_review=(
            ExistingReviewResponse(
                id=existing.id,
                rating=existing.rating,
                comment=existing.comment,
                submitted_at=existing.submitted_at,
            )
            if existing
            else None
        ),
        can_review=access.can_review,
    )


@router.post("/account/reviews", response_model=ReviewSubmitResponse)
async def submit_account_review(
    request: AccountReviewRequest,
    caller: CallerContext = Depends(get_caller_context),
    session: AsyncSession = Depends(get_session),
):
    draft = parse_review_draft({"rating": request.rating, "comment": request.comment})
    if not draft.ok:
        return ReviewSubmitResponse(success=False, error=draft.error.message)

    result = await submit_own_review(
        session,
        shop_id=request.shop_id,
        appointment_id=request.appointment_id,
        draft=draft.value,
        caller=caller,
        now=datetime.now(timezone.utc),
    )
    if not result.ok:
        return ReviewSubmitResponse(success=False, error=result.error.message)
    return ReviewSubmitResponse(success=True)
