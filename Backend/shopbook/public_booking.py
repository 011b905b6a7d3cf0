"""
Public Booking API.

Endpoints that anonymous visitors use from the booking site and from review
links. No caller headers are required; a signed-in visitor's verified email
is picked up when the gateway forwards one.

    GET  /availability              -> open slots for a service on a date
    POST /bookings                  -> book one slot
    GET  /reviews/invites/{token}   -> what a review link is for
    POST /reviews/submit            -> leave a review with a review link

Slots are advisory. POST /bookings re-checks everything and answers 409 when
the slot was taken in the meantime.
"""

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import AvailabilityQuery, get_availability
from .booking import BookingRequest, book_appointment
from .core.db import get_session
from .core.request_context import CallerContext, get_optional_caller_context
from .core.responses import ErrorDetail, service_error_response
from .rate_limiter import RateLimiter, review_token_rate_limit
from .review_invites import get_review_invite_preview
from .reviews import parse_review_draft, submit_review_with_token

router = APIRouter(tags=["public-booking"])


# ────────────────────────────────────────────────────────────────
# Response Models
# ────────────────────────────────────────────────────────────────

class ErrorResponse(BaseModel):
    error: ErrorDetail
    status: str = "error"


class SlotResponse(BaseModel):
    start_at: datetime
    end_at: datetime
    staff_id: int
    staff_name: str


class AvailabilityResponse(BaseModel):
    slots: list[SlotResponse]


class BookingResponse(BaseModel):
    appointment_id: uuid.UUID
    start_at: datetime


class InvitePreviewResponse(BaseModel):
    appointment_id: uuid.UUID
    staff_id: int
    staff_name: str
    service_name: str
    appointment_start_at: datetime
    expires_at: datetime


class TokenReviewRequest(BaseModel):
    signed_token: str = Field(..., max_length=512)
    rating: int
    comment: Optional[str] = None


class ReviewSubmitResponse(BaseModel):
    """Review submissions always answer 200; success says whether it was stored."""
    success: bool
    error: Optional[str] = None


# ────────────────────────────────────────────────────────────────
# Booking
# ────────────────────────────────────────────────────────────────

@router.get(
    "/availability",
    response_model=AvailabilityResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def check_availability(
    shop_id: int = Query(..., gt=0),
    service_id: int = Query(..., gt=0),
    date: date = Query(..., description="Calendar date in the shop's timezone (YYYY-MM-DD)"),
    staff_id: Optional[int] = Query(None, gt=0),
    session: AsyncSession = Depends(get_session),
):
    """
    Open slots for a service on a date.

    Without staff_id each start time is listed once, with the first staff
    member (by id) who can take it. Past dates and closed days return an
    empty list.
    """
    query = AvailabilityQuery.from_settings(shop_id, service_id, date, staff_id=staff_id)
    result = await get_availability(session, query, now=datetime.now(timezone.utc))
    if not result.ok:
        return service_error_response(result.error)

    return AvailabilityResponse(
        slots=[
            SlotResponse(
                start_at=slot.start_at,
                end_at=slot.end_at,
                staff_id=slot.staff_id,
                staff_name=slot.staff_name,
            )
            for slot in result.value
        ]
    )


@router.post(
    "/bookings",
    response_model=BookingResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def create_booking(
    request: BookingRequest,
    caller: Optional[CallerContext] = Depends(get_optional_caller_context),
    session: AsyncSession = Depends(get_session),
):
    """
    Book a slot returned by /availability.

    Possible errors:
    - 400: Invalid data, no staff member on the slot, too soon, outside working hours
    - 404: Unknown shop
    - 409: Slot taken since availability was fetched
    """
    result = await book_appointment(
        session,
        request,
        now=datetime.now(timezone.utc),
        caller_email=caller.normalized_email if caller else None,
    )
    if not result.ok:
        return service_error_response(result.error)

    return BookingResponse(appointment_id=result.value.appointment_id, start_at=result.value.start_at)


# ────────────────────────────────────────────────────────────────
# Review Links
# ────────────────────────────────────────────────────────────────

@router.get(
    "/reviews/invites/{token}",
    response_model=InvitePreviewResponse,
    responses={404: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    dependencies=[Depends(review_token_rate_limit)],
)
async def preview_review_invite(
    token: str,
    session: AsyncSession = Depends(get_session),
):
    """Describe the appointment a review link is for. Any unusable link is the same 404."""
    result = await get_review_invite_preview(session, token, now=datetime.now(timezone.utc))
    if not result.ok:
        return service_error_response(result.error)

    preview = result.value
    return InvitePreviewResponse(
        appointment_id=preview.appointment_id,
        staff_id=preview.staff_id,
        staff_name=preview.staff_name,
        service_name=preview.service_name,
        appointment_start_at=preview.appointment_start_at,
        expires_at=preview.expires_at,
    )


@router.post(
    "/reviews/submit",
    response_model=ReviewSubmitResponse,
    responses={429: {"model": ErrorResponse}},
    dependencies=[Depends(review_token_rate_limit)],
)
async def submit_review(
    payload: TokenReviewRequest,
    http_request: Request,
    session: AsyncSession = Depends(get_session),
):
    draft = parse_review_draft({"rating": payload.rating, "comment": payload.comment})
    if not draft.ok:
        return ReviewSubmitResponse(success=False, error=draft.error.message)

    result = await submit_review_with_token(
        session,
        payload.signed_token,
        draft.value,
        now=datetime.now(timezone.utc),
        ip_address=RateLimiter.client_ip(http_request),
        user_agent=http_request.headers.get("User-Agent"),
    )
    if not result.ok:
        return ReviewSubmitResponse(success=False, error=result.error.message)
    return ReviewSubmitResponse(success=True)
