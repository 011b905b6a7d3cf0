"""
Tests for review invites and review submission.

Covers the token path (preview, single-use redemption, expiry, forgery), the
signed-in customer path, and races between the two.

Run with: pytest tests/test_reviews.py -v
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from shopbook import review_invites as review_invites_module
from shopbook import reviews as reviews_module
from shopbook.core.request_context import CallerContext, CallerRole
from shopbook.core.results import GENERIC_TOKEN_MESSAGE, ErrorKind
from shopbook.models import AppointmentReview, AppointmentStatus, ReviewInvite, ReviewSource
from shopbook.review_invites import (
    get_review_invite_preview,
    issue_invite_for_appointment,
    issue_review_invite,
)
from shopbook.review_tokens import create_signed_review_token, hash_opaque_value
from shopbook.reviews import (
    ReviewDraft,
    get_review_access,
    list_account_appointments,
    parse_review_draft,
    submit_own_review,
    submit_review_with_token,
)

from helpers import NOW, add_appointment, at

LATER = at(12)
ANA = CallerContext(role=CallerRole.CUSTOMER, email="ana@example.com")
ADMIN = CallerContext(role=CallerRole.ADMIN)


async def completed_with_invite(session, catalog, settings, email="ana@example.com"):
    appointment = await add_appointment(session, catalog, at(10), AppointmentStatus.DONE, email=email)
    signed_token = await issue_review_invite(session, appointment, NOW, settings)
    await session.commit()
    return appointment, signed_token


async def review_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(AppointmentReview))


async def load_invite(session_factory, appointment_id) -> ReviewInvite:
    async with session_factory() as session:
        return await session.scalar(
            select(ReviewInvite).where(ReviewInvite.appointment_id == appointment_id)
        )


# ============================================================================
# REVIEW DRAFT VALIDATION (pure)
# ============================================================================

class TestReviewDraft:

    def test_comment_is_trimmed(self):
        result = parse_review_draft({"rating": 5, "comment": "  Great fade  "})
        assert result.value.comment == "Great fade"

    def test_blank_comment_becomes_none(self):
        assert parse_review_draft({"rating": 4, "comment": "   "}).value.comment is None

    def test_comment_length_is_capped(self):
        assert parse_review_draft({"rating": 4, "comment": "x" * 1000}).ok
        result = parse_review_draft({"rating": 4, "comment": "x" * 1001})
        assert result.error.kind == ErrorKind.INVALID_INPUT

    @pytest.mark.parametrize("rating", [0, 6, -1])
    def test_rating_must_be_one_to_five(self, rating):
        assert parse_review_draft({"rating": rating}).error.kind == ErrorKind.INVALID_INPUT

    def test_rating_is_required(self):
        assert parse_review_draft({"comment": "Nice"}).error.kind == ErrorKind.INVALID_INPUT


# ============================================================================
# TOKEN PATH
# ============================================================================

@pytest.mark.asyncio
async def test_invite_preview_then_single_use_submit(async_session, session_factory, catalog, settings):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)

    preview = await get_review_invite_preview(async_session, signed_token, LATER, settings)
    assert preview.ok
    assert preview.value.appointment_id == appointment.id
    assert preview.value.staff_name == "S1"
    assert preview.value.service_name == "Haircut"
    assert preview.value.appointment_start_at == at(10)

    first = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=5, comment="Great"), LATER, settings=settings
    )
    assert first.ok
    assert first.value.rating == 5
    assert first.value.staff_id == catalog.staff1_id
    assert first.value.status == "published"

    second = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=1), LATER, settings=settings
    )
    assert second.error.kind == ErrorKind.TOKEN_ALREADY_USED
    assert second.error.message == GENERIC_TOKEN_MESSAGE

    invite = await load_invite(session_factory, appointment.id)
    assert invite.consumed_at == LATER
    assert await review_count(session_factory) == 1


@pytest.mark.asyncio
async def test_preview_fails_once_reviewed(async_session, catalog, settings):
    _, signed_token = await completed_with_invite(async_session, catalog, settings)
    await submit_review_with_token(async_session, signed_token, ReviewDraft(rating=4), LATER, settings=settings)

    preview = await get_review_invite_preview(async_session, signed_token, LATER, settings)

    assert preview.error.kind == ErrorKind.TOKEN_INVALID
    assert preview.error.message == GENERIC_TOKEN_MESSAGE


@pytest.mark.asyncio
async def test_token_submission_stores_hashed_client_details(async_session, session_factory, catalog, settings):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)

    result = await submit_review_with_token(
        async_session,
        signed_token,
        ReviewDraft(rating=5),
        LATER,
        ip_address="203.0.113.7",
        user_agent="Mozilla/5.0",
        settings=settings,
    )

    assert result.ok
    async with session_factory() as session:
        review = await session.scalar(
            select(AppointmentReview).where(AppointmentReview.appointment_id == appointment.id)
        )
    assert review.source == ReviewSource.INVITE
    assert review.is_verified is True
    assert review.ip_hash == hash_opaque_value("203.0.113.7")
    assert review.user_agent_hash == hash_opaque_value("Mozilla/5.0")
    assert review.customer_id == appointment.customer_id


@pytest.mark.asyncio
async def test_expired_invite_is_rejected(async_session, session_factory, catalog, settings):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)
    after_expiry = NOW + timedelta(days=settings.review_invite_ttl_days, seconds=1)

    result = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=5), after_expiry, settings=settings
    )

    assert result.error.kind == ErrorKind.TOKEN_INVALID
    assert result.error.message == GENERIC_TOKEN_MESSAGE
    assert (await load_invite(session_factory, appointment.id)).consumed_at is None


@pytest.mark.asyncio
async def test_forged_token_is_rejected(async_session, catalog, settings):
    await completed_with_invite(async_session, catalog, settings)
    forged = create_signed_review_token("not-the-secret").signed_token

    submitted = await submit_review_with_token(
        async_session, forged, ReviewDraft(rating=5), LATER, settings=settings
    )
    preview = await get_review_invite_preview(async_session, forged, LATER, settings)

    assert submitted.error.kind == ErrorKind.TOKEN_INVALID
    assert preview.error.message == GENERIC_TOKEN_MESSAGE


@pytest.mark.asyncio
async def test_unknown_but_well_signed_token_is_rejected(async_session, catalog, settings):
    never_issued = create_signed_review_token(settings.review_link_secret).signed_token

    result = await submit_review_with_token(
        async_session, never_issued, ReviewDraft(rating=5), LATER, settings=settings
    )

    assert result.error.kind == ErrorKind.TOKEN_INVALID


@pytest.mark.asyncio
async def test_invite_for_unfinished_appointment_is_rejected(async_session, catalog, settings):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.CONFIRMED)
    signed_token = await issue_review_invite(async_session, appointment, NOW, settings)
    await async_session.commit()

    result = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=5), LATER, settings=settings
    )

    assert result.error.kind == ErrorKind.TOKEN_INVALID


@pytest.mark.asyncio
async def test_failed_write_leaves_invite_usable(async_session, session_factory, catalog, settings, monkeypatch):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)

    async def failing_insert(*args, **kwargs):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr(reviews_module, "_insert_review", failing_insert)
    failed = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=5), LATER, settings=settings
    )
    assert failed.error.kind == ErrorKind.PERSISTENCE_FAILURE
    assert (await load_invite(session_factory, appointment.id)).consumed_at is None

    monkeypatch.undo()
    retried = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=5), LATER, settings=settings
    )
    assert retried.ok


# ============================================================================
# SELF-SERVICE PATH
# ============================================================================

@pytest.mark.asyncio
async def test_customer_reviews_own_appointment(async_session, session_factory, catalog):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)
    caller = CallerContext(role=CallerRole.CUSTOMER, email="  ANA@example.com ")

    result = await submit_own_review(
        async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=4, comment="Good"), caller, LATER
    )

    assert result.ok
    async with session_factory() as session:
        review = await session.scalar(select(AppointmentReview))
    assert review.source == ReviewSource.ACCOUNT
    assert review.ip_hash is None


@pytest.mark.asyncio
async def test_customer_cannot_review_someone_elses_appointment(async_session, catalog):
    appointment = await add_appointment(
        async_session, catalog, at(10), AppointmentStatus.DONE, email="bob@example.com"
    )

    result = await submit_own_review(
        async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=4), ANA, LATER
    )

    assert result.error.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_customer_cannot_review_unfinished_appointment(async_session, catalog):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.CONFIRMED)

    result = await submit_own_review(
        async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=4), ANA, LATER
    )

    assert result.error.kind == ErrorKind.INVALID_INPUT


@pytest.mark.asyncio
async def test_second_review_is_already_reviewed(async_session, catalog):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)
    await submit_own_review(async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=4), ANA, LATER)

    result = await submit_own_review(
        async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=2), ANA, LATER
    )

    assert result.error.kind == ErrorKind.ALREADY_REVIEWED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "caller",
    [
        CallerContext(role=CallerRole.ADMIN, email="ana@example.com"),
        CallerContext(role=CallerRole.CUSTOMER, email="   "),
    ],
)
async def test_self_service_requires_customer_with_email(async_session, catalog, caller):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)

    result = await submit_own_review(
        async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=4), caller, LATER
    )

    assert result.error.kind == ErrorKind.UNAUTHORIZED


@pytest.mark.asyncio
async def test_token_made_useless_by_self_service_review(async_session, catalog, settings):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)
    await submit_own_review(async_session, catalog.shop_id, appointment.id, ReviewDraft(rating=5), ANA, LATER)

    result = await submit_review_with_token(
        async_session, signed_token, ReviewDraft(rating=1), LATER, settings=settings
    )

    assert result.error.kind == ErrorKind.ALREADY_REVIEWED


@pytest.mark.asyncio
async def test_concurrent_token_and_account_reviews(async_session, session_factory, catalog, settings):
    appointment, signed_token = await completed_with_invite(async_session, catalog, settings)

    async def via_token():
        async with session_factory() as session:
            return await submit_review_with_token(
                session, signed_token, ReviewDraft(rating=5), LATER, settings=settings
            )

    async def via_account():
        async with session_factory() as session:
            return await submit_own_review(
                session, catalog.shop_id, appointment.id, ReviewDraft(rating=3), ANA, LATER
            )

    results = await asyncio.gather(via_token(), via_account())

    assert sum(1 for r in results if r.ok) == 1
    assert [r.error.kind for r in results if not r.ok] == [ErrorKind.ALREADY_REVIEWED]
    assert await review_count(session_factory) == 1


@pytest.mark.asyncio
async def test_concurrent_redemptions_of_one_link(async_session, session_factory, catalog, settings):
    _, signed_token = await completed_with_invite(async_session, catalog, settings)

    async def redeem(rating):
        async with session_factory() as session:
            return await submit_review_with_token(
                session, signed_token, ReviewDraft(rating=rating), LATER, settings=settings
            )

    results = await asyncio.gather(redeem(5), redeem(1))

    assert sum(1 for r in results if r.ok) == 1
    assert [r.error.kind for r in results if not r.ok] == [ErrorKind.TOKEN_ALREADY_USED]
    assert await review_count(session_factory) == 1


# ============================================================================
# ON-DEMAND INVITES
# ============================================================================

@pytest.mark.asyncio
async def test_issue_invite_for_completed_appointment(async_session, session_factory, catalog, settings):
    appointment = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)

    result = await issue_invite_for_appointment(
        async_session, catalog.shop_id, appointment.id, ADMIN, LATER, settings
    )

    assert result.ok
    assert result.value.startswith("https://book.example.com/review/")
    signed_token = result.value.rsplit("/", 1)[1]
    preview = await get_review_invite_preview(async_session, signed_token, LATER, settings)
    assert preview.ok


@pytest.mark.asyncio
async def test_reissued_links_all_die_with_first_review(async_session, catalog, settings):
    appointment, first_token = await completed_with_invite(async_session, catalog, settings)
    reissued = await issue_invite_for_appointment(
        async_session, catalog.shop_id, appointment.id, ADMIN, LATER, settings
    )
    second_token = reissued.value.rsplit("/", 1)[1]

    used = await submit_review_with_token(
        async_session, second_token, ReviewDraft(rating=5), LATER, settings=settings
    )
    stale = await submit_review_with_token(
        async_session, first_token, ReviewDraft(rating=5), LATER, settings=settings
    )

    assert used.ok
    assert stale.error.kind == ErrorKind.ALREADY_REVIEWED


@pytest.mark.asyncio
async def test_issue_invite_rules(async_session, catalog, settings):
    pending = await add_appointment(async_session, catalog, at(10))
    reviewed = await add_appointment(async_session, catalog, at(11), AppointmentStatus.DONE)
    await submit_own_review(async_session, catalog.shop_id, reviewed.id, ReviewDraft(rating=5), ANA, LATER)
    other_staff = CallerContext(role=CallerRole.STAFF, staff_id=catalog.staff2_id)

    not_done = await issue_invite_for_appointment(async_session, catalog.shop_id, pending.id, ADMIN, LATER, settings)
    already = await issue_invite_for_appointment(async_session, catalog.shop_id, reviewed.id, ADMIN, LATER, settings)
    customer = await issue_invite_for_appointment(async_session, catalog.shop_id, reviewed.id, ANA, LATER, settings)
    not_owner = await issue_invite_for_appointment(
        async_session, catalog.shop_id, reviewed.id, other_staff, LATER, settings
    )
    missing = await issue_invite_for_appointment(async_session, catalog.shop_id, uuid.uuid4(), ADMIN, LATER, settings)

    assert not_done.error.kind == ErrorKind.INVALID_INPUT
    assert already.error.kind == ErrorKind.ALREADY_REVIEWED
    assert customer.error.kind == ErrorKind.UNAUTHORIZED
    assert not_owner.error.kind == ErrorKind.UNAUTHORIZED
    assert missing.error.kind == ErrorKind.NOT_FOUND


# ============================================================================
# ACCOUNT READS
# ============================================================================

@pytest.mark.asyncio
async def test_account_appointments_newest_first_with_review_flags(async_session, session_factory, catalog):
    older = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)
    newer = await add_appointment(async_session, catalog, at(14), AppointmentStatus.CONFIRMED)
    await add_appointment(async_session, catalog, at(12), AppointmentStatus.DONE, email="bob@example.com")
    await submit_own_review(async_session, catalog.shop_id, older.id, ReviewDraft(rating=5), ANA, LATER)

    async with session_factory() as session:
        listed = await list_account_appointments(session, catalog.shop_id, "Ana@Example.com")

    assert listed.ok
    items = listed.value
    assert [item.id for item in items] == [newer.id, older.id]
    assert items[0].has_review is False
    assert items[1].has_review is True
    assert items[1].review_rating == 5
    assert items[1].service_name == "Haircut"
    assert items[1].staff_name == "S1"


@pytest.mark.asyncio
async def test_review_access(async_session, session_factory, catalog):
    done = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)
    pending = await add_appointment(async_session, catalog, at(11))

    async with session_factory() as session:
        before = await get_review_access(session, catalog.shop_id, done.id, "ana@example.com")
        unfinished = await get_review_access(session, catalog.shop_id, pending.id, "ana@example.com")
        stranger = await get_review_access(session, catalog.shop_id, done.id, "bob@example.com")

    assert before.value.can_review is True
    assert before.value.existing_review is None
    assert unfinished.value.can_review is False
    assert stranger.error.kind == ErrorKind.NOT_FOUND

    await submit_own_review(
        async_session, catalog.shop_id, done.id, ReviewDraft(rating=3, comment="Okay"), ANA, LATER
    )

    async with session_factory() as session:
        after = await get_review_access(session, catalog.shop_id, done.id, "ana@example.com")

    assert after.value.can_review is False
    assert after.value.existing_review.rating == 3
    assert after.value.existing_review.comment == "Okay"
    assert after.value.appointment.has_review is True


# ============================================================================
# DATASTORE FAILURES ON READS
# ============================================================================

async def failing_read(*args, **kwargs):
    raise SQLAlchemyError("connection reset")


@pytest.mark.asyncio
async def test_preview_reports_persistence_failure(async_session, catalog, settings, monkeypatch):
    _, signed_token = await completed_with_invite(async_session, catalog, settings)
    monkeypatch.setattr(review_invites_module, "resolve_invite", failing_read)

    preview = await get_review_invite_preview(async_session, signed_token, LATER, settings)

    assert preview.error.kind == ErrorKind.PERSISTENCE_FAILURE


@pytest.mark.asyncio
async def test_account_reads_report_persistence_failure(async_session, catalog, monkeypatch):
    done = await add_appointment(async_session, catalog, at(10), AppointmentStatus.DONE)
    monkeypatch.setattr(reviews_module, "_reviews_by_appointment", failing_read)
    monkeypatch.setattr(reviews_module, "get_review_for_appointment", failing_read)

    listed = await list_account_appointments(async_session, catalog.shop_id, "ana@example.com")
    access = await get_review_access(async_session, catalog.shop_id, done.id, "ana@example.com")

    assert listed.error.kind == ErrorKind.PERSISTENCE_FAILURE
    assert access.error.kind == ErrorKind.PERSISTENCE_FAILURE
