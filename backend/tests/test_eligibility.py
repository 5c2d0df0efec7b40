"""
Tests for the eligibility resolver and the resource debits.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from app.models.session_credit import SessionCredit
from app.models.subscription import Subscription
from app.services import eligibility_service
from app.services.eligibility_service import (
    DENIED_NO_ELIGIBILITY,
    DENIED_QUOTA_EXHAUSTED,
    Denied,
    GrantedUnconditionally,
    GrantedViaCredit,
    GrantedViaSubscription,
    OptimisticConflict,
)
from app.services.policy_service import SchedulingPolicy

from conftest import CUSTOMER_ID, add_booking, add_credits, add_subscription, upcoming_slot

POLICY = SchedulingPolicy()


def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_staff_granted_unconditionally(db_session, customer, staff_actor):
    decision = await eligibility_service.resolve(db_session, staff_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    assert isinstance(decision, GrantedUnconditionally)

    funding = await eligibility_service.consume(db_session, decision, CUSTOMER_ID, now())
    assert funding.source == "staff"


@pytest.mark.asyncio
async def test_no_subscription_no_credit_denied(db_session, customer, customer_actor):
    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    assert isinstance(decision, Denied)
    assert decision.code == DENIED_NO_ELIGIBILITY
    assert "subscription or session credits" in decision.reason


@pytest.mark.asyncio
async def test_past_due_subscription_is_not_eligible(db_session, customer, customer_actor):
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1, status="past_due")
    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    assert isinstance(decision, Denied)
    assert decision.code == DENIED_NO_ELIGIBILITY


@pytest.mark.asyncio
async def test_quota_counts_the_slot_week_only(db_session, customer, customer_actor, session_type):
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)
    slot = upcoming_slot(days_ahead=3)
    week_start, week_end = POLICY.week_bounds(slot)

    # A booking in the following week does not use this week's quota
    await add_booking(db_session, CUSTOMER_ID, session_type, week_end + timedelta(hours=10), funding_source="subscription")
    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, slot, POLICY, now())
    assert isinstance(decision, GrantedViaSubscription)
    assert decision.used_this_week == 0

    await add_booking(db_session, CUSTOMER_ID, session_type, week_start + timedelta(hours=9), funding_source="subscription")
    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, slot, POLICY, now())
    assert isinstance(decision, Denied)
    assert decision.code == DENIED_QUOTA_EXHAUSTED
    assert "1 sessions this week" in decision.reason


@pytest.mark.asyncio
async def test_cancelled_bookings_do_not_use_quota(db_session, customer, customer_actor, session_type):
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)
    slot = upcoming_slot(days_ahead=3)
    week_start, _ = POLICY.week_bounds(slot)
    await add_booking(
        db_session, CUSTOMER_ID, session_type, week_start + timedelta(hours=11),
        status="cancelled", funding_source="subscription",
    )

    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, slot, POLICY, now())
    assert isinstance(decision, GrantedViaSubscription)
    assert decision.used_this_week == 0


@pytest.mark.asyncio
async def test_credit_funded_bookings_count_against_quota(db_session, customer, customer_actor, session_type):
    # Booked with a credit before subscribing, in the same week
    await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot(days_ahead=3, hour=9), funding_source="credit")
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)

    decision = await eligibility_service.resolve(
        db_session, customer_actor, CUSTOMER_ID, upcoming_slot(days_ahead=3, hour=11), POLICY, now()
    )
    assert isinstance(decision, Denied)
    assert decision.code == DENIED_QUOTA_EXHAUSTED


@pytest.mark.asyncio
async def test_quota_exhausted_falls_back_to_credit(db_session, customer, customer_actor, session_type):
    subscription = await add_subscription(db_session, CUSTOMER_ID, "essential", 1)
    await add_credits(db_session, CUSTOMER_ID, total=5, used=3)
    slot = upcoming_slot(days_ahead=3)
    week_start, _ = POLICY.week_bounds(slot)
    await add_booking(db_session, CUSTOMER_ID, session_type, week_start + timedelta(hours=9), funding_source="subscription")

    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, slot, POLICY, now())
    assert decision == GrantedViaCredit(credits_available=2, subscription_id=subscription.id)


@pytest.mark.asyncio
async def test_unlimited_subscription_debits_nothing(db_session, customer, customer_actor):
    subscription = await add_subscription(db_session, CUSTOMER_ID, "elite", None)
    subscription_id = subscription.id

    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    assert isinstance(decision, GrantedViaSubscription)
    assert decision.sessions_per_week is None

    funding = await eligibility_service.consume(db_session, decision, CUSTOMER_ID, now())
    assert funding.source == "subscription"
    refreshed = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert refreshed.version == 1


@pytest.mark.asyncio
async def test_quota_claim_bumps_version_and_rejects_stale_reads(db_session, customer, customer_actor):
    subscription = await add_subscription(db_session, CUSTOMER_ID, "performance", 2)
    subscription_id = subscription.id

    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    funding = await eligibility_service.consume(db_session, decision, CUSTOMER_ID, now())
    assert funding.subscription_id == subscription_id

    refreshed = await db_session.get(Subscription, subscription_id, populate_existing=True)
    assert refreshed.version == 2

    # The same decision was computed against version 1
    with pytest.raises(OptimisticConflict) as exc_info:
        await eligibility_service.consume(db_session, decision, CUSTOMER_ID, now())
    assert exc_info.value.resource == "subscription"


@pytest.mark.asyncio
async def test_credit_debit_is_fifo_and_skips_expired(db_session, customer, customer_actor):
    purchased = now() - timedelta(days=30)
    expired = await add_credits(db_session, CUSTOMER_ID, total=5, expires_at=now() - timedelta(days=1), purchased_at=purchased)
    oldest = await add_credits(db_session, CUSTOMER_ID, total=1, purchased_at=purchased + timedelta(days=1))
    newest = await add_credits(db_session, CUSTOMER_ID, total=5, purchased_at=purchased + timedelta(days=2))
    expired_id, oldest_id, newest_id = expired.id, oldest.id, newest.id

    assert await eligibility_service.available_credits(db_session, CUSTOMER_ID, now()) == 6

    first = await eligibility_service.debit_credit(db_session, CUSTOMER_ID, now())
    second = await eligibility_service.debit_credit(db_session, CUSTOMER_ID, now())
    assert (first, second) == (oldest_id, newest_id)

    untouched = await db_session.get(SessionCredit, expired_id, populate_existing=True)
    assert untouched.used_sessions == 0


@pytest.mark.asyncio
async def test_drained_credit_raises_conflict(db_session, customer, customer_actor):
    credit = await add_credits(db_session, CUSTOMER_ID, total=1)
    credit_id = credit.id
    decision = await eligibility_service.resolve(db_session, customer_actor, CUSTOMER_ID, upcoming_slot(), POLICY, now())
    assert isinstance(decision, GrantedViaCredit)

    # Another booking takes the last unit first
    assert await eligibility_service.debit_credit(db_session, CUSTOMER_ID, now()) == credit_id

    with pytest.raises(OptimisticConflict) as exc_info:
        await eligibility_service.consume(db_session, decision, CUSTOMER_ID, now())
    assert exc_info.value.resource == "credit"


@pytest.mark.asyncio
async def test_restore_credit_never_goes_negative(db_session, customer):
    credit = await add_credits(db_session, CUSTOMER_ID, total=2, used=1)
    credit_id = credit.id

    assert await eligibility_service.restore_credit(db_session, credit_id)
    assert not await eligibility_service.restore_credit(db_session, credit_id)

    refreshed = await db_session.get(SessionCredit, credit_id, populate_existing=True)
    assert refreshed.used_sessions == 0


@pytest.mark.asyncio
async def test_consuming_a_denial_is_an_error(db_session):
    with pytest.raises(ValueError):
        await eligibility_service.consume(db_session, Denied(reason="no", code=DENIED_NO_ELIGIBILITY), CUSTOMER_ID, now())


@pytest.mark.asyncio
async def test_preview_endpoint(client: AsyncClient, db_session, customer_headers, staff_headers, other_customer):
    await add_subscription(db_session, CUSTOMER_ID, "performance", 2)
    await add_credits(db_session, CUSTOMER_ID, total=5, used=1)

    response = await client.get("/api/v1/booking-eligibility", headers=customer_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["can_book"] is True
    assert data["funding_source"] == "subscription"
    assert data["tier"] == "performance"
    assert data["sessions_per_week"] == 2
    assert data["unlimited"] is False
    assert data["credits_available"] == 4

    response = await client.get(
        "/api/v1/booking-eligibility", params={"customer_id": other_customer.id}, headers=customer_headers
    )
    assert response.status_code == 403

    response = await client.get(
        "/api/v1/booking-eligibility", params={"customer_id": other_customer.id}, headers=staff_headers
    )
    assert response.status_code == 200
    assert response.json()["funding_source"] == "staff"


@pytest.mark.asyncio
async def test_preview_denied_reports_code(client: AsyncClient, customer_headers):
    response = await client.get("/api/v1/booking-eligibility", headers=customer_headers)
    data = response.json()
    assert data["can_book"] is False
    assert data["code"] == "no_eligibility"


@pytest.mark.asyncio
async def test_credit_summary(client: AsyncClient, db_session, customer_headers):
    await add_credits(db_session, CUSTOMER_ID, total=10, used=4, purchased_at=now() - timedelta(days=5))
    await add_credits(db_session, CUSTOMER_ID, total=5, purchased_at=now() - timedelta(days=1))
    await add_credits(db_session, CUSTOMER_ID, total=5, expires_at=now() - timedelta(days=1))

    response = await client.get("/api/v1/session-credits", headers=customer_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["total_available"] == 11
    assert [grant["total_sessions"] for grant in data["grants"]] == [10, 5]
