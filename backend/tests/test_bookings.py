"""
Tests for booking endpoints: creation, capacity, eligibility, cancellation
policy and attendance.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from app.core.config import get_settings
from app.models.booking import Booking
from app.models.session_credit import SessionCredit

from conftest import (
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    add_booking,
    add_credits,
    add_subscription,
    headers_for,
    upcoming_slot,
)


async def _book(client: AsyncClient, headers: dict, session_type_id: int, start: datetime, **extra):
    return await client.post(
        "/api/v1/bookings/",
        json={"session_type_id": session_type_id, "start_time": start.isoformat(), **extra},
        headers=headers,
    )


async def _credits_available(client: AsyncClient, headers: dict) -> int:
    response = await client.get("/api/v1/session-credits", headers=headers)
    assert response.status_code == 200
    return response.json()["total_available"]


@pytest.mark.asyncio
async def test_book_with_credit_then_slot_full_then_cancel(
    client: AsyncClient,
    db_session,
    customer_headers,
    other_customer_headers,
    session_type,
    weekly_templates,
):
    """Credit is consumed, the slot fills, and a timely cancel forfeits the credit."""
    await add_credits(db_session, CUSTOMER_ID, total=1)
    await add_credits(db_session, OTHER_CUSTOMER_ID, total=1)
    slot = upcoming_slot(days_ahead=3)

    response = await _book(client, customer_headers, session_type.id, slot)
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "confirmed"
    assert data["funding_source"] == "credit"
    assert datetime.fromisoformat(data["start_time"]) == slot
    assert datetime.fromisoformat(data["end_time"]) == slot + timedelta(minutes=60)
    assert await _credits_available(client, customer_headers) == 0

    # Same slot, different customer: capacity 1 is already taken
    response = await _book(client, other_customer_headers, session_type.id, slot)
    assert response.status_code == 409
    assert await _credits_available(client, other_customer_headers) == 1

    # 72h ahead is outside the 24h notice window
    response = await client.post(
        f"/api/v1/bookings/{data['id']}/cancel",
        json={"reason": "Schedule change"},
        headers=customer_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert await _credits_available(client, customer_headers) == 0

    # The freed slot can be booked again
    response = await _book(client, other_customer_headers, session_type.id, slot)
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_cancel_restores_credit_when_enabled(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates, monkeypatch
):
    monkeypatch.setattr(get_settings(), "REFUND_CREDIT_ON_CANCEL", True)
    await add_credits(db_session, CUSTOMER_ID, total=1)

    response = await _book(client, customer_headers, session_type.id, upcoming_slot())
    assert response.status_code == 201
    assert await _credits_available(client, customer_headers) == 0

    response = await client.post(f"/api/v1/bookings/{response.json()['id']}/cancel", headers=customer_headers)
    assert response.status_code == 200
    assert await _credits_available(client, customer_headers) == 1


@pytest.mark.asyncio
async def test_staff_can_restore_credit_explicitly(
    client: AsyncClient, db_session, customer_headers, staff_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=2)
    response = await _book(client, customer_headers, session_type.id, upcoming_slot())
    booking_id = response.json()["id"]
    assert await _credits_available(client, customer_headers) == 1

    response = await client.post(
        f"/api/v1/bookings/{booking_id}/cancel",
        json={"restore_credit": True},
        headers=staff_headers,
    )
    assert response.status_code == 200
    assert await _credits_available(client, customer_headers) == 2


@pytest.mark.asyncio
async def test_customer_cannot_choose_credit_restore(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=1)
    response = await _book(client, customer_headers, session_type.id, upcoming_slot())

    response = await client.post(
        f"/api/v1/bookings/{response.json()['id']}/cancel",
        json={"restore_credit": True},
        headers=customer_headers,
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unlimited_subscription_books_five_in_one_week(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_subscription(db_session, CUSTOMER_ID, "elite", None)
    await add_credits(db_session, CUSTOMER_ID, total=3)

    for hour in (8, 10, 12, 14, 16):
        response = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=hour))
        assert response.status_code == 201, response.text
        assert response.json()["funding_source"] == "subscription"

    assert await _credits_available(client, customer_headers) == 3


@pytest.mark.asyncio
async def test_quota_exhausted_falls_back_to_credit_then_denies(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)
    await add_credits(db_session, CUSTOMER_ID, total=1)

    first = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=9))
    assert first.status_code == 201
    assert first.json()["funding_source"] == "subscription"

    second = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=11))
    assert second.status_code == 201
    assert second.json()["funding_source"] == "credit"

    third = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=13))
    assert third.status_code == 402
    assert third.json()["detail"]["code"] == "quota_exhausted"


@pytest.mark.asyncio
async def test_cancelling_frees_weekly_quota(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)

    first = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=9))
    assert first.status_code == 201
    await client.post(f"/api/v1/bookings/{first.json()['id']}/cancel", headers=customer_headers)

    again = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=11))
    assert again.status_code == 201
    assert again.json()["funding_source"] == "subscription"


@pytest.mark.asyncio
async def test_credit_booking_uses_up_weekly_quota(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=1)
    first = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=9))
    assert first.status_code == 201
    assert first.json()["funding_source"] == "credit"

    # Subscribing mid-week: the credit-funded booking already fills the quota of 1
    await add_subscription(db_session, CUSTOMER_ID, "essential", 1)
    second = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=2, hour=11))
    assert second.status_code == 402
    assert second.json()["detail"]["code"] == "quota_exhausted"


@pytest.mark.asyncio
async def test_no_subscription_no_credit_is_denied(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    response = await _book(client, customer_headers, session_type.id, upcoming_slot())
    assert response.status_code == 402
    assert response.json()["detail"]["code"] == "no_eligibility"

    count = await db_session.execute(select(func.count(Booking.id)))
    assert count.scalar_one() == 0


@pytest.mark.asyncio
async def test_expired_credit_is_not_usable(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=5, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    response = await _book(client, customer_headers, session_type.id, upcoming_slot())
    assert response.status_code == 402


@pytest.mark.asyncio
async def test_credits_consumed_oldest_first(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    now = datetime.now(timezone.utc)
    newer = await add_credits(db_session, CUSTOMER_ID, total=5, purchased_at=now - timedelta(days=1))
    older = await add_credits(db_session, CUSTOMER_ID, total=5, purchased_at=now - timedelta(days=10))
    older_id, newer_id = older.id, newer.id

    response = await _book(client, customer_headers, session_type.id, upcoming_slot())
    assert response.status_code == 201

    older = await db_session.get(SessionCredit, older_id, populate_existing=True)
    newer = await db_session.get(SessionCredit, newer_id, populate_existing=True)
    assert older.used_sessions == 1
    assert newer.used_sessions == 0


@pytest.mark.asyncio
async def test_group_capacity_three(
    client: AsyncClient, db_session, customer, other_customer, staff_headers, group_session_type, weekly_templates
):
    slot = upcoming_slot()
    for _ in range(3):
        response = await _book(client, staff_headers, group_session_type.id, slot, customer_id=CUSTOMER_ID)
        assert response.status_code == 201
        assert response.json()["funding_source"] == "staff"

    response = await _book(client, staff_headers, group_session_type.id, slot, customer_id=OTHER_CUSTOMER_ID)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_back_to_back_slots_do_not_conflict(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=2)
    first = await _book(client, customer_headers, session_type.id, upcoming_slot(hour=10))
    second = await _book(client, customer_headers, session_type.id, upcoming_slot(hour=11))
    assert first.status_code == 201
    assert second.status_code == 201


@pytest.mark.asyncio
async def test_booking_outside_templates_rejected_for_customer(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=1)
    response = await _book(client, customer_headers, session_type.id, upcoming_slot(hour=21))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_booking_inside_min_notice_rejected(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=1)
    start = (datetime.now(timezone.utc) + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)
    response = await _book(client, customer_headers, session_type.id, start)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_booking_beyond_window_rejected(
    client: AsyncClient, db_session, customer_headers, session_type, weekly_templates
):
    await add_credits(db_session, CUSTOMER_ID, total=1)
    response = await _book(client, customer_headers, session_type.id, upcoming_slot(days_ahead=45))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_session_type_rejected(client: AsyncClient, customer_headers, weekly_templates):
    response = await _book(client, customer_headers, 999, upcoming_slot())
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_book_unauthenticated(client: AsyncClient, session_type):
    response = await _book(client, {}, session_type.id, upcoming_slot())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_staff_books_off_template_on_behalf(
    client: AsyncClient, db_session, customer, staff_headers, session_type, weekly_templates
):
    response = await _book(client, staff_headers, session_type.id, upcoming_slot(hour=21), customer_id=CUSTOMER_ID)
    assert response.status_code == 201
    data = response.json()
    assert data["customer_id"] == CUSTOMER_ID
    assert data["funding_source"] == "staff"


@pytest.mark.asyncio
async def test_customer_cannot_book_on_behalf(
    client: AsyncClient, other_customer, customer_headers, session_type, weekly_templates
):
    response = await _book(client, customer_headers, session_type.id, upcoming_slot(), customer_id=OTHER_CUSTOMER_ID)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_customer_cancel_inside_notice_window_rejected(
    client: AsyncClient, db_session, customer_headers, session_type
):
    booking = await add_booking(
        db_session, CUSTOMER_ID, session_type, datetime.now(timezone.utc) + timedelta(hours=5)
    )
    response = await client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=customer_headers)
    assert response.status_code == 400
    assert "24 hours" in response.json()["detail"]


@pytest.mark.asyncio
async def test_staff_cancels_thirty_minutes_before_start(
    client: AsyncClient, db_session, customer, staff_headers, session_type
):
    booking = await add_booking(
        db_session, CUSTOMER_ID, session_type, datetime.now(timezone.utc) + timedelta(minutes=30)
    )
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/cancel",
        json={"reason": "Coach unavailable"},
        headers=staff_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_twice_is_invalid_transition(
    client: AsyncClient, db_session, customer_headers, session_type
):
    booking = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot(days_ahead=5))
    first = await client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=customer_headers)
    second = await client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=customer_headers)
    assert first.status_code == 200
    assert second.status_code == 409


@pytest.mark.asyncio
async def test_customer_cannot_see_others_booking(
    client: AsyncClient, db_session, customer, other_customer_headers, session_type
):
    booking = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot())
    response = await client.get(f"/api/v1/bookings/{booking.id}", headers=other_customer_headers)
    assert response.status_code == 404
    response = await client.post(f"/api/v1/bookings/{booking.id}/cancel", headers=other_customer_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_bookings_scoped_to_caller(
    client: AsyncClient, db_session, customer_headers, other_customer, staff_headers, session_type
):
    await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot(hour=9))
    await add_booking(db_session, OTHER_CUSTOMER_ID, session_type, upcoming_slot(hour=11))
    cancelled = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot(hour=13), status="cancelled")

    mine = await client.get("/api/v1/bookings/", headers=customer_headers)
    assert {b["customer_id"] for b in mine.json()} == {CUSTOMER_ID}
    assert len(mine.json()) == 2

    everyone = await client.get("/api/v1/bookings/", headers=staff_headers)
    assert len(everyone.json()) == 3

    only_cancelled = await client.get("/api/v1/bookings/", params={"status": "cancelled"}, headers=staff_headers)
    assert [b["id"] for b in only_cancelled.json()] == [cancelled.id]


@pytest.mark.asyncio
async def test_record_attendance(
    client: AsyncClient, db_session, customer, customer_headers, staff_headers, session_type
):
    past = await add_booking(db_session, CUSTOMER_ID, session_type, datetime.now(timezone.utc) - timedelta(hours=2))
    future = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot())

    response = await client.post(f"/api/v1/bookings/{past.id}/complete", headers=customer_headers)
    assert response.status_code == 403

    response = await client.post(
        f"/api/v1/bookings/{past.id}/complete", json={"status": "no_show"}, headers=staff_headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "no_show"

    response = await client.post(f"/api/v1/bookings/{future.id}/complete", headers=staff_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_staff_reschedule_checks_capacity(
    client: AsyncClient, db_session, customer, other_customer, staff_headers, session_type
):
    booking = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot(hour=9))
    await add_booking(db_session, OTHER_CUSTOMER_ID, session_type, upcoming_slot(hour=11))

    response = await client.patch(
        f"/api/v1/bookings/{booking.id}",
        json={"start_time": upcoming_slot(hour=11).isoformat()},
        headers=staff_headers,
    )
    assert response.status_code == 409

    response = await client.patch(
        f"/api/v1/bookings/{booking.id}",
        json={"start_time": upcoming_slot(hour=13).isoformat()},
        headers=staff_headers,
    )
    assert response.status_code == 200
    assert datetime.fromisoformat(response.json()["start_time"]) == upcoming_slot(hour=13)
    assert response.json()["calendar_sync_status"] == "pending"


@pytest.mark.asyncio
async def test_customer_can_edit_notes_but_not_time(
    client: AsyncClient, db_session, customer_headers, session_type
):
    booking = await add_booking(db_session, CUSTOMER_ID, session_type, upcoming_slot())

    response = await client.patch(
        f"/api/v1/bookings/{booking.id}", json={"notes": "Bring resistance bands"}, headers=customer_headers
    )
    assert response.status_code == 200
    assert response.json()["notes"] == "Bring resistance bands"

    response = await client.patch(
        f"/api/v1/bookings/{booking.id}",
        json={"start_time": upcoming_slot(hour=15).isoformat()},
        headers=customer_headers,
    )
    assert response.status_code == 403
