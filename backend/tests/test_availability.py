"""
Tests for the availability resolver and the slot listing endpoint.
"""

from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace

import pytest
from httpx import AsyncClient

from app.services.availability_service import SlotSequence, day_of_week
from app.services.policy_service import SchedulingPolicy

from conftest import CUSTOMER_ID, add_booking, upcoming_slot

UTC_POLICY = SchedulingPolicy(timezone="UTC")
# Wednesday
NOW = datetime(2026, 3, 4, 6, 0, tzinfo=timezone.utc)


def template(day: int, start: time, end: time, is_active: bool = True):
    return SimpleNamespace(day_of_week=day, start_time=start, end_time=end, is_active=is_active)


def exception(on: date, is_available: bool = False, start: time = None, end: time = None):
    return SimpleNamespace(exception_date=on, is_available=is_available, start_time=start, end_time=end)


def starts(sequence) -> list[datetime]:
    return [slot.start for slot in sequence]


def test_day_of_week_starts_on_sunday():
    assert day_of_week(date(2026, 3, 1)) == 0  # Sunday
    assert day_of_week(date(2026, 3, 4)) == 3  # Wednesday
    assert day_of_week(date(2026, 3, 7)) == 6  # Saturday


def test_slots_cut_at_duration_and_fit_window():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(thursday, thursday, [template(4, time(9, 0), time(11, 30))], [], UTC_POLICY, NOW, 60)
    assert starts(sequence) == [
        datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc),
        datetime(2026, 3, 5, 10, 0, tzinfo=timezone.utc),
    ]
    assert all(slot.end - slot.start == timedelta(minutes=60) for slot in sequence)


def test_thirty_minute_slots():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(thursday, thursday, [template(4, time(9, 0), time(10, 30))], [], UTC_POLICY, NOW, 30)
    assert len(list(sequence)) == 3


def test_whole_day_block_removes_every_slot():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(
        thursday,
        thursday,
        [template(4, time(9, 0), time(17, 0))],
        [exception(thursday)],
        UTC_POLICY,
        NOW,
    )
    assert list(sequence) == []


def test_time_specific_block_removes_one_slot():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(
        thursday,
        thursday,
        [template(4, time(9, 0), time(12, 0))],
        [exception(thursday, start=time(10, 0))],
        UTC_POLICY,
        NOW,
    )
    assert [s.hour for s in starts(sequence)] == [9, 11]


def test_available_exception_adds_window():
    saturday = date(2026, 3, 7)
    sequence = SlotSequence(
        saturday,
        saturday,
        [],
        [exception(saturday, is_available=True, start=time(14, 0), end=time(16, 0))],
        UTC_POLICY,
        NOW,
    )
    assert [s.hour for s in starts(sequence)] == [14, 15]


def test_inactive_templates_ignored():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(
        thursday, thursday, [template(4, time(9, 0), time(12, 0), is_active=False)], [], UTC_POLICY, NOW
    )
    assert list(sequence) == []


def test_min_notice_and_window_bound_the_sequence():
    policy = SchedulingPolicy(timezone="UTC", min_booking_notice_hours=2, booking_window_days=2)
    every_day = [template(day, time(6, 0), time(12, 0)) for day in range(7)]
    sequence = SlotSequence(date(2026, 3, 1), date(2026, 3, 31), every_day, [], policy, NOW)
    slots = starts(sequence)
    assert slots[0] == datetime(2026, 3, 4, 8, 0, tzinfo=timezone.utc)  # now + 2h
    assert slots[-1] == datetime(2026, 3, 6, 6, 0, tzinfo=timezone.utc)  # now + 2 days
    assert all(NOW + timedelta(hours=2) <= s <= NOW + timedelta(days=2) for s in slots)


def test_sequence_is_restartable():
    thursday = date(2026, 3, 5)
    sequence = SlotSequence(thursday, thursday, [template(4, time(9, 0), time(12, 0))], [], UTC_POLICY, NOW)
    assert starts(sequence) == starts(sequence)


def test_local_timezone_slots_are_returned_in_utc():
    policy = SchedulingPolicy(timezone="America/Los_Angeles")
    thursday = date(2026, 3, 5)  # PST, UTC-8
    sequence = SlotSequence(thursday, thursday, [template(4, time(9, 0), time(10, 0))], [], policy, NOW)
    assert starts(sequence) == [datetime(2026, 3, 5, 17, 0, tzinfo=timezone.utc)]


def test_week_bounds_start_sunday_local():
    policy = SchedulingPolicy(timezone="America/Los_Angeles")
    # Sunday 2026-03-08 03:00 UTC is still Saturday evening in Los Angeles
    start, end = policy.week_bounds(datetime(2026, 3, 8, 3, 0, tzinfo=timezone.utc))
    assert start.date() == date(2026, 3, 1)
    assert end.date() == date(2026, 3, 8)
    assert (start.hour, start.minute) == (0, 0)


def test_non_positive_duration_rejected():
    with pytest.raises(ValueError):
        SlotSequence(date(2026, 3, 5), date(2026, 3, 5), [], [], UTC_POLICY, NOW, 0)


@pytest.mark.asyncio
async def test_slot_listing_reports_occupancy(
    client: AsyncClient, db_session, customer_headers, group_session_type, weekly_templates
):
    slot = upcoming_slot(days_ahead=3, hour=10)
    await add_booking(db_session, CUSTOMER_ID, group_session_type, slot)
    await add_booking(db_session, CUSTOMER_ID, group_session_type, slot, status="cancelled")

    day = SchedulingPolicy().local_date(slot)
    response = await client.get(
        "/api/v1/availability/slots",
        params={"start_date": str(day), "end_date": str(day), "session_type_id": group_session_type.id},
        headers=customer_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["timezone"] == "America/Los_Angeles"
    assert len(data["slots"]) == 10  # 08:00-18:00

    by_start = {datetime.fromisoformat(s["start"]): s for s in data["slots"]}
    assert by_start[slot]["booking_count"] == 1
    assert by_start[slot]["capacity"] == 3
    assert by_start[slot]["available"] is True


@pytest.mark.asyncio
async def test_slot_listing_rejects_inverted_range(client: AsyncClient, customer_headers):
    response = await client.get(
        "/api/v1/availability/slots",
        params={"start_date": "2026-03-10", "end_date": "2026-03-01"},
        headers=customer_headers,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_staff_manages_templates_and_exceptions(
    client: AsyncClient, customer_headers, staff_headers
):
    response = await client.post(
        "/api/v1/availability/templates",
        json={"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"},
        headers=customer_headers,
    )
    assert response.status_code == 403

    response = await client.post(
        "/api/v1/availability/templates",
        json={"day_of_week": 1, "start_time": "09:00", "end_time": "12:00"},
        headers=staff_headers,
    )
    assert response.status_code == 201
    template_id = response.json()["id"]

    overlapping = await client.post(
        "/api/v1/availability/templates",
        json={"day_of_week": 1, "start_time": "11:00", "end_time": "13:00"},
        headers=staff_headers,
    )
    assert overlapping.status_code == 400

    blocked = await client.post(
        "/api/v1/availability/exceptions",
        json={"exception_date": "2026-12-25", "is_available": False, "reason": "Holiday"},
        headers=staff_headers,
    )
    assert blocked.status_code == 201
    assert blocked.json()["start_time"] is None

    bad_window = await client.post(
        "/api/v1/availability/exceptions",
        json={"exception_date": "2026-12-26", "is_available": True},
        headers=staff_headers,
    )
    assert bad_window.status_code == 400

    response = await client.delete(f"/api/v1/availability/templates/{template_id}", headers=staff_headers)
    assert response.status_code == 204
    response = await client.get("/api/v1/availability/templates", headers=staff_headers)
    assert response.json() == []


@pytest.mark.asyncio
async def test_settings_update(client: AsyncClient, customer_headers, staff_headers):
    response = await client.get("/api/v1/availability/settings", headers=customer_headers)
    assert response.json() == {
        "cancellation_notice_hours": 24,
        "booking_window_days": 30,
        "min_booking_notice_hours": 2,
        "timezone": "America/Los_Angeles",
    }

    response = await client.put(
        "/api/v1/availability/settings",
        json={"cancellation_notice_hours": 48, "timezone": "America/New_York"},
        headers=staff_headers,
    )
    assert response.status_code == 200
    assert response.json()["cancellation_notice_hours"] == 48
    assert response.json()["booking_window_days"] == 30
    assert response.json()["timezone"] == "America/New_York"

    response = await client.put(
        "/api/v1/availability/settings", json={"timezone": "Mars/Olympus"}, headers=staff_headers
    )
    assert response.status_code == 400
