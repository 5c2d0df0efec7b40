"""
Slot capacity checks.

A booking occupies capacity when its status is pending or confirmed and its
[start, end) interval overlaps the candidate. Intervals are half-open, so
back-to-back bookings do not conflict.

The counts here are advisory on their own. booking_service pairs them with
the session type version claim so check-and-insert is one atomic unit.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.booking import Booking, OCCUPYING_STATUSES


@dataclass(frozen=True)
class CapacityResult:
    has_room: bool
    occupied: int
    capacity: int


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def count_overlapping(
    intervals: Iterable[tuple[datetime, datetime]],
    start: datetime,
    end: datetime,
) -> int:
    return sum(1 for s, e in intervals if overlaps(s, e, start, end))


def evaluate(occupied: int, capacity: int) -> CapacityResult:
    return CapacityResult(has_room=occupied < capacity, occupied=occupied, capacity=capacity)


async def count_occupying(
    db: AsyncSession,
    session_type_id: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> int:
    """Occupying bookings of this session type overlapping [start, end)."""
    query = select(func.count(Booking.id)).where(
        Booking.session_type_id == session_type_id,
        Booking.status.in_(OCCUPYING_STATUSES),
        Booking.start_time < end,
        Booking.end_time > start,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    return (await db.execute(query)).scalar_one()


async def check_capacity(
    db: AsyncSession,
    session_type_id: int,
    capacity: int,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> CapacityResult:
    occupied = await count_occupying(db, session_type_id, start, end, exclude_booking_id)
    return evaluate(occupied, capacity)


async def occupying_intervals(
    db: AsyncSession,
    session_type_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list[tuple[datetime, datetime]]:
    """All occupying intervals of a session type that touch a listing range."""
    result = await db.execute(
        select(Booking.start_time, Booking.end_time).where(
            Booking.session_type_id == session_type_id,
            Booking.status.in_(OCCUPYING_STATUSES),
            Booking.start_time < range_end,
            Booking.end_time > range_start,
        )
    )
    return [(row.start_time, row.end_time) for row in result.all()]
