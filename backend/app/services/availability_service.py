"""
Availability resolver and availability management.

RESOLUTION
==========

Open windows come from the weekly templates for each calendar day, minus
date-specific exceptions:

  - an is_available=false exception without a start time blocks the day
  - an is_available=false exception with a start time blocks that slot only
  - an is_available=true exception with start and end adds a window

Slots are cut from each window at the session duration and must fit in the
window entirely. Only starts inside
[now + min booking notice, now + booking window] are produced.

SlotSequence is lazy and restartable: every iteration regenerates from the
inputs, nothing is cached between passes. It is bounded by the booking
window, so iteration always terminates.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BookingValidationError, NotFoundError
from app.core.logging import get_logger
from app.models.availability import AvailabilityException, AvailabilityTemplate, SchedulingSettings
from app.services import capacity_service
from app.services.policy_service import SchedulingPolicy, policy_from_row

logger = get_logger(__name__)

DEFAULT_SLOT_MINUTES = 60


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class SlotAvailability:
    start: datetime
    end: datetime
    available: bool
    booking_count: int
    capacity: int


def day_of_week(day: date) -> int:
    """0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


class SlotSequence:
    def __init__(
        self,
        start_date: date,
        end_date: date,
        templates: Sequence,
        exceptions: Sequence,
        policy: SchedulingPolicy,
        now: datetime,
        duration_minutes: int = DEFAULT_SLOT_MINUTES,
    ):
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        self.start_date = start_date
        self.end_date = end_date
        self.templates = [t for t in templates if getattr(t, "is_active", True)]
        self.exceptions = list(exceptions)
        self.policy = policy
        self.now = now
        self.duration = timedelta(minutes=duration_minutes)

    def __iter__(self) -> Iterator[Slot]:
        return self._generate()

    def _windows_for(self, day: date) -> list[tuple[time, time]]:
        dow = day_of_week(day)
        windows = [(t.start_time, t.end_time) for t in self.templates if t.day_of_week == dow]
        windows.extend(
            (e.start_time, e.end_time)
            for e in self.exceptions
            if e.exception_date == day and e.is_available and e.start_time and e.end_time
        )
        return sorted(windows)

    def _day_blocked(self, day: date) -> bool:
        return any(
            e.exception_date == day and not e.is_available and e.start_time is None
            for e in self.exceptions
        )

    def _blocked_slot_times(self, day: date) -> set[time]:
        return {
            e.start_time
            for e in self.exceptions
            if e.exception_date == day and not e.is_available and e.start_time is not None
        }

    def _generate(self) -> Iterator[Slot]:
        earliest = self.policy.earliest_bookable(self.now)
        latest = self.policy.latest_bookable(self.now)
        last_day = min(self.end_date, self.policy.local_date(latest))

        day = self.start_date
        while day <= last_day:
            if not self._day_blocked(day):
                blocked_times = self._blocked_slot_times(day)
                for window_start, window_end in self._windows_for(day):
                    slot_start = self.policy.at_local(day, window_start)
                    window_close = self.policy.at_local(day, window_end)
                    while slot_start + self.duration <= window_close:
                        slot_end = slot_start + self.duration
                        if slot_start.time() not in blocked_times:
                            utc_start = slot_start.astimezone(timezone.utc)
                            if earliest <= utc_start <= latest:
                                yield Slot(start=utc_start, end=slot_end.astimezone(timezone.utc))
                        slot_start = slot_end
            day += timedelta(days=1)


async def load_templates(db: AsyncSession) -> list[AvailabilityTemplate]:
    result = await db.execute(
        select(AvailabilityTemplate)
        .where(AvailabilityTemplate.is_active.is_(True))
        .order_by(AvailabilityTemplate.day_of_week, AvailabilityTemplate.start_time)
    )
    return list(result.scalars().all())


async def load_exceptions(db: AsyncSession, start_date: date, end_date: date) -> list[AvailabilityException]:
    result = await db.execute(
        select(AvailabilityException)
        .where(
            AvailabilityException.exception_date >= start_date,
            AvailabilityException.exception_date <= end_date,
        )
        .order_by(AvailabilityException.exception_date)
    )
    return list(result.scalars().all())


async def resolve_slots(
    db: AsyncSession,
    policy: SchedulingPolicy,
    start_date: date,
    end_date: date,
    now: datetime,
    duration_minutes: int = DEFAULT_SLOT_MINUTES,
) -> SlotSequence:
    templates = await load_templates(db)
    exceptions = await load_exceptions(db, start_date, end_date)
    return SlotSequence(start_date, end_date, templates, exceptions, policy, now, duration_minutes)


async def is_offered_slot(
    db: AsyncSession,
    policy: SchedulingPolicy,
    start: datetime,
    duration_minutes: int,
    now: datetime,
) -> bool:
    day = policy.local_date(start)
    slots = await resolve_slots(db, policy, day, day, now, duration_minutes)
    return any(slot.start == start for slot in slots)


async def list_slot_availability(
    db: AsyncSession,
    policy: SchedulingPolicy,
    start_date: date,
    end_date: date,
    now: datetime,
    session_type=None,
) -> list[SlotAvailability]:
    """Slots with their current occupancy, for the booking calendar."""
    duration = session_type.duration_minutes if session_type else DEFAULT_SLOT_MINUTES
    capacity = session_type.capacity if session_type else 1
    slots = list(await resolve_slots(db, policy, start_date, end_date, now, duration))
    if not slots:
        return []

    intervals: list[tuple[datetime, datetime]] = []
    if session_type is not None:
        intervals = await capacity_service.occupying_intervals(
            db, session_type.id, slots[0].start, slots[-1].end
        )

    listing = []
    for slot in slots:
        count = capacity_service.count_overlapping(intervals, slot.start, slot.end)
        listing.append(
            SlotAvailability(
                start=slot.start,
                end=slot.end,
                available=count < capacity,
                booking_count=count,
                capacity=capacity,
            )
        )
    return listing


# ---------------------------------------------------------------------------
# Management (staff)
# ---------------------------------------------------------------------------


async def create_template(db: AsyncSession, day: int, start_time: time, end_time: time) -> AvailabilityTemplate:
    if not 0 <= day <= 6:
        raise BookingValidationError("day_of_week must be between 0 and 6")
    if start_time >= end_time:
        raise BookingValidationError("start_time must be before end_time")

    result = await db.execute(
        select(AvailabilityTemplate).where(
            AvailabilityTemplate.day_of_week == day,
            AvailabilityTemplate.is_active.is_(True),
            AvailabilityTemplate.start_time < end_time,
            AvailabilityTemplate.end_time > start_time,
        )
    )
    if result.scalars().first():
        raise BookingValidationError("Template overlaps an existing window on this day")

    template = AvailabilityTemplate(day_of_week=day, start_time=start_time, end_time=end_time)
    db.add(template)
    await db.flush()
    await db.refresh(template)
    logger.info("availability_template_created", template_id=template.id, day_of_week=day)
    return template


async def delete_template(db: AsyncSession, template_id: int) -> None:
    template = await db.get(AvailabilityTemplate, template_id)
    if template is None:
        raise NotFoundError(f"Template {template_id} not found")
    await db.delete(template)
    await db.flush()
    logger.info("availability_template_deleted", template_id=template_id)


async def create_exception(
    db: AsyncSession,
    exception_date: date,
    is_available: bool,
    reason: Optional[str] = None,
    start_time: Optional[time] = None,
    end_time: Optional[time] = None,
) -> AvailabilityException:
    if end_time is not None and start_time is None:
        raise BookingValidationError("end_time requires start_time")
    if start_time is not None and end_time is not None and start_time >= end_time:
        raise BookingValidationError("start_time must be before end_time")
    if is_available and (start_time is None or end_time is None):
        raise BookingValidationError("An added window needs both start_time and end_time")

    exception = AvailabilityException(
        exception_date=exception_date,
        is_available=is_available,
        reason=reason,
        start_time=start_time,
        end_time=end_time,
    )
    db.add(exception)
    await db.flush()
    await db.refresh(exception)
    logger.info(
        "availability_exception_created",
        exception_id=exception.id,
        date=str(exception_date),
        is_available=is_available,
    )
    return exception


async def delete_exception(db: AsyncSession, exception_id: int) -> None:
    exception = await db.get(AvailabilityException, exception_id)
    if exception is None:
        raise NotFoundError(f"Exception {exception_id} not found")
    await db.delete(exception)
    await db.flush()


async def update_settings(db: AsyncSession, **changes) -> SchedulingPolicy:
    tz_name = changes.get("timezone")
    if tz_name is not None:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise BookingValidationError(f"Unknown timezone: {tz_name}")

    result = await db.execute(select(SchedulingSettings).order_by(SchedulingSettings.id).limit(1))
    row = result.scalar_one_or_none()
    if row is None:
        row = SchedulingSettings()
        db.add(row)

    for field, value in changes.items():
        if value is not None:
            setattr(row, field, value)

    await db.flush()
    await db.refresh(row)
    policy = policy_from_row(row)
    logger.info("scheduling_settings_updated", **{k: v for k, v in changes.items() if v is not None})
    return policy
