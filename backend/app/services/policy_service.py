"""
Scheduling policy loader.

The scheduling_settings row is read once per operation and frozen into a
SchedulingPolicy value that is passed explicitly to the availability
resolver and the booking lifecycle. Nothing holds it as module state.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.availability import SchedulingSettings

DEFAULT_CANCELLATION_NOTICE_HOURS = 24
DEFAULT_BOOKING_WINDOW_DAYS = 30
DEFAULT_MIN_BOOKING_NOTICE_HOURS = 2
DEFAULT_TIMEZONE = "America/Los_Angeles"


@dataclass(frozen=True)
class SchedulingPolicy:
    cancellation_notice_hours: int = DEFAULT_CANCELLATION_NOTICE_HOURS
    booking_window_days: int = DEFAULT_BOOKING_WINDOW_DAYS
    min_booking_notice_hours: int = DEFAULT_MIN_BOOKING_NOTICE_HOURS
    timezone: str = DEFAULT_TIMEZONE

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def earliest_bookable(self, now: datetime) -> datetime:
        return now + timedelta(hours=self.min_booking_notice_hours)

    def latest_bookable(self, now: datetime) -> datetime:
        return now + timedelta(days=self.booking_window_days)

    def local_date(self, instant: datetime) -> date:
        return instant.astimezone(self.tz).date()

    def at_local(self, day: date, wall_time: time) -> datetime:
        """Wall-clock time on `day` in the business timezone."""
        return datetime.combine(day, wall_time, tzinfo=self.tz)

    def week_bounds(self, instant: datetime) -> tuple[datetime, datetime]:
        """
        Policy week containing `instant`: Sunday 00:00 to the next Sunday
        00:00, business timezone.
        """
        local_day = self.local_date(instant)
        days_since_sunday = (local_day.weekday() + 1) % 7
        week_start_day = local_day - timedelta(days=days_since_sunday)
        start = self.at_local(week_start_day, time.min)
        end = self.at_local(week_start_day + timedelta(days=7), time.min)
        return start, end


def policy_from_row(row: SchedulingSettings) -> SchedulingPolicy:
    return SchedulingPolicy(
        cancellation_notice_hours=row.cancellation_notice_hours,
        booking_window_days=row.booking_window_days,
        min_booking_notice_hours=row.min_booking_notice_hours,
        timezone=row.timezone,
    )


async def load_policy(db: AsyncSession) -> SchedulingPolicy:
    result = await db.execute(select(SchedulingSettings).order_by(SchedulingSettings.id).limit(1))
    row = result.scalar_one_or_none()
    if row is None:
        return SchedulingPolicy()
    return policy_from_row(row)
