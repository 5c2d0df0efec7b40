"""
Availability models: recurring weekly templates, date-specific exceptions
and the scheduling settings singleton.
"""

from sqlalchemy import Boolean, Column, Date, Integer, String, Time, CheckConstraint, Index

from app.db.base import Base, TimestampMixin


class AvailabilityTemplate(Base, TimestampMixin):
    """Recurring weekly open window. day_of_week: 0=Sunday .. 6=Saturday."""

    __tablename__ = "availability_templates"

    id = Column(Integer, primary_key=True, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("day_of_week BETWEEN 0 AND 6", name="check_template_day_of_week"),
        CheckConstraint("start_time < end_time", name="check_template_window_order"),
        Index("ix_availability_templates_day", "day_of_week"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilityTemplate(day={self.day_of_week}, {self.start_time}-{self.end_time})>"


class AvailabilityException(Base, TimestampMixin):
    """
    Date-specific override. Without a start_time it covers the whole date;
    with one it covers only the slot starting at that time.
    """

    __tablename__ = "availability_exceptions"

    id = Column(Integer, primary_key=True, index=True)
    exception_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)
    is_available = Column(Boolean, nullable=False, default=False)
    reason = Column(String(500), nullable=True)

    __table_args__ = (
        Index("ix_availability_exceptions_date", "exception_date"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilityException(date={self.exception_date}, available={self.is_available})>"


class SchedulingSettings(Base, TimestampMixin):
    __tablename__ = "scheduling_settings"

    id = Column(Integer, primary_key=True)
    cancellation_notice_hours = Column(Integer, nullable=False, default=24)
    booking_window_days = Column(Integer, nullable=False, default=30)
    min_booking_notice_hours = Column(Integer, nullable=False, default=2)
    timezone = Column(String(64), nullable=False, default="America/Los_Angeles")

    __table_args__ = (
        CheckConstraint("cancellation_notice_hours >= 0", name="check_cancellation_notice_non_negative"),
        CheckConstraint("booking_window_days >= 1", name="check_booking_window_positive"),
        CheckConstraint("min_booking_notice_hours >= 0", name="check_min_notice_non_negative"),
    )
