"""
Booking model: one customer's reservation of a session-type slot.

Key design decisions:
- Never hard-deleted; cancellation is a status transition
- end_time is derived from the session type duration at creation
- funding_source records which resource paid for the booking so a
  cancellation knows whether there is a credit to restore
- Calendar mirror state lives on the row; the booking stays authoritative
"""

from sqlalchemy import Column, Integer, String, Text, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin, UTCDateTime

BOOKING_STATUSES = ("pending", "confirmed", "completed", "no_show", "cancelled")
# Statuses that occupy slot capacity
OCCUPYING_STATUSES = ("pending", "confirmed")

FUNDING_SOURCES = ("subscription", "credit", "staff")

SYNC_STATUSES = ("pending", "synced", "failed", "not_applicable")


def _one_of(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{value}'" for value in values) + ")"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    athlete_id = Column(Integer, nullable=True)
    session_type_id = Column(Integer, ForeignKey("session_types.id"), nullable=False, index=True)
    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    notes = Column(Text, nullable=True)

    # Which resource paid for this booking
    funding_source = Column(String(20), nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    credit_id = Column(Integer, ForeignKey("session_credits.id"), nullable=True)

    # Cancellation metadata
    cancelled_at = Column(UTCDateTime(), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # External calendar mirror
    calendar_event_id = Column(String(255), nullable=True)
    calendar_sync_status = Column(String(20), nullable=False, default="pending")
    calendar_sync_error = Column(Text, nullable=True)

    # Relationships
    customer = relationship("User", back_populates="bookings", foreign_keys=[customer_id])
    session_type = relationship("SessionType", lazy="selectin")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="check_booking_interval"),
        CheckConstraint(_one_of("status", BOOKING_STATUSES), name="check_booking_status"),
        CheckConstraint(_one_of("funding_source", FUNDING_SOURCES), name="check_booking_funding_source"),
        CheckConstraint(_one_of("calendar_sync_status", SYNC_STATUSES), name="check_booking_sync_status"),
        # Capacity check: overlapping occupying bookings for one session type
        Index("ix_bookings_type_start_end", "session_type_id", "start_time", "end_time"),
        # Weekly quota count per customer
        Index("ix_bookings_customer_start", "customer_id", "start_time"),
    )

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, customer={self.customer_id}, start={self.start_time}, status={self.status})>"
