"""
Session type: what is being booked and how many people fit in one slot.

Key design decisions:
- `capacity` is the concurrent-occupant limit for one [start, end) slot
- `version` is the optimistic-lock token for the slot check-and-insert;
  every booking insert or reschedule for this type bumps it
- Only price/description/active may change once a booking references it
"""

from sqlalchemy import Boolean, Column, Integer, String, CheckConstraint

from app.db.base import Base, TimestampMixin

ALLOWED_DURATIONS = (30, 45, 60, 90)


class SessionType(Base, TimestampMixin):
    __tablename__ = "session_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(String(1000), nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    capacity = Column(Integer, nullable=False, default=1)
    price_cents = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("capacity >= 1", name="check_session_type_capacity_positive"),
        CheckConstraint("price_cents >= 0", name="check_session_type_price_non_negative"),
        CheckConstraint("duration_minutes IN (30, 45, 60, 90)", name="check_session_type_duration"),
    )

    def __repr__(self) -> str:
        return f"<SessionType(id={self.id}, name={self.name}, capacity={self.capacity})>"
