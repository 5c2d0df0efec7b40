"""
Ledger of payment processor events already applied.

A redelivered event id is acknowledged without touching subscription or
credit state a second time.
"""

from sqlalchemy import Column, Integer, String

from app.db.base import Base, TimestampMixin, UTCDateTime


class PaymentEvent(Base, TimestampMixin):
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_created_at = Column(UTCDateTime(), nullable=True)
    outcome = Column(String(20), nullable=False)

    def __repr__(self) -> str:
        return f"<PaymentEvent(event_id={self.event_id}, type={self.event_type}, outcome={self.outcome})>"
