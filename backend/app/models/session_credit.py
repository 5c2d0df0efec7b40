"""
Prepaid session credit grant (a "pack").

Key design decisions:
- Available units are max(0, total - used), summed over unexpired grants
- used_sessions only moves through a conditional UPDATE guarded by
  used_sessions < total_sessions, and the CHECK constraint backs it up
- stripe_checkout_session_id is unique so a redelivered checkout event
  cannot grant the same pack twice
"""

from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint, Index

from app.db.base import Base, TimestampMixin, UTCDateTime, utcnow


class SessionCredit(Base, TimestampMixin):
    __tablename__ = "session_credits"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_sessions = Column(Integer, nullable=False)
    used_sessions = Column(Integer, nullable=False, default=0)
    expires_at = Column(UTCDateTime(), nullable=True)
    purchased_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    product_type = Column(String(50), nullable=True)
    price_cents = Column(Integer, nullable=True)

    stripe_checkout_session_id = Column(String(255), unique=True, nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("total_sessions > 0", name="check_credit_total_positive"),
        CheckConstraint("used_sessions >= 0", name="check_credit_used_non_negative"),
        CheckConstraint("used_sessions <= total_sessions", name="check_credit_used_lte_total"),
        # FIFO consumption order per customer
        Index("ix_session_credits_customer_purchased", "customer_id", "purchased_at"),
    )

    @property
    def available(self) -> int:
        return max(0, self.total_sessions - self.used_sessions)

    def __repr__(self) -> str:
        return f"<SessionCredit(id={self.id}, customer={self.customer_id}, used={self.used_sessions}/{self.total_sessions})>"
