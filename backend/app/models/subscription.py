"""
Locally cached subscription state, mirrored from the payment processor.

Key design decisions:
- Rows are keyed by the stable stripe_subscription_id so webhook redelivery
  upserts instead of inserting twice
- sessions_per_week NULL means unlimited
- At most one active/past_due row per customer (partial unique index)
- `version` is bumped by every quota-funded booking so concurrent bookings
  by the same customer cannot both take the last weekly slot
- `last_event_at` holds the processor timestamp of the last applied event;
  older events are ignored when they arrive late
"""

from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, CheckConstraint, Index, text

from app.db.base import Base, TimestampMixin, UTCDateTime

SUBSCRIPTION_STATUSES = ("active", "past_due", "cancelled", "paused")
LIVE_SUBSCRIPTION_STATUSES = ("active", "past_due")


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    tier = Column(String(50), nullable=True)
    sessions_per_week = Column(Integer, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(UTCDateTime(), nullable=True)

    stripe_subscription_id = Column(String(255), unique=True, nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    last_event_at = Column(UTCDateTime(), nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'past_due', 'cancelled', 'paused')",
            name="check_subscription_status",
        ),
        CheckConstraint(
            "sessions_per_week IS NULL OR sessions_per_week >= 0",
            name="check_subscription_quota_non_negative",
        ),
        Index(
            "uq_subscriptions_one_live_per_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'past_due')"),
            sqlite_where=text("status IN ('active', 'past_due')"),
        ),
    )

    @property
    def is_unlimited(self) -> bool:
        return self.sessions_per_week is None

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, customer={self.customer_id}, tier={self.tier}, status={self.status})>"
