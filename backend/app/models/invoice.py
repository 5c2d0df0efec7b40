"""
Invoice header. Line items and PDF rendering live elsewhere; the scheduling
core only needs to flip an invoice to paid when checkout completes.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint

from app.db.base import Base, TimestampMixin, UTCDateTime

INVOICE_STATUSES = ("draft", "sent", "paid", "void")


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="draft")
    paid_at = Column(UTCDateTime(), nullable=True)
    stripe_checkout_session_id = Column(String(255), nullable=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'sent', 'paid', 'void')", name="check_invoice_status"),
        CheckConstraint("amount_cents >= 0", name="check_invoice_amount_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, customer={self.customer_id}, status={self.status})>"
