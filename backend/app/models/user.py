"""
User record mirrored from the identity provider.

Only what the scheduling core needs: a stable id, a display name for
calendar events and the role the provider asserted.
"""

from sqlalchemy import Column, Integer, String, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=True)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="customer")

    # Relationships
    bookings = relationship("Booking", back_populates="customer", foreign_keys="Booking.customer_id")

    __table_args__ = (
        CheckConstraint("role IN ('customer', 'staff')", name="check_user_role"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
