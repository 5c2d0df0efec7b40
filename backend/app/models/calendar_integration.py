"""
External calendar connection. One row per provider; tokens are encrypted.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

from app.db.base import Base, TimestampMixin, UTCDateTime


class CalendarIntegration(Base, TimestampMixin):
    __tablename__ = "calendar_integrations"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False, unique=True, default="google_calendar")

    # OAuth tokens (encrypted)
    encrypted_access_token = Column(Text, nullable=True)
    encrypted_refresh_token = Column(Text, nullable=False)
    token_expires_at = Column(UTCDateTime(), nullable=True)

    account_email = Column(String(255), nullable=True)
    calendar_id = Column(String(500), nullable=False, default="primary")
    is_active = Column(Boolean, nullable=False, default=True)

    last_sync_at = Column(UTCDateTime(), nullable=True)
    last_error = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<CalendarIntegration(provider={self.provider}, calendar={self.calendar_id})>"
