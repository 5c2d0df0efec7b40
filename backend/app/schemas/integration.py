"""
Pydantic schemas for the calendar integration endpoints.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class AuthorizationUrlResponse(BaseModel):
    url: str


class CalendarStatusResponse(BaseModel):
    configured: bool
    connected: bool
    account_email: Optional[str] = None
    calendar_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ResyncError(BaseModel):
    booking_id: int
    error: Optional[str]


class ResyncResponse(BaseModel):
    synced: int
    failed: int
    errors: list[ResyncError]
