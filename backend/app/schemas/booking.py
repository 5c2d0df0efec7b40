"""
Pydantic schemas for booking-related request/response validation.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    session_type_id: int
    start_time: datetime
    notes: Optional[str] = Field(None, max_length=2000)
    athlete_id: Optional[int] = None
    customer_id: Optional[int] = None  # staff booking on behalf of a customer


class BookingUpdate(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
    restore_credit: Optional[bool] = None  # staff only


class BookingComplete(BaseModel):
    status: Literal["completed", "no_show"] = "completed"


class BookingResponse(BaseModel):
    id: int
    customer_id: int
    athlete_id: Optional[int]
    session_type_id: int
    start_time: datetime
    end_time: datetime
    status: str
    notes: Optional[str]
    funding_source: str
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    calendar_sync_status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingCancelResponse(BaseModel):
    message: str
    booking_id: int
    status: str
