"""
Pydantic schemas for availability slots and their management.
"""

from datetime import date, datetime, time
from typing import Optional
from pydantic import BaseModel, Field


class SlotResponse(BaseModel):
    start: datetime
    end: datetime
    available: bool
    booking_count: int
    capacity: int


class SlotListResponse(BaseModel):
    slots: list[SlotResponse]
    start_date: date
    end_date: date
    session_type_id: Optional[int] = None
    timezone: str
    cached: bool = False


class TemplateCreate(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time


class TemplateResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool

    model_config = {"from_attributes": True}


class ExceptionCreate(BaseModel):
    exception_date: date
    is_available: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = Field(None, max_length=500)


class ExceptionResponse(BaseModel):
    id: int
    exception_date: date
    is_available: bool
    start_time: Optional[time]
    end_time: Optional[time]
    reason: Optional[str]

    model_config = {"from_attributes": True}


class SettingsUpdate(BaseModel):
    cancellation_notice_hours: Optional[int] = Field(None, ge=0, le=720)
    booking_window_days: Optional[int] = Field(None, ge=1, le=365)
    min_booking_notice_hours: Optional[int] = Field(None, ge=0, le=168)
    timezone: Optional[str] = Field(None, max_length=64)


class SettingsResponse(BaseModel):
    cancellation_notice_hours: int
    booking_window_days: int
    min_booking_notice_hours: int
    timezone: str

    model_config = {"from_attributes": True}
