"""
Pydantic schemas for session types.
"""

from typing import Optional
from pydantic import BaseModel, Field


class SessionTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    duration_minutes: int
    capacity: int = Field(default=1, ge=1, le=100)
    price_cents: int = Field(default=0, ge=0)


class SessionTypeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    duration_minutes: Optional[int] = None
    capacity: Optional[int] = Field(None, ge=1, le=100)
    price_cents: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class SessionTypeResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    duration_minutes: int
    capacity: int
    price_cents: int
    is_active: bool

    model_config = {"from_attributes": True}
