"""
Pydantic schemas for the eligibility preview and credit summary.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class EligibilityResponse(BaseModel):
    can_book: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    funding_source: Optional[str] = None
    tier: Optional[str] = None
    sessions_per_week: Optional[int] = None
    unlimited: bool = False
    sessions_used_this_week: int = 0
    credits_available: int = 0


class CreditGrantResponse(BaseModel):
    id: int
    total_sessions: int
    used_sessions: int
    available: int
    product_type: Optional[str]
    purchased_at: datetime
    expires_at: Optional[datetime]

    model_config = {"from_attributes": True}


class CreditSummaryResponse(BaseModel):
    total_available: int
    grants: list[CreditGrantResponse]
