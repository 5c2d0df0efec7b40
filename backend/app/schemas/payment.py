"""
Pydantic schemas for checkout and webhook acknowledgement.
"""

from typing import Optional
from pydantic import BaseModel


class CheckoutCreate(BaseModel):
    product: str  # subscription tier or session pack name
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: Optional[str]


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
