"""
Eligibility preview and credit summary.

These endpoints only read. The booking endpoint re-resolves eligibility
inside its own transaction, so a preview can be stale by the time the
customer books.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.eligibility import CreditGrantResponse, CreditSummaryResponse, EligibilityResponse
from app.services import eligibility_service
from app.services.eligibility_service import (
    Denied,
    GrantedUnconditionally,
    GrantedViaCredit,
    GrantedViaSubscription,
)
from app.services.policy_service import load_policy
from app.services.user_service import get_user
from app.core.exceptions import ForbiddenError
from app.core.security import Actor, get_current_actor

router = APIRouter(tags=["Eligibility"])


def _resolve_customer(actor: Actor, customer_id: Optional[int]) -> int:
    if customer_id is None or customer_id == actor.id:
        return actor.id
    if not actor.is_staff:
        raise ForbiddenError("Only staff can view another customer's eligibility")
    return customer_id


@router.get("/booking-eligibility", response_model=EligibilityResponse)
async def booking_eligibility(
    at: Optional[datetime] = Query(None, description="Slot start; defaults to now"),
    customer_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Can the customer book a slot at `at`, and which resource would pay."""
    now = datetime.now(timezone.utc)
    target = _resolve_customer(actor, customer_id)
    if target != actor.id:
        await get_user(db, target)

    policy = await load_policy(db)
    summary = await eligibility_service.summarize(db, actor, target, at or now, policy, now)

    response = EligibilityResponse(
        can_book=not isinstance(summary.decision, Denied),
        tier=summary.tier,
        sessions_per_week=summary.sessions_per_week,
        unlimited=summary.tier is not None and summary.sessions_per_week is None,
        sessions_used_this_week=summary.sessions_used_this_week,
        credits_available=summary.credits_available,
    )
    match summary.decision:
        case Denied(reason=reason, code=code):
            response.reason, response.code = reason, code
        case GrantedViaSubscription():
            response.funding_source = "subscription"
        case GrantedViaCredit():
            response.funding_source = "credit"
        case GrantedUnconditionally(reason=reason):
            response.funding_source = "staff"
            response.reason = reason
    return response


@router.get("/session-credits", response_model=CreditSummaryResponse)
async def session_credits(
    customer_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Unexpired credit grants, oldest first (the order they are consumed in)."""
    now = datetime.now(timezone.utc)
    target = _resolve_customer(actor, customer_id)
    grants = await eligibility_service.list_credit_grants(db, target, now)
    return CreditSummaryResponse(
        total_available=sum(grant.available for grant in grants),
        grants=[CreditGrantResponse.model_validate(grant) for grant in grants],
    )
