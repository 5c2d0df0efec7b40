"""
Booking eligibility: which resource pays for a booking.

DECISION ORDER
==============

  1. Staff actor: granted unconditionally, nothing debited.
  2. Active subscription with unlimited quota: granted, nothing debited.
  3. Active subscription with a weekly quota: count the customer's
     non-cancelled, non-credit bookings starting in the slot's policy week.
     Under quota -> granted. Usage is a live count, not a stored counter, so
     cancelling a booking frees its quota slot with no extra bookkeeping.
  4. Quota exhausted or no subscription: if unexpired credit remains,
     granted via credit and one unit is taken from the oldest grant first.
  5. Otherwise denied, with `quota_exhausted` or `no_eligibility`.

CONCURRENCY
===========

resolve() only reads. consume() performs the debit and is where races are
settled:

  - quota: UPDATE subscriptions SET version = version + 1
           WHERE id = :id AND version = :seen
    Two bookings by the same customer that both counted Q-1 cannot both
    pass; the loser gets OptimisticConflict and the caller retries from a
    fresh read.
  - credit: UPDATE session_credits SET used_sessions = used_sessions + 1
            WHERE id = :id AND used_sessions < total_sessions
    Two bookings racing for the last unit: exactly one row update succeeds.

Both run inside the caller's booking transaction, so a debit never exists
without its booking row and vice versa.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.metrics import booking_funding, credits_restored, record_db_retry
from app.core.security import Actor
from app.models.booking import Booking
from app.models.session_credit import SessionCredit
from app.models.subscription import Subscription
from app.services.policy_service import SchedulingPolicy

logger = get_logger(__name__)

DENIED_NO_ELIGIBILITY = "no_eligibility"
DENIED_QUOTA_EXHAUSTED = "quota_exhausted"


class OptimisticConflict(Exception):
    """A guarded update lost a race; the whole attempt must be retried."""

    def __init__(self, resource: str):
        super().__init__(resource)
        self.resource = resource


@dataclass(frozen=True)
class GrantedViaSubscription:
    subscription_id: int
    version: int
    sessions_per_week: Optional[int]  # None = unlimited
    used_this_week: int


@dataclass(frozen=True)
class GrantedViaCredit:
    credits_available: int
    subscription_id: Optional[int] = None


@dataclass(frozen=True)
class GrantedUnconditionally:
    reason: str = "Staff override"


@dataclass(frozen=True)
class Denied:
    reason: str
    code: str


Eligibility = Union[GrantedViaSubscription, GrantedViaCredit, GrantedUnconditionally, Denied]


@dataclass(frozen=True)
class Funding:
    source: str  # subscription, credit, staff
    subscription_id: Optional[int] = None
    credit_id: Optional[int] = None


@dataclass(frozen=True)
class EligibilitySummary:
    """Read-only view for the eligibility preview endpoint."""

    decision: Eligibility
    tier: Optional[str]
    sessions_per_week: Optional[int]
    sessions_used_this_week: int
    credits_available: int


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_active_subscription(db: AsyncSession, customer_id: int) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.customer_id == customer_id,
            Subscription.status == "active",
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


def _unexpired(now: datetime):
    return or_(SessionCredit.expires_at.is_(None), SessionCredit.expires_at > now)


async def available_credits(db: AsyncSession, customer_id: int, now: datetime) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(SessionCredit.total_sessions - SessionCredit.used_sessions), 0)).where(
            SessionCredit.customer_id == customer_id,
            SessionCredit.used_sessions < SessionCredit.total_sessions,
            _unexpired(now),
        )
    )
    return int(result.scalar_one())


async def list_credit_grants(db: AsyncSession, customer_id: int, now: datetime) -> list[SessionCredit]:
    result = await db.execute(
        select(SessionCredit)
        .where(SessionCredit.customer_id == customer_id, _unexpired(now))
        .order_by(SessionCredit.purchased_at.asc(), SessionCredit.id.asc())
    )
    return list(result.scalars().all())


async def count_quota_usage(
    db: AsyncSession,
    customer_id: int,
    week_start: datetime,
    week_end: datetime,
    exclude_booking_id: Optional[int] = None,
) -> int:
    """Non-cancelled bookings starting in the week, whatever paid for them."""
    query = select(func.count(Booking.id)).where(
        Booking.customer_id == customer_id,
        Booking.status != "cancelled",
        Booking.start_time >= week_start,
        Booking.start_time < week_end,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    return (await db.execute(query)).scalar_one()


async def resolve(
    db: AsyncSession,
    actor: Actor,
    customer_id: int,
    slot_start: datetime,
    policy: SchedulingPolicy,
    now: datetime,
) -> Eligibility:
    if actor.is_staff:
        return GrantedUnconditionally()

    subscription = await get_active_subscription(db, customer_id)

    if subscription is not None:
        week_start, week_end = policy.week_bounds(slot_start)
        used = await count_quota_usage(db, customer_id, week_start, week_end)

        if subscription.is_unlimited or used < subscription.sessions_per_week:
            return GrantedViaSubscription(
                subscription_id=subscription.id,
                version=subscription.version,
                sessions_per_week=subscription.sessions_per_week,
                used_this_week=used,
            )

    credits = await available_credits(db, customer_id, now)
    if credits > 0:
        return GrantedViaCredit(
            credits_available=credits,
            subscription_id=subscription.id if subscription is not None else None,
        )

    if subscription is not None:
        return Denied(
            reason=(
                f"You've used all {subscription.sessions_per_week} sessions this week. "
                "Purchase additional credits or wait until next week."
            ),
            code=DENIED_QUOTA_EXHAUSTED,
        )
    return Denied(
        reason="You need an active subscription or session credits to book.",
        code=DENIED_NO_ELIGIBILITY,
    )


async def summarize(
    db: AsyncSession,
    actor: Actor,
    customer_id: int,
    at: datetime,
    policy: SchedulingPolicy,
    now: datetime,
) -> EligibilitySummary:
    decision = await resolve(db, actor, customer_id, at, policy, now)
    subscription = await get_active_subscription(db, customer_id)
    week_start, week_end = policy.week_bounds(at)
    used = await count_quota_usage(db, customer_id, week_start, week_end)
    credits = await available_credits(db, customer_id, now)
    return EligibilitySummary(
        decision=decision,
        tier=subscription.tier if subscription else None,
        sessions_per_week=subscription.sessions_per_week if subscription else None,
        sessions_used_this_week=used,
        credits_available=credits,
    )


# ---------------------------------------------------------------------------
# Debits
# ---------------------------------------------------------------------------


async def claim_subscription_quota(db: AsyncSession, subscription_id: int, seen_version: int) -> bool:
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription_id, Subscription.version == seen_version)
        .values(version=Subscription.version + 1)
    )
    return result.rowcount == 1


async def debit_credit(db: AsyncSession, customer_id: int, now: datetime) -> Optional[int]:
    """
    Take one unit from the oldest unexpired grant with room.
    Returns the grant id, or None if every candidate was drained first.
    """
    result = await db.execute(
        select(SessionCredit.id)
        .where(
            SessionCredit.customer_id == customer_id,
            SessionCredit.used_sessions < SessionCredit.total_sessions,
            _unexpired(now),
        )
        .order_by(SessionCredit.purchased_at.asc(), SessionCredit.id.asc())
    )
    for credit_id in result.scalars().all():
        debited = await db.execute(
            update(SessionCredit)
            .where(
                SessionCredit.id == credit_id,
                SessionCredit.used_sessions < SessionCredit.total_sessions,
            )
            .values(used_sessions=SessionCredit.used_sessions + 1)
        )
        if debited.rowcount == 1:
            return credit_id
    return None


async def restore_credit(db: AsyncSession, credit_id: int) -> bool:
    result = await db.execute(
        update(SessionCredit)
        .where(SessionCredit.id == credit_id, SessionCredit.used_sessions > 0)
        .values(used_sessions=SessionCredit.used_sessions - 1)
    )
    restored = result.rowcount == 1
    if restored:
        credits_restored.inc()
    return restored


async def consume(
    db: AsyncSession,
    decision: Eligibility,
    customer_id: int,
    now: datetime,
) -> Funding:
    """
    Debit the resource chosen by resolve(). Raises OptimisticConflict when a
    concurrent booking got there first; the caller rolls back and retries.
    """
    match decision:
        case GrantedUnconditionally():
            funding = Funding(source="staff")
        case GrantedViaSubscription(sessions_per_week=None):
            funding = Funding(source="subscription", subscription_id=decision.subscription_id)
        case GrantedViaSubscription():
            if not await claim_subscription_quota(db, decision.subscription_id, decision.version):
                record_db_retry("subscription")
                raise OptimisticConflict("subscription")
            funding = Funding(source="subscription", subscription_id=decision.subscription_id)
        case GrantedViaCredit():
            credit_id = await debit_credit(db, customer_id, now)
            if credit_id is None:
                record_db_retry("credit")
                raise OptimisticConflict("credit")
            funding = Funding(source="credit", credit_id=credit_id)
        case Denied():
            raise ValueError("Cannot consume a denied eligibility decision")
        case _:
            raise TypeError(f"Unknown eligibility decision: {decision!r}")

    booking_funding.labels(source=funding.source).inc()
    logger.info(
        "eligibility_consumed",
        customer_id=customer_id,
        source=funding.source,
        subscription_id=funding.subscription_id,
        credit_id=funding.credit_id,
    )
    return funding
