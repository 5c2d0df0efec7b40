"""
Payment event reconciler.

Applies the payment processor's webhook stream to local subscription,
credit and invoice rows.

DELIVERY GUARANTEES WE ASSUME
=============================

At-least-once, any order. So:

  1. Verify the signature before anything else. Unverified payloads never
     touch the database.
  2. Insert the event id into the payment_events ledger first. If it is
     already there, the event is a redelivery: acknowledge and stop.
     A concurrent duplicate loses on the unique index and is treated the
     same way.
  3. Every write is an upsert keyed by the processor's stable id
     (subscription id, checkout session id), never "insert another row".
  4. Subscription rows remember the processor timestamp of the last event
     applied to them. An event older than that arrived late and is
     ignored, so an out-of-order `updated` cannot undo a `deleted`.

If a handler raises, the transaction (ledger row included) rolls back and
the route answers 500, so the processor redelivers later.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import WebhookVerificationError
from app.core.logging import get_logger
from app.core.metrics import record_payment_event
from app.core.security import ROLE_CUSTOMER, Actor
from app.models.invoice import Invoice
from app.models.payment_event import PaymentEvent
from app.models.session_credit import SessionCredit
from app.models.subscription import LIVE_SUBSCRIPTION_STATUSES, Subscription
from app.services.payment_service import SUBSCRIPTION_TIERS, tier_for_price
from app.services.user_service import ensure_user

logger = get_logger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"

STRIPE_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "incomplete": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "canceled": "cancelled",
    "incomplete_expired": "cancelled",
    "paused": "paused",
}


def map_stripe_status(status: Optional[str]) -> str:
    return STRIPE_STATUS_MAP.get(status or "", "active")


def verify_event(payload: bytes, sig_header: Optional[str], secret: str, tolerance: int = 300) -> dict:
    """Check the signature header and return the parsed event."""
    if not sig_header:
        raise WebhookVerificationError("Missing signature")

    text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning("payment_webhook_signature_invalid", error=str(e))
        raise WebhookVerificationError()

    try:
        event = json.loads(text)
    except ValueError:
        raise WebhookVerificationError("Malformed payload")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Malformed payload")
    return event


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(obj: dict) -> dict:
    return obj.get("metadata") or {}


def _metadata_customer_id(obj: dict) -> Optional[int]:
    raw = _metadata(obj).get("customer_id") or obj.get("client_reference_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        logger.warning("payment_event_bad_customer_id", value=raw)
        return None


def _sessions_per_week(tier: Optional[str], current: Optional[int] = None, is_new: bool = True) -> Optional[int]:
    if tier in SUBSCRIPTION_TIERS:
        return SUBSCRIPTION_TIERS[tier].sessions_per_week
    if not is_new:
        return current
    # Unknown tier: no quota until a known tier arrives; credits still work
    logger.warning("subscription_tier_unknown", tier=tier)
    return 0


def _first_price_id(obj: dict) -> Optional[str]:
    items = (obj.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


async def _subscription_by_external_id(db: AsyncSession, stripe_subscription_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def _resolve_customer(db: AsyncSession, obj: dict) -> Optional[int]:
    customer_id = _metadata_customer_id(obj)
    if customer_id is not None:
        return customer_id

    stripe_customer_id = obj.get("customer")
    if stripe_customer_id:
        result = await db.execute(
            select(Subscription.customer_id)
            .where(Subscription.stripe_customer_id == stripe_customer_id)
            .limit(1)
        )
        return result.scalar_one_or_none()
    return None


async def _supersede_live_subscriptions(db: AsyncSession, customer_id: int, keep_id: Optional[int], now: datetime) -> None:
    """A customer has at most one active/past_due row; older ones are closed."""
    query = update(Subscription).where(
        Subscription.customer_id == customer_id,
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
    )
    if keep_id is not None:
        query = query.where(Subscription.id != keep_id)
    result = await db.execute(query.values(status="cancelled", cancelled_at=now, version=Subscription.version + 1))
    if result.rowcount:
        logger.info("subscriptions_superseded", customer_id=customer_id, count=result.rowcount)


def _is_stale(subscription: Subscription, event_at: Optional[datetime]) -> bool:
    return bool(subscription.last_event_at and event_at and event_at < subscription.last_event_at)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_checkout_completed(db: AsyncSession, obj: dict, event_at: datetime, now: datetime) -> str:
    metadata = _metadata(obj)
    purchase_type = metadata.get("type")
    customer_id = _metadata_customer_id(obj)

    if purchase_type == "invoice_payment" and metadata.get("invoice_id"):
        invoice = await db.get(Invoice, int(metadata["invoice_id"]))
        if invoice is None:
            logger.warning("checkout_invoice_missing", invoice_id=metadata["invoice_id"])
            return OUTCOME_IGNORED
        if invoice.status != "paid":
            invoice.status = "paid"
            invoice.paid_at = now
        invoice.stripe_checkout_session_id = obj.get("id")
        invoice.stripe_payment_intent_id = obj.get("payment_intent")
        logger.info("invoice_marked_paid", invoice_id=invoice.id)
        return OUTCOME_APPLIED

    if customer_id is None:
        logger.warning("checkout_without_customer", session_id=obj.get("id"))
        return OUTCOME_IGNORED

    if purchase_type == "session_pack":
        return await _grant_session_pack(db, obj, customer_id, now)

    if purchase_type == "subscription":
        stripe_subscription_id = obj.get("subscription")
        if not stripe_subscription_id:
            logger.warning("checkout_subscription_id_missing", session_id=obj.get("id"))
            return OUTCOME_IGNORED
        existing = await _subscription_by_external_id(db, stripe_subscription_id)
        if existing is not None:
            # The subscription events own the row's state
            logger.info("checkout_subscription_already_known", stripe_subscription_id=stripe_subscription_id)
            return OUTCOME_APPLIED

        await ensure_user(db, Actor(id=customer_id, role=ROLE_CUSTOMER))
        await _supersede_live_subscriptions(db, customer_id, None, now)
        tier = metadata.get("tier")
        db.add(
            Subscription(
                customer_id=customer_id,
                tier=tier,
                sessions_per_week=_sessions_per_week(tier),
                status="active",
                stripe_subscription_id=stripe_subscription_id,
                stripe_customer_id=obj.get("customer"),
            )
        )
        await db.flush()
        logger.info("subscription_created_from_checkout", customer_id=customer_id, tier=tier)
        return OUTCOME_APPLIED

    logger.info("checkout_type_unhandled", purchase_type=purchase_type)
    return OUTCOME_IGNORED


async def _grant_session_pack(db: AsyncSession, obj: dict, customer_id: int, now: datetime) -> str:
    metadata = _metadata(obj)
    checkout_session_id = obj.get("id")
    try:
        sessions = int(metadata.get("sessions") or 0)
        price_cents = int(metadata.get("price_cents") or 0)
    except ValueError:
        sessions, price_cents = 0, 0
    if sessions <= 0:
        logger.warning("session_pack_invalid_count", session_id=checkout_session_id)
        return OUTCOME_IGNORED

    result = await db.execute(
        select(SessionCredit.id).where(SessionCredit.stripe_checkout_session_id == checkout_session_id)
    )
    if result.scalar_one_or_none() is not None:
        logger.info("session_pack_already_granted", session_id=checkout_session_id)
        return OUTCOME_DUPLICATE

    await ensure_user(db, Actor(id=customer_id, role=ROLE_CUSTOMER))
    db.add(
        SessionCredit(
            customer_id=customer_id,
            total_sessions=sessions,
            used_sessions=0,
            purchased_at=now,
            expires_at=None,
            product_type=metadata.get("product_type"),
            price_cents=price_cents,
            stripe_checkout_session_id=checkout_session_id,
            stripe_payment_intent_id=obj.get("payment_intent"),
        )
    )
    await db.flush()
    logger.info("session_credits_granted", customer_id=customer_id, sessions=sessions)
    return OUTCOME_APPLIED


async def _handle_subscription_upsert(db: AsyncSession, obj: dict, event_at: datetime, now: datetime) -> str:
    stripe_subscription_id = obj.get("id")
    subscription = await _subscription_by_external_id(db, stripe_subscription_id)

    if subscription is not None and _is_stale(subscription, event_at):
        logger.info("subscription_event_stale", stripe_subscription_id=stripe_subscription_id)
        return OUTCOME_STALE

    price_id = _first_price_id(obj)
    tier = _metadata(obj).get("tier") or tier_for_price(price_id)
    status = map_stripe_status(obj.get("status"))

    if subscription is None:
        customer_id = await _resolve_customer(db, obj)
        if customer_id is None:
            logger.warning("subscription_customer_unknown", stripe_subscription_id=stripe_subscription_id)
            return OUTCOME_IGNORED
        await ensure_user(db, Actor(id=customer_id, role=ROLE_CUSTOMER))
        subscription = Subscription(
            customer_id=customer_id,
            stripe_subscription_id=stripe_subscription_id,
            sessions_per_week=_sessions_per_week(tier),
            version=1,
        )
    else:
        subscription.sessions_per_week = _sessions_per_week(tier, subscription.sessions_per_week, is_new=False)

    if status in LIVE_SUBSCRIPTION_STATUSES:
        await _supersede_live_subscriptions(db, subscription.customer_id, subscription.id, now)

    subscription.tier = tier or subscription.tier
    subscription.status = status
    subscription.stripe_customer_id = obj.get("customer") or subscription.stripe_customer_id
    subscription.stripe_price_id = price_id or subscription.stripe_price_id
    subscription.current_period_start = _ts(obj.get("current_period_start")) or subscription.current_period_start
    subscription.current_period_end = _ts(obj.get("current_period_end")) or subscription.current_period_end
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end"))
    if status == "cancelled" and subscription.cancelled_at is None:
        subscription.cancelled_at = _ts(obj.get("canceled_at")) or now
    subscription.last_event_at = event_at

    db.add(subscription)
    await db.flush()
    logger.info(
        "subscription_upserted",
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
        status=status,
        tier=subscription.tier,
    )
    return OUTCOME_APPLIED


async def _handle_subscription_deleted(db: AsyncSession, obj: dict, event_at: datetime, now: datetime) -> str:
    stripe_subscription_id = obj.get("id")
    subscription = await _subscription_by_external_id(db, stripe_subscription_id)

    if subscription is None:
        customer_id = await _resolve_customer(db, obj)
        if customer_id is None:
            logger.warning("subscription_customer_unknown", stripe_subscription_id=stripe_subscription_id)
            return OUTCOME_IGNORED
        await ensure_user(db, Actor(id=customer_id, role=ROLE_CUSTOMER))
        tier = _metadata(obj).get("tier") or tier_for_price(_first_price_id(obj))
        subscription = Subscription(
            customer_id=customer_id,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=obj.get("customer"),
            tier=tier,
            sessions_per_week=_sessions_per_week(tier),
            version=1,
        )
        db.add(subscription)
    elif _is_stale(subscription, event_at):
        logger.info("subscription_event_stale", stripe_subscription_id=stripe_subscription_id)
        return OUTCOME_STALE

    subscription.status = "cancelled"
    subscription.cancelled_at = subscription.cancelled_at or _ts(obj.get("canceled_at")) or now
    subscription.last_event_at = event_at
    await db.flush()
    logger.info("subscription_cancelled", subscription_id=subscription.id, customer_id=subscription.customer_id)
    return OUTCOME_APPLIED


async def _handle_invoice_paid(db: AsyncSession, obj: dict, event_at: datetime, now: datetime) -> str:
    stripe_subscription_id = obj.get("subscription")
    if not stripe_subscription_id:
        return OUTCOME_IGNORED
    subscription = await _subscription_by_external_id(db, stripe_subscription_id)
    if subscription is None:
        logger.info("invoice_subscription_unknown", stripe_subscription_id=stripe_subscription_id)
        return OUTCOME_IGNORED
    if _is_stale(subscription, event_at):
        return OUTCOME_STALE
    if subscription.status == "cancelled":
        logger.info("invoice_paid_for_cancelled_subscription", subscription_id=subscription.id)
        return OUTCOME_IGNORED

    lines = (obj.get("lines") or {}).get("data") or []
    period = next((line.get("period") for line in lines if line.get("type") == "subscription"), None)
    if period:
        subscription.current_period_start = _ts(period.get("start"))
        subscription.current_period_end = _ts(period.get("end"))

    await _supersede_live_subscriptions(db, subscription.customer_id, subscription.id, now)
    subscription.status = "active"
    subscription.last_event_at = event_at
    await db.flush()
    logger.info("subscription_period_renewed", subscription_id=subscription.id)
    return OUTCOME_APPLIED


async def _handle_invoice_payment_failed(db: AsyncSession, obj: dict, event_at: datetime, now: datetime) -> str:
    stripe_subscription_id = obj.get("subscription")
    if not stripe_subscription_id:
        return OUTCOME_IGNORED
    subscription = await _subscription_by_external_id(db, stripe_subscription_id)
    if subscription is None:
        return OUTCOME_IGNORED
    if _is_stale(subscription, event_at):
        return OUTCOME_STALE
    if subscription.status == "cancelled":
        return OUTCOME_IGNORED

    subscription.status = "past_due"
    subscription.last_event_at = event_at
    await db.flush()
    logger.info("subscription_past_due", subscription_id=subscription.id)
    return OUTCOME_APPLIED


HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_upsert,
    "customer.subscription.updated": _handle_subscription_upsert,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.paid": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_payment_failed,
}


async def apply_event(db: AsyncSession, event: dict[str, Any], now: Optional[datetime] = None) -> str:
    """
    Apply one verified event. Returns the outcome. The caller commits.
    """
    now = now or datetime.now(timezone.utc)
    event_id = event["id"]
    event_type = event["type"]
    event_at = _ts(event.get("created")) or now

    result = await db.execute(select(PaymentEvent.id).where(PaymentEvent.event_id == event_id))
    if result.scalar_one_or_none() is not None:
        logger.info("payment_event_duplicate", event_id=event_id, event_type=event_type)
        record_payment_event(event_type, OUTCOME_DUPLICATE)
        return OUTCOME_DUPLICATE

    ledger = PaymentEvent(event_id=event_id, event_type=event_type, event_created_at=event_at, outcome="processing")
    db.add(ledger)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info("payment_event_duplicate_concurrent", event_id=event_id)
        record_payment_event(event_type, OUTCOME_DUPLICATE)
        return OUTCOME_DUPLICATE

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.debug("payment_event_ignored", event_id=event_id, event_type=event_type)
        outcome = OUTCOME_IGNORED
    else:
        obj = (event.get("data") or {}).get("object") or {}
        outcome = await handler(db, obj, event_at, now)

    ledger.outcome = outcome
    await db.flush()
    logger.info("payment_event_processed", event_id=event_id, event_type=event_type, outcome=outcome)
    record_payment_event(event_type, outcome)
    return outcome
