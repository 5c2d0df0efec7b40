"""
Payment endpoints: outbound checkout and the inbound webhook.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.payment import CheckoutCreate, CheckoutResponse, WebhookAck
from app.services import payment_events_service, payment_service
from app.services.user_service import ensure_user
from app.core.config import get_settings
from app.core.exceptions import IntegrationNotConfiguredError
from app.core.metrics import record_payment_event
from app.core.security import Actor, get_current_actor
from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_data: CheckoutCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Start a Stripe Checkout for a subscription tier or a session pack."""
    await ensure_user(db, actor)
    await db.commit()
    return await payment_service.create_checkout_session(
        actor.id,
        checkout_data.product,
        checkout_data.success_url,
        checkout_data.cancel_url,
    )


@router.post("/webhooks", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Signed event stream from Stripe.

    400 for an unverifiable payload (no state change), 200 once the event is
    applied or recognised as a duplicate, 500 if applying it failed so that
    Stripe redelivers.
    """
    settings = get_settings()
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise IntegrationNotConfiguredError("Webhook secret not configured")

    payload = await request.body()
    event = payment_events_service.verify_event(
        payload,
        request.headers.get("stripe-signature"),
        settings.STRIPE_WEBHOOK_SECRET,
        settings.STRIPE_WEBHOOK_TOLERANCE,
    )

    try:
        outcome = await payment_events_service.apply_event(db, event)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("payment_webhook_handler_failed", event_id=event["id"], event_type=event["type"])
        record_payment_event(event["type"], "error")
        return JSONResponse(status_code=500, content={"received": False, "error": "Handler failed"})

    return WebhookAck(outcome=outcome)
