"""
Product catalogue and outbound Stripe checkout.

The webhook stream (payment_events_service) is what actually changes local
subscription and credit state; this module only starts a purchase.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import stripe

from app.core.config import Settings, get_settings
from app.core.exceptions import BookingValidationError, IntegrationNotConfiguredError, UpstreamServiceError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SubscriptionTier:
    name: str
    sessions_per_week: Optional[int]  # None = unlimited
    price_setting: str


@dataclass(frozen=True)
class SessionPack:
    name: str
    sessions: int
    price_cents: int
    price_setting: str


SUBSCRIPTION_TIERS = {
    "essential": SubscriptionTier("essential", 1, "STRIPE_PRICE_ESSENTIAL"),
    "performance": SubscriptionTier("performance", 2, "STRIPE_PRICE_PERFORMANCE"),
    "elite": SubscriptionTier("elite", None, "STRIPE_PRICE_ELITE"),
}

SESSION_PACKS = {
    "pack_5": SessionPack("pack_5", 5, 37500, "STRIPE_PRICE_PACK_5"),
    "pack_10": SessionPack("pack_10", 10, 70000, "STRIPE_PRICE_PACK_10"),
}


def tier_for_price(price_id: Optional[str], settings: Optional[Settings] = None) -> Optional[str]:
    if not price_id:
        return None
    settings = settings or get_settings()
    for tier in SUBSCRIPTION_TIERS.values():
        if getattr(settings, tier.price_setting) == price_id:
            return tier.name
    return None


def _price_id(setting_name: str, settings: Settings) -> str:
    price_id = getattr(settings, setting_name)
    if not price_id:
        raise IntegrationNotConfiguredError(f"{setting_name} is not configured")
    return price_id


def build_checkout_params(
    customer_id: int,
    product: str,
    success_url: str,
    cancel_url: str,
    settings: Optional[Settings] = None,
) -> dict:
    """Keyword arguments for stripe.checkout.Session.create."""
    settings = settings or get_settings()

    if product in SUBSCRIPTION_TIERS:
        tier = SUBSCRIPTION_TIERS[product]
        metadata = {"customer_id": str(customer_id), "type": "subscription", "tier": tier.name}
        return {
            "mode": "subscription",
            "line_items": [{"price": _price_id(tier.price_setting, settings), "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(customer_id),
            "metadata": metadata,
            # Subscription events carry the same metadata so they can be placed
            "subscription_data": {"metadata": metadata},
        }

    if product in SESSION_PACKS:
        pack = SESSION_PACKS[product]
        return {
            "mode": "payment",
            "line_items": [{"price": _price_id(pack.price_setting, settings), "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(customer_id),
            "metadata": {
                "customer_id": str(customer_id),
                "type": "session_pack",
                "product_type": pack.name,
                "sessions": str(pack.sessions),
                "price_cents": str(pack.price_cents),
            },
        }

    raise BookingValidationError(f"Unknown product: {product}")


async def create_checkout_session(
    customer_id: int,
    product: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict:
    settings = get_settings()
    if not settings.STRIPE_API_KEY:
        raise IntegrationNotConfiguredError("Payments are not configured")

    params = build_checkout_params(
        customer_id,
        product,
        success_url or f"{settings.APP_URL}/billing?checkout=success",
        cancel_url or f"{settings.APP_URL}/billing?checkout=cancelled",
        settings,
    )

    def _create():
        return stripe.checkout.Session.create(api_key=settings.STRIPE_API_KEY, **params)

    try:
        session = await asyncio.wait_for(asyncio.to_thread(_create), timeout=settings.EXTERNAL_HTTP_TIMEOUT)
    except asyncio.TimeoutError:
        logger.error("checkout_session_timeout", customer_id=customer_id, product=product)
        raise UpstreamServiceError("Payment processor did not respond in time")
    except stripe.StripeError as e:
        logger.error("checkout_session_failed", customer_id=customer_id, product=product, error=str(e))
        raise UpstreamServiceError("Payment processor rejected the checkout request")

    logger.info("checkout_session_created", customer_id=customer_id, product=product, session_id=session["id"])
    return {"session_id": session["id"], "url": session["url"]}
