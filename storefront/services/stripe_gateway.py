"""
Thin async wrapper around the Stripe SDK.

Everything the rest of the code needs from the payment gateway goes through
here, and comes back as plain dicts so callers (and tests) never touch
StripeObject instances.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import stripe

from storefront.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

LINE_ITEM_EXPAND = ["data.price.product"]


def _configure() -> None:
    stripe.api_key = settings.stripe_secret_key


def _plain(obj: Any) -> Dict[str, Any]:
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


def construct_event(payload: bytes, signature: str) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the endpoint secret and return
    the event. Raises stripe.SignatureVerificationError or ValueError.
    """
    stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
    # Verified: the raw body is the event exactly as Stripe sent it
    return json.loads(payload)


async def create_checkout_session(**params: Any) -> Dict[str, Any]:
    _configure()
    session = await stripe.checkout.Session.create_async(**params)
    logger.info("Stripe checkout session created: %s", session.id)
    return _plain(session)


async def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    _configure()
    session = await stripe.checkout.Session.retrieve_async(session_id)
    return _plain(session)


async def list_line_items(session_id: str) -> List[Dict[str, Any]]:
    """Authoritative purchased lines, with price.product expanded for metadata."""
    _configure()
    result = await stripe.checkout.Session.list_line_items_async(
        session_id, limit=100, expand=LINE_ITEM_EXPAND
    )
    return _plain(result).get("data", [])


async def create_coupon(amount_off: int, currency: str, name: str) -> Dict[str, Any]:
    _configure()
    coupon = await stripe.Coupon.create_async(
        amount_off=amount_off,
        currency=currency,
        duration="once",
        name=name[:40],
    )
    return _plain(coupon)


async def create_refund(
    payment_intent: str,
    idempotency_key: Optional[str] = None,
    reason: str = "requested_by_customer",
) -> Dict[str, Any]:
    """Full refund of a payment intent. Raises stripe.StripeError on failure."""
    _configure()
    params: Dict[str, Any] = {"payment_intent": payment_intent, "reason": reason}
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    refund = await stripe.Refund.create_async(**params)
    logger.info("Stripe refund created: %s for %s", refund.id, payment_intent)
    return _plain(refund)
