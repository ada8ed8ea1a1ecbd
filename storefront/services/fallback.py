"""
Order Fallback Verifier.

Called by the post-payment landing page when the webhook may not have
arrived. Asks Stripe directly and, if the session is paid but no order
exists yet, runs the same fulfilment as the webhook.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import GatewayError, NotFound, ValidationFailed
from storefront.services import stripe_gateway
from storefront.services.fulfilment import STRATEGY_TIERED, fulfil_checkout_session

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^cs_(test|live)_[A-Za-z0-9]+$")


def validate_session_id(session_id: str) -> str:
    if not session_id or len(session_id) > 255 or not SESSION_ID_RE.match(session_id):
        raise ValidationFailed("Invalid session id")
    return session_id


async def verify_order(session: AsyncSession, session_id: str) -> Dict[str, Any]:
    """
    Returns {"status": "pending"} or
    {"status": "exists" | "created", "orderNumber": ..., "orderId": ...}.
    """
    validate_session_id(session_id)

    try:
        checkout = await stripe_gateway.retrieve_checkout_session(session_id)
    except stripe.StripeError as exc:
        logger.warning("Fallback verify: session %s lookup failed: %s", session_id, exc)
        raise NotFound("Payment session not found")

    if checkout.get("payment_status") != "paid":
        return {"status": "pending"}

    try:
        result = await fulfil_checkout_session(session, checkout, strategy=STRATEGY_TIERED)
    except stripe.StripeError as exc:
        logger.error("Fallback verify: line items for %s unavailable: %s", session_id, exc)
        raise GatewayError("Could not verify the payment right now")

    if result.created:
        logger.warning(
            "Fallback verifier created order %s for session %s (webhook missing or late)",
            result.order.order_number, session_id,
        )
    return {
        "status": "created" if result.created else "exists",
        "orderNumber": result.order.order_number,
        "orderId": result.order.id,
    }
