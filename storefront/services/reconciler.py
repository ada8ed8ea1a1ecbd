"""
Payment Event Reconciler: dispatch verified Stripe events.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.services.fulfilment import STRATEGY_ATOMIC, fulfil_checkout_session

logger = logging.getLogger(__name__)

FULFILMENT_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


async def handle_event(session: AsyncSession, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply one event. Returns a small summary used for the webhook response
    and the logs. Exceptions propagate to the router.
    """
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in FULFILMENT_EVENTS:
        if obj.get("payment_status") != "paid":
            logger.info(
                "Event %s for session=%s not paid yet (payment_status=%s)",
                event_type, obj.get("id"), obj.get("payment_status"),
            )
            return {"handled": True, "orderCreated": False}

        result = await fulfil_checkout_session(session, obj, strategy=STRATEGY_ATOMIC)
        return {
            "handled": True,
            "orderCreated": result.created,
            "orderNumber": result.order.order_number,
        }

    if event_type == "checkout.session.expired":
        logger.info("Checkout session expired: %s", obj.get("id"))
        return {"handled": True}

    if event_type == "payment_intent.payment_failed":
        error = obj.get("last_payment_error") or {}
        logger.warning(
            "Payment failed: intent=%s reason=%s", obj.get("id"), error.get("message")
        )
        return {"handled": True}

    logger.debug("Unhandled Stripe event type %s", event_type)
    return {"handled": False}
