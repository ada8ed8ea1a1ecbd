"""
FastAPI dependency utilities: Stripe webhook verification, customer identity.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

import stripe
from fastapi import Header, HTTPException, Request, status

from storefront.config import get_settings
from storefront.errors import NotAuthenticated
from storefront.services import stripe_gateway

logger = logging.getLogger(__name__)
settings = get_settings()


async def verify_stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
) -> Dict[str, Any]:
    """
    Verify the Stripe-Signature header against the raw body before anything
    is parsed. Returns the verified event.
    """
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured – rejecting webhook")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook secret not configured",
        )

    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    body = await request.body()
    try:
        return stripe_gateway.construct_event(body, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook signature verification failed",
        )


def current_customer(request: Request) -> str | None:
    """Customer id placed in the session by the login flow, if any."""
    return request.session.get("customer_id")


def require_customer(request: Request) -> str:
    customer_id = current_customer(request)
    if not customer_id:
        raise NotAuthenticated("Authentication required")
    return customer_id


def customer_email(request: Request) -> str | None:
    return request.session.get("customer_email")
