"""
Stripe webhook receiver.

POST /webhooks/stripe
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import verify_stripe_webhook
from storefront.services import reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    event: Dict[str, Any] = Depends(verify_stripe_webhook),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Receive a verified Stripe event. Idempotent: re-delivering the same
    checkout.session.completed never creates a second order.

    Processing errors are acknowledged anyway so Stripe stops retrying; the
    fallback verifier picks up anything lost.
    """
    try:
        summary = await reconciler.handle_event(db, event)
    except Exception as exc:
        logger.exception(
            "Stripe event %s (%s) processing failed: %s",
            event.get("id"), event.get("type"), exc,
        )
        await db.rollback()
        return {"received": True, "processed": False}

    return {"received": True, "processed": True, **summary}
