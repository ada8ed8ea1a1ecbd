"""
Checkout endpoints.

POST /api/checkout/create-session
POST /api/checkout/verify-order
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import customer_email
from storefront.schemas import CheckoutRequest, CheckoutResponse, VerifyOrderRequest
from storefront.services import checkout, fallback
from storefront.services.checkout import CartLine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


@router.post("/create-session", response_model=CheckoutResponse)
async def create_session(
    body: CheckoutRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, str]:
    lines = [CartLine(product_id=i.id, size=i.size or None, quantity=i.quantity) for i in body.items]
    return await checkout.create_checkout_session(
        db,
        lines,
        discount_code=body.discount_code,
        customer_id=request.session.get("customer_id"),
        customer_email=customer_email(request),
        origin=request.headers.get("origin"),
    )


@router.post("/verify-order")
async def verify_order(
    body: VerifyOrderRequest,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await fallback.verify_order(db, body.session_id)
