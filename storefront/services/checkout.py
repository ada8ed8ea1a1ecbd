"""
Checkout Session Builder.

Re-prices the cart from the catalogue, checks availability against the Stock
Ledger, validates the discount and asks Stripe for a hosted payment page.
Nothing is written locally: orders only exist once payment is confirmed.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.errors import BusinessRuleViolation, GatewayError, InsufficientStock, ValidationFailed
from storefront.models import Product
from storefront.services import discounts, stripe_gateway
from storefront.services.stock_ledger import available_quantity

logger = logging.getLogger(__name__)
settings = get_settings()

# Stripe rejects metadata values longer than this
_METADATA_VALUE_LIMIT = 500


@dataclass
class CartLine:
    product_id: str
    size: Optional[str]
    quantity: int


@dataclass
class PricedLine:
    product: Product
    size: Optional[str]
    quantity: int

    @property
    def unit_price(self) -> int:
        return self.product.unit_price

    @property
    def subtotal(self) -> int:
        return self.product.unit_price * self.quantity


def aggregate_lines(lines: List[CartLine]) -> List[CartLine]:
    """Merge repeated product/size pairs so availability is checked on the sum."""
    merged: Dict[tuple, CartLine] = {}
    for line in lines:
        key = (line.product_id, line.size)
        if key in merged:
            merged[key].quantity += line.quantity
        else:
            merged[key] = CartLine(line.product_id, line.size, line.quantity)
    return list(merged.values())


async def price_cart(session: AsyncSession, lines: List[CartLine]) -> List[PricedLine]:
    """
    Load every product fresh and check the requested quantity against its
    effective availability. The first shortfall fails the whole cart.
    """
    if not lines:
        raise ValidationFailed("Cart is empty")

    lines = aggregate_lines(lines)
    ids = {line.product_id for line in lines}
    products = {
        p.id: p
        for p in (
            await session.execute(
                select(Product)
                .where(Product.id.in_(ids))
                .execution_options(populate_existing=True)
            )
        ).scalars()
    }

    priced: List[PricedLine] = []
    for line in lines:
        product = products.get(line.product_id)
        if product is None or not product.is_active:
            raise BusinessRuleViolation("Product not available", productId=line.product_id)

        available = available_quantity(product, line.size)
        if line.quantity > available:
            raise InsufficientStock(
                product_id=product.id,
                product_name=product.name,
                size=line.size,
                available=available,
                requested=line.quantity,
            )
        priced.append(PricedLine(product=product, size=line.size, quantity=line.quantity))
    return priced


def _line_item(line: PricedLine) -> Dict[str, Any]:
    product_data: Dict[str, Any] = {
        "name": f"{line.product.name} - {line.size}" if line.size else line.product.name,
        "metadata": {"product_id": line.product.id, "size": line.size or ""},
    }
    if line.product.image:
        product_data["images"] = [line.product.image]
    return {
        "price_data": {
            "currency": settings.currency,
            "unit_amount": line.unit_price,
            "product_data": product_data,
        },
        "quantity": line.quantity,
    }


def _metadata(
    priced: List[PricedLine],
    customer_id: Optional[str],
    customer_email: Optional[str],
    subtotal: int,
    applied: Optional[discounts.AppliedDiscount],
) -> Dict[str, str]:
    sizes = json.dumps(
        [
            {"product_id": line.product.id, "size": line.size, "quantity": line.quantity}
            for line in priced
        ],
        separators=(",", ":"),
    )
    metadata = {
        "user_id": customer_id or "guest",
        "user_email": customer_email or "",
        "discount_code": applied.code if applied else "",
        "discount_amount": str(applied.amount if applied else 0),
        "subtotal": str(subtotal),
    }
    if len(sizes) <= _METADATA_VALUE_LIMIT:
        metadata["order_items_sizes"] = sizes
    else:
        # Per-line product metadata still carries product_id and size
        logger.warning("order_items_sizes too long for metadata (%d chars), omitted", len(sizes))
    return metadata


async def create_checkout_session(
    session: AsyncSession,
    lines: List[CartLine],
    discount_code: Optional[str] = None,
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    origin: Optional[str] = None,
) -> Dict[str, str]:
    """
    Validate the cart and create a Stripe Checkout Session.
    Returns {"url": ..., "sessionId": ...}.
    """
    priced = await price_cart(session, lines)
    subtotal = sum(line.subtotal for line in priced)

    applied = None
    if discount_code and discount_code.strip():
        applied = await discounts.validate_discount(session, discount_code, subtotal)

    total = subtotal - (applied.amount if applied else 0)
    base_url = (origin or settings.public_base_url).rstrip("/")

    params: Dict[str, Any] = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [_line_item(line) for line in priced],
        "success_url": f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base_url}/cart",
        "shipping_address_collection": {
            "allowed_countries": settings.allowed_shipping_countries,
        },
        "phone_number_collection": {"enabled": True},
        "metadata": _metadata(priced, customer_id, customer_email, subtotal, applied),
    }
    if customer_email:
        params["customer_email"] = customer_email

    try:
        if applied:
            coupon = await stripe_gateway.create_coupon(
                amount_off=applied.amount,
                currency=settings.currency,
                name=f"Discount {applied.code}",
            )
            params["discounts"] = [{"coupon": coupon["id"]}]
        checkout = await stripe_gateway.create_checkout_session(**params)
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session creation failed: %s", exc)
        raise GatewayError("Could not create the payment session")

    logger.info(
        "Checkout session %s: %d lines subtotal=%d discount=%d total=%d user=%s",
        checkout["id"], len(priced), subtotal,
        applied.amount if applied else 0, total, customer_id or "guest",
    )
    return {"url": checkout["url"], "sessionId": checkout["id"]}
