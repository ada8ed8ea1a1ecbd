"""
Canonical fulfilment of a paid Stripe Checkout Session.

Shared by the webhook reconciler and the fallback verifier:
  1. existing order for this payment?  -> return it
  2. fetch authoritative line items from Stripe
  3. insert Order (unique correlation columns are the backstop against races)
  4. snapshot OrderItems and decrement the Stock Ledger
  5. commit, then email the invoice (best-effort)

Stock problems never fail fulfilment: the order is flagged for manual review
and the details go to the error log and the order's admin notes.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.models import Order, OrderItem, Product
from storefront.services import discounts, documents, stock_ledger, stripe_gateway
from storefront.services.numbering import generate_order_number

logger = logging.getLogger(__name__)
settings = get_settings()

STRATEGY_ATOMIC = "atomic"
STRATEGY_TIERED = "tiered"


@dataclass
class FulfilmentResult:
    order: Order
    created: bool


def _ref(value: Any) -> Optional[str]:
    """Stripe fields may be an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


async def find_order_for_payment(
    session: AsyncSession,
    payment_id: Optional[str],
    stripe_session_id: Optional[str],
) -> Optional[Order]:
    conditions = []
    if payment_id:
        conditions.append(Order.payment_id == payment_id)
    if stripe_session_id:
        conditions.append(Order.stripe_session_id == stripe_session_id)
    if not conditions:
        return None
    return (
        await session.execute(select(Order).where(or_(*conditions)).limit(1))
    ).scalar_one_or_none()


def _shipping(checkout: Dict[str, Any]) -> Dict[str, Any]:
    details = checkout.get("customer_details") or {}
    collected = checkout.get("collected_information") or {}
    shipping = collected.get("shipping_details") or checkout.get("shipping_details") or {}
    address = shipping.get("address") or details.get("address") or {}
    return {
        "shipping_full_name": shipping.get("name") or details.get("name") or "",
        "shipping_phone": details.get("phone") or "",
        "shipping_address_line1": address.get("line1") or "",
        "shipping_address_line2": address.get("line2"),
        "shipping_city": address.get("city") or "",
        "shipping_state": address.get("state") or "",
        "shipping_postal_code": address.get("postal_code") or "",
        "shipping_country": address.get("country") or "",
    }


def _sizes_blob(metadata: Dict[str, str]) -> List[Dict[str, Any]]:
    raw = metadata.get("order_items_sizes")
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Unparseable order_items_sizes metadata: %r", raw[:100])
        return []
    return parsed if isinstance(parsed, list) else []


def _resolve_line(
    line_item: Dict[str, Any], index: int, blob: List[Dict[str, Any]]
) -> tuple[Optional[str], Optional[str]]:
    """(product_id, size) from the line's product metadata, else the session blob by position."""
    product = (line_item.get("price") or {}).get("product")
    meta = product.get("metadata", {}) if isinstance(product, dict) else {}
    product_id = meta.get("product_id")
    size = meta.get("size")

    if not product_id and index < len(blob):
        product_id = blob[index].get("product_id")
        size = blob[index].get("size")
    return product_id or None, size or None


def _new_order(checkout: Dict[str, Any], payment_id: Optional[str]) -> Order:
    metadata = checkout.get("metadata") or {}
    details = checkout.get("customer_details") or {}
    totals = checkout.get("total_details") or {}
    user_id = metadata.get("user_id")

    return Order(
        order_number=generate_order_number(settings.order_number_prefix),
        user_id=None if user_id in (None, "", "guest") else user_id,
        customer_email=details.get("email") or metadata.get("user_email") or None,
        subtotal=checkout.get("amount_subtotal") or 0,
        shipping_cost=totals.get("amount_shipping") or 0,
        tax=totals.get("amount_tax") or 0,
        discount=totals.get("amount_discount") or 0,
        total=checkout.get("amount_total") or 0,
        currency=checkout.get("currency") or settings.currency,
        payment_id=payment_id,
        stripe_session_id=checkout["id"],
        payment_method="card",
        payment_status="paid",
        status="confirmed",
        items=[],
        **_shipping(checkout),
    )


async def _decrement(
    session: AsyncSession, line: stock_ledger.StockLine, strategy: str
) -> tuple[bool, str]:
    if strategy == STRATEGY_TIERED:
        outcome = await stock_ledger.decrement_with_fallbacks(session, line)
        return outcome.ok, outcome.strategy

    try:
        async with session.begin_nested():
            ok = await stock_ledger.decrement(session, line.product_id, line.size, line.quantity)
        return ok, STRATEGY_ATOMIC
    except SQLAlchemyError as exc:
        logger.error(
            "Atomic stock decrement errored product=%s size=%s qty=%d: %s",
            line.product_id, line.size, line.quantity, exc,
        )
        return False, "error"


async def _add_items(
    session: AsyncSession,
    order: Order,
    line_items: List[Dict[str, Any]],
    blob: List[Dict[str, Any]],
    strategy: str,
) -> None:
    for index, li in enumerate(line_items):
        quantity = li.get("quantity") or 0
        product_id, size = _resolve_line(li, index, blob)
        product = await session.get(Product, product_id) if product_id else None

        if product is None:
            logger.error(
                "Order %s: product not found for line %r (product_id=%s size=%s qty=%d); "
                "stock not decremented",
                order.order_number, li.get("description"), product_id, size, quantity,
            )
            order.needs_review = True
            order.append_note(
                f"MANUAL REVIEW: product not found for '{li.get('description')}' "
                f"(product_id={product_id}, size={size}, qty={quantity})"
            )
            continue

        unit_price = (li.get("price") or {}).get("unit_amount") or 0
        order.items.append(
            OrderItem(
                product_id=product.id,
                product_name=product.name,
                product_slug=product.slug,
                product_image=product.image,
                size=size,
                quantity=quantity,
                unit_price=unit_price,
                subtotal=li.get("amount_subtotal") or unit_price * quantity,
            )
        )

        line = stock_ledger.StockLine(product_id=product.id, size=size, quantity=quantity)
        ok, used = await _decrement(session, line, strategy)
        if not ok:
            logger.error(
                "Order %s: stock decrement failed (%s) product=%s size=%s qty=%d",
                order.order_number, used, product.id, size, quantity,
            )
            order.needs_review = True
            order.append_note(
                f"MANUAL REVIEW: stock not decremented for {product.name} "
                f"(product_id={product.id}, size={size}, qty={quantity}, strategy={used})"
            )


async def fulfil_checkout_session(
    session: AsyncSession,
    checkout: Dict[str, Any],
    strategy: str = STRATEGY_ATOMIC,
) -> FulfilmentResult:
    """
    Turn a paid checkout session into exactly one Order.
    Raises stripe.StripeError if line items cannot be fetched (nothing is written).
    """
    stripe_session_id = checkout["id"]
    payment_id = _ref(checkout.get("payment_intent"))

    existing = await find_order_for_payment(session, payment_id, stripe_session_id)
    if existing is not None:
        logger.info(
            "Order %s already exists for session=%s payment=%s",
            existing.order_number, stripe_session_id, payment_id,
        )
        return FulfilmentResult(order=existing, created=False)

    line_items = await stripe_gateway.list_line_items(stripe_session_id)

    order = _new_order(checkout, payment_id)
    session.add(order)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        winner = await find_order_for_payment(session, payment_id, stripe_session_id)
        if winner is None:
            raise
        logger.info(
            "Concurrent fulfilment for session=%s lost the race; using order %s",
            stripe_session_id, winner.order_number,
        )
        return FulfilmentResult(order=winner, created=False)

    metadata = checkout.get("metadata") or {}
    await _add_items(session, order, line_items, _sizes_blob(metadata), strategy)

    code = metadata.get("discount_code")
    if code and int(metadata.get("discount_amount") or 0) > 0:
        await discounts.record_usage(session, code)

    await session.commit()
    logger.info(
        "Order %s created for session=%s payment=%s items=%d total=%d%s",
        order.order_number, stripe_session_id, payment_id, len(order.items), order.total,
        " [NEEDS REVIEW]" if order.needs_review else "",
    )

    try:
        await documents.send_invoice_email(order)
    except Exception as exc:
        logger.error("Invoice email for order %s failed: %s", order.order_number, exc)

    return FulfilmentResult(order=order, created=True)
