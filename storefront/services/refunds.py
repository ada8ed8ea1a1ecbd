"""
Refunds: the compare-and-swap refund lock, the gateway call and stock
restoration.

Only the request whose conditional UPDATE moves the order into ``refunding``
may call Stripe. The lock is committed before the gateway call so concurrent
requests observe it, and released (previous status restored) if Stripe fails.

Once Stripe has refunded, the order writes that follow run inside
``settling``: if the database rejects them the order is flagged
``needs_review`` and the refund id is logged for manual reconciliation.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import stripe
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import BusinessRuleViolation, GatewayError, NotFound, RefundConflict
from storefront.models import Order, ReturnRecord
from storefront.services import credit_notes, stock_ledger, stripe_gateway
from storefront.time_utils import utcnow

logger = logging.getLogger(__name__)

REFUNDING = "refunding"
REFUNDED = "refunded"
CANCELLED = "cancelled"
LOCK_BLOCKING_STATUSES = (REFUNDED, REFUNDING, CANCELLED)

ACTIVE_RETURN_STATUSES = ("pending", "approved", "received")


async def load_order(session: AsyncSession, order_id: str) -> Order:
    """Fresh copy of the order (bypasses stale identity-map state)."""
    order = await session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFound("Order not found")
    return order


async def acquire_refund_lock(
    session: AsyncSession,
    order_id: str,
    allowed_statuses: Optional[Iterable[str]] = None,
) -> bool:
    """
    UPDATE orders SET status='refunding' WHERE paid AND not already
    refunded/refunding/cancelled [AND status IN allowed]. Commits.
    """
    stmt = update(Order).where(
        Order.id == order_id,
        Order.payment_status == "paid",
        Order.status.not_in(LOCK_BLOCKING_STATUSES),
    )
    if allowed_statuses is not None:
        stmt = stmt.where(Order.status.in_(tuple(allowed_statuses)))
    stmt = stmt.values(
        status=REFUNDING, pre_refund_status=Order.status, updated_at=utcnow()
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    await session.commit()
    acquired = result.rowcount == 1
    logger.info("Refund lock order=%s acquired=%s", order_id, acquired)
    return acquired


async def release_refund_lock(session: AsyncSession, order_id: str) -> None:
    await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == REFUNDING)
        .values(
            status=func.coalesce(Order.pre_refund_status, "confirmed"),
            pre_refund_status=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.warning("Refund lock released for order=%s", order_id)


async def refund_payment(session: AsyncSession, order: Order, reason: str) -> Dict[str, Any]:
    """
    Call Stripe for a full refund of *order* (lock already held).
    On failure the lock is released and GatewayError raised.
    """
    try:
        refund = await stripe_gateway.create_refund(
            order.payment_id,
            idempotency_key=f"refund-{order.id}",
        )
    except stripe.StripeError as exc:
        logger.error(
            "Stripe refund failed for order %s (%s): %s", order.order_number, reason, exc
        )
        await release_refund_lock(session, order.id)
        raise GatewayError("Refund could not be processed, please try again later")
    return refund


async def flag_for_review(session: AsyncSession, order_id: str, note: str) -> None:
    try:
        order = await load_order(session, order_id)
        order.needs_review = True
        order.append_note(note)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Could not flag order %s for review: %s", order_id, note)


@asynccontextmanager
async def settling(
    session: AsyncSession, order_id: str, refund_id: Optional[str]
) -> AsyncIterator[None]:
    """Guard the order writes that follow a successful gateway refund."""
    try:
        yield
    except SQLAlchemyError:
        if refund_id is None:
            raise
        logger.exception(
            "Refund %s for order %s succeeded but the order could not be updated; "
            "reconcile manually",
            refund_id, order_id,
        )
        await session.rollback()
        await flag_for_review(
            session,
            order_id,
            f"MANUAL REVIEW: refund {refund_id} succeeded but the order update failed",
        )
        raise


async def restore_stock_for_order(session: AsyncSession, order: Order) -> None:
    """Put back exactly the quantities recorded on the order's items."""
    for item in order.items:
        await stock_ledger.increment(session, item.product_id, item.size, item.quantity)


async def close_open_returns(
    session: AsyncSession, order: Order, refund_id: str, now: datetime
) -> Optional[str]:
    """
    Settle any return still in flight for *order* against a full refund, so
    a later "receive" finds nothing left to refund or restock. Returns the
    id of the closed return, if there was one.
    """
    return_id = (
        await session.execute(
            select(ReturnRecord.id)
            .where(
                ReturnRecord.order_id == order.id,
                ReturnRecord.status.in_(ACTIVE_RETURN_STATUSES),
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if return_id is None:
        return None

    await session.execute(
        update(ReturnRecord)
        .where(ReturnRecord.id == return_id)
        .values(status=REFUNDED, refunded_at=now, stripe_refund_id=refund_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    order.pre_return_status = None
    logger.info("Return %s on order %s closed by refund %s", return_id, order.order_number, refund_id)
    return return_id


async def conflict_for(session: AsyncSession, order_id: str) -> Exception:
    """The error to raise after losing the refund lock."""
    order = await load_order(session, order_id)
    if order.payment_status not in ("paid", REFUNDED):
        return BusinessRuleViolation("Order has not been paid", status=order.status)
    return RefundConflict(
        "Order is already refunded or a refund is in progress", status=order.status
    )


async def refund_order(
    session: AsyncSession,
    order_id: str,
    reason: str = "",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin full refund. Also settles a return the customer has open."""
    now = now or utcnow()
    await load_order(session, order_id)
    if not await acquire_refund_lock(session, order_id):
        raise await conflict_for(session, order_id)

    order = await load_order(session, order_id)
    reason = reason or "Full refund issued by the store"
    refund = await refund_payment(session, order, reason)

    async with settling(session, order_id, refund["id"]):
        order = await load_order(session, order_id)
        await restore_stock_for_order(session, order)
        return_id = await close_open_returns(session, order, refund["id"], now)
        order.status = REFUNDED
        order.payment_status = REFUNDED
        order.pre_refund_status = None
        order.append_note(f"Refunded {refund['amount']} via {refund['id']}: {reason}")
        await session.commit()
    logger.info("Order %s refunded (%s)", order.order_number, refund["id"])

    result = {
        "success": True,
        "refund": {"id": refund["id"], "amount": refund["amount"], "status": refund["status"]},
    }
    note = await credit_notes.issue_credit_note(
        session, order, reason, refund_id=refund["id"], return_id=return_id, now=now
    )
    result["creditNote"] = note.invoice_number if note else None
    return result
