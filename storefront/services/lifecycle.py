"""
Order lifecycle state machine.

    pending -> confirmed -> processing -> shipped -> delivered      (admin)
    pending|confirmed|processing -> cancelled                       (customer, time-boxed)
    confirmed..delivered -> return_requested -> refunded            (admin receive)
                                             -> previous status     (reject / expiry)
    any paid, unrefunded -> refunding (transient refund lock)

Deadlines are compared against ``now`` at request time; every public
function accepts ``now`` so the windows can be exercised deterministically.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.errors import (
    BusinessRuleViolation,
    NotFound,
    ValidationFailed,
)
from storefront.models import Order, ReturnRecord
from storefront.services import credit_notes, refunds
from storefront.services.numbering import NumberAllocationError, insert_numbered
from storefront.time_utils import as_utc, hours_between, utcnow

logger = logging.getLogger(__name__)
settings = get_settings()

# ── States ───────────────────────────────────────────────────────────────────

PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
RETURN_REQUESTED = "return_requested"

FORWARD_PATH = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED)
CANCELLABLE = (PENDING, CONFIRMED, PROCESSING)
RETURNABLE = (CONFIRMED, PROCESSING, SHIPPED, DELIVERED)

ACTIVE_RETURN_STATUSES = refunds.ACTIVE_RETURN_STATUSES
RECEIVABLE_RETURN_STATUSES = ("pending", "approved")
EXPIRABLE_RETURN_STATUSES = ("pending", "approved")

RETURN_REASONS = (
    "defective",
    "wrong_item",
    "wrong_size",
    "not_as_described",
    "changed_mind",
    "better_price",
    "too_late",
    "other",
)
MIN_OTHER_DESCRIPTION = 10
MAX_DESCRIPTION = 2000


async def _owned_order(session: AsyncSession, order_id: str, customer_id: str) -> Order:
    order = await session.get(Order, order_id, populate_existing=True)
    # Someone else's order looks exactly like a missing one
    if order is None or order.user_id != customer_id:
        raise NotFound("Order not found")
    return order


def _within_cancellation_window(order: Order, now: datetime) -> tuple[bool, float]:
    elapsed = hours_between(order.created_at, now)
    return elapsed < settings.cancellation_window_hours, elapsed


# ── Customer cancellation ────────────────────────────────────────────────────

async def cancel_by_customer(
    session: AsyncSession,
    order_id: str,
    customer_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    order = await _owned_order(session, order_id, customer_id)

    if order.status not in CANCELLABLE:
        raise BusinessRuleViolation(
            f"Orders in status '{order.status}' cannot be cancelled", status=order.status
        )

    inside, elapsed = _within_cancellation_window(order, now)
    if not inside:
        raise BusinessRuleViolation(
            f"Orders can only be cancelled within {settings.cancellation_window_hours} hours "
            "of purchase. Please request a return instead.",
            type="requires_return",
            hoursElapsed=round(elapsed, 2),
        )

    if not await refunds.acquire_refund_lock(session, order.id, allowed_statuses=CANCELLABLE):
        raise await refunds.conflict_for(session, order.id)

    order = await refunds.load_order(session, order_id)
    reason = "Cancelled by customer"
    refund = await refunds.refund_payment(session, order, reason)

    async with refunds.settling(session, order_id, refund["id"]):
        order = await refunds.load_order(session, order_id)
        await refunds.restore_stock_for_order(session, order)
        order.status = CANCELLED
        order.payment_status = "refunded"
        order.pre_refund_status = None
        order.append_note(f"Cancelled by customer after {elapsed:.2f}h, refund {refund['id']}")
        await session.commit()
    logger.info(
        "Order %s cancelled by customer %s (refund %s)",
        order.order_number, customer_id, refund["id"],
    )

    record_id = None
    try:
        record = await insert_numbered(
            session,
            lambda number: ReturnRecord(
                return_number=number,
                order_id=order.id,
                user_id=customer_id,
                type="cancellation",
                status="refunded",
                reason="cancellation",
                refund_amount=refund.get("amount", order.total),
                stripe_refund_id=refund["id"],
                requested_at=now,
                refunded_at=now,
            ),
            ReturnRecord.return_number,
            settings.return_number_prefix,
            now=now,
        )
        await session.commit()
        record_id = record.id
    except NumberAllocationError as exc:
        logger.error("Cancellation record for order %s not saved: %s", order.order_number, exc)

    note = await credit_notes.issue_credit_note(
        session, order, reason, refund_id=refund["id"], return_id=record_id, now=now
    )
    return {
        "success": True,
        "type": "cancellation",
        "refundId": refund["id"],
        "creditNote": note.invoice_number if note else None,
    }


# ── Customer return request ──────────────────────────────────────────────────

def validate_return_reason(reason: str, description: Optional[str]) -> Optional[str]:
    if reason not in RETURN_REASONS:
        raise ValidationFailed("Invalid return reason", allowedReasons=list(RETURN_REASONS))
    description = (description or "").strip() or None
    if description and len(description) > MAX_DESCRIPTION:
        raise ValidationFailed(
            f"Description must be at most {MAX_DESCRIPTION} characters"
        )
    if reason == "other" and (description is None or len(description) < MIN_OTHER_DESCRIPTION):
        raise ValidationFailed(
            f"Please describe the reason with at least {MIN_OTHER_DESCRIPTION} characters"
        )
    return description


def return_instructions(record: ReturnRecord, order: Order) -> Dict[str, Any]:
    deadline = as_utc(record.return_deadline)
    return {
        "title": f"Return {record.return_number} for order {order.order_number}",
        "steps": [
            "Pack the items in their original packaging with all tags attached.",
            f"Write the return number {record.return_number} clearly on the package.",
            "Send the package to the returns address below.",
            "Your refund is issued once we receive and check the items.",
        ],
        "address": settings.returns_address,
        "deadline": deadline.isoformat(),
        "warning": (
            f"Packages sent after {deadline.strftime('%Y-%m-%d')} will not be accepted "
            "and the return will expire."
        ),
    }


async def active_return(session: AsyncSession, order_id: str) -> Optional[ReturnRecord]:
    return (
        await session.execute(
            select(ReturnRecord)
            .where(
                ReturnRecord.order_id == order_id,
                ReturnRecord.status.in_(ACTIVE_RETURN_STATUSES),
            )
            .limit(1)
        )
    ).scalar_one_or_none()


async def request_return(
    session: AsyncSession,
    order_id: str,
    customer_id: str,
    reason: str,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    description = validate_return_reason(reason, description)
    order = await _owned_order(session, order_id, customer_id)

    inside, elapsed = _within_cancellation_window(order, now)
    if order.status in CANCELLABLE and inside:
        raise BusinessRuleViolation(
            "This order can still be cancelled. Please cancel it instead of requesting a return.",
            type="can_cancel",
            hoursElapsed=round(elapsed, 2),
        )
    if order.status not in RETURNABLE:
        raise BusinessRuleViolation(
            f"Orders in status '{order.status}' cannot be returned", status=order.status
        )

    existing = await active_return(session, order.id)
    if existing is not None:
        raise BusinessRuleViolation(
            "A return is already in progress for this order",
            returnNumber=existing.return_number,
        )

    deadline = now + timedelta(days=settings.return_window_days)
    record = await insert_numbered(
        session,
        lambda number: ReturnRecord(
            return_number=number,
            order_id=order.id,
            user_id=customer_id,
            type="return",
            status="pending",
            reason=reason,
            reason_details=description if reason == "other" else None,
            description=description,
            refund_amount=order.total,
            return_deadline=deadline,
            requested_at=now,
        ),
        ReturnRecord.return_number,
        settings.return_number_prefix,
        now=now,
    )

    order.pre_return_status = order.status
    order.status = RETURN_REQUESTED
    order.append_note(f"Return {record.return_number} requested ({reason})")
    await session.commit()
    logger.info("Return %s requested for order %s", record.return_number, order.order_number)

    return {
        "success": True,
        "returnId": record.id,
        "returnNumber": record.return_number,
        "deadline": deadline.isoformat(),
        "instructions": return_instructions(record, order),
    }


# ── Admin returns management ─────────────────────────────────────────────────

async def _load_return(session: AsyncSession, return_id: str) -> ReturnRecord:
    record = await session.get(ReturnRecord, return_id, populate_existing=True)
    if record is None:
        raise NotFound("Return not found")
    return record


async def receive_return(
    session: AsyncSession,
    return_id: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Goods are back: refund (if paid), restore stock, close the return."""
    now = now or utcnow()
    record = await _load_return(session, return_id)
    if record.status not in RECEIVABLE_RETURN_STATUSES:
        raise BusinessRuleViolation(
            f"Returns in status '{record.status}' cannot be received", status=record.status
        )

    order = await refunds.load_order(session, record.order_id)
    reason = f"Return {record.return_number} received"

    if order.status == refunds.REFUNDED or order.payment_status == refunds.REFUNDED:
        # Stock and credit note were already handled by the earlier refund
        record.status = "refunded"
        record.received_at = now
        record.refunded_at = record.refunded_at or now
        if notes:
            record.admin_notes = notes
        order.append_note(f"{reason}, order was already refunded")
        await session.commit()
        logger.warning(
            "Return %s received for already refunded order %s; no stock or credit note change",
            record.return_number, order.order_number,
        )
        return {"success": True, "refundId": None, "creditNote": None}

    refund: Optional[Dict[str, Any]] = None
    if order.payment_status == "paid" and order.payment_id:
        if not await refunds.acquire_refund_lock(session, order.id):
            raise await refunds.conflict_for(session, order.id)
        order = await refunds.load_order(session, record.order_id)
        refund = await refunds.refund_payment(session, order, reason)

    refund_id = refund["id"] if refund else None
    async with refunds.settling(session, record.order_id, refund_id):
        order = await refunds.load_order(session, record.order_id)
        record = await _load_return(session, return_id)
        await refunds.restore_stock_for_order(session, order)
        if refund:
            order.payment_status = "refunded"
        order.status = "refunded"
        order.pre_refund_status = None
        order.pre_return_status = None
        order.append_note(
            f"{reason}, refund {refund_id}" if refund else f"{reason}, no payment to refund"
        )

        record.status = "refunded"
        record.received_at = now
        record.refunded_at = now
        if refund:
            record.stripe_refund_id = refund_id
            record.refund_amount = refund.get("amount", record.refund_amount)
        if notes:
            record.admin_notes = notes
        await session.commit()
    logger.info("Return %s received and refunded", record.return_number)

    note = await credit_notes.issue_credit_note(
        session, order, reason, refund_id=refund_id, return_id=record.id, now=now
    )
    return {
        "success": True,
        "refundId": refund_id,
        "creditNote": note.invoice_number if note else None,
    }


async def reject_return(
    session: AsyncSession, return_id: str, notes: Optional[str] = None
) -> Dict[str, Any]:
    record = await _load_return(session, return_id)
    if record.status != "pending":
        raise BusinessRuleViolation(
            f"Returns in status '{record.status}' cannot be rejected", status=record.status
        )

    order = await refunds.load_order(session, record.order_id)
    record.status = "rejected"
    if notes:
        record.admin_notes = notes
    if order.status == RETURN_REQUESTED:
        order.status = order.pre_return_status or DELIVERED
        order.pre_return_status = None
    order.append_note(f"Return {record.return_number} rejected" + (f": {notes}" if notes else ""))
    await session.commit()
    logger.info("Return %s rejected, order %s back to %s",
                record.return_number, order.order_number, order.status)

    return {"success": True, "returnNumber": record.return_number, "orderStatus": order.status}


async def expire_overdue_returns(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Mark pending/approved returns past their deadline as expired and revert
    their orders. No refund, no stock change. Returns the number expired.
    """
    now = now or utcnow()
    overdue = (
        ReturnRecord.status.in_(EXPIRABLE_RETURN_STATUSES),
        ReturnRecord.return_deadline < now,
    )
    order_ids = (
        await session.execute(select(ReturnRecord.order_id).where(*overdue))
    ).scalars().all()
    if not order_ids:
        return 0

    result = await session.execute(
        update(ReturnRecord)
        .where(*overdue)
        .values(status="expired", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(Order)
        .where(Order.id.in_(order_ids), Order.status == RETURN_REQUESTED)
        .values(
            status=func.coalesce(Order.pre_return_status, DELIVERED),
            pre_return_status=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    expired = result.rowcount
    logger.info("Expired %d overdue returns", expired)
    return expired


# ── Admin forward path ───────────────────────────────────────────────────────

async def advance_status(
    session: AsyncSession,
    order_id: str,
    new_status: str,
    tracking_number: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    if new_status not in FORWARD_PATH:
        raise ValidationFailed("Invalid status", allowedStatuses=list(FORWARD_PATH))

    order = await refunds.load_order(session, order_id)
    current = order.status
    if current not in FORWARD_PATH or FORWARD_PATH.index(new_status) <= FORWARD_PATH.index(current):
        raise BusinessRuleViolation(
            f"Cannot move order from '{current}' to '{new_status}'", status=current
        )

    order.status = new_status
    if tracking_number:
        order.tracking_number = tracking_number
    if new_status in (SHIPPED, DELIVERED) and order.shipped_at is None:
        order.shipped_at = now
    if new_status == DELIVERED:
        order.delivered_at = now
    order.append_note(f"Status {current} -> {new_status}" + (f": {notes}" if notes else ""))
    await session.commit()
    logger.info("Order %s moved %s -> %s", order.order_number, current, new_status)

    return {"success": True, "orderId": order.id, "status": order.status}
