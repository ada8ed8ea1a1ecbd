"""
Credit notes (rectifying invoices) issued once per refund.

Persist first, notify second: the note is committed before the email is
attempted, and neither an email failure nor a persistence failure is allowed
to reach back and undo the refund that caused it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.models import Invoice, Order
from storefront.services import documents
from storefront.services.numbering import NumberAllocationError, insert_numbered
from storefront.time_utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


def _build(
    order: Order,
    number: str,
    reason: str,
    refund_id: Optional[str],
    return_id: Optional[str],
    issued_at: datetime,
) -> Invoice:
    return Invoice(
        invoice_number=number,
        type="credit_note",
        order_id=order.id,
        return_id=return_id,
        customer_name=order.shipping_full_name,
        customer_email=order.customer_email,
        subtotal=-order.subtotal,
        shipping=-order.shipping_cost,
        tax=-order.tax,
        total=-order.total,
        reason=reason,
        stripe_refund_id=refund_id,
        issued_at=issued_at,
    )


async def issue_credit_note(
    session: AsyncSession,
    order: Order,
    reason: str,
    refund_id: Optional[str] = None,
    return_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Invoice]:
    """
    Persist a credit note mirroring *order* with negated amounts, then email
    it. Returns None if the note could not be persisted.
    """
    now = now or utcnow()
    order_number = order.order_number

    try:
        note = await insert_numbered(
            session,
            lambda number: _build(order, number, reason, refund_id, return_id, now),
            Invoice.invoice_number,
            settings.credit_note_prefix,
            now=now,
        )
        await session.commit()
    except (SQLAlchemyError, NumberAllocationError) as exc:
        logger.error(
            "Credit note for order %s NOT persisted (refund %s stands): %s",
            order_number, refund_id, exc,
        )
        await session.rollback()
        return None

    logger.info("Credit note %s issued for order %s", note.invoice_number, order_number)

    try:
        sent = await documents.send_credit_note_email(note, order)
    except Exception as exc:
        logger.error("Credit note %s email failed: %s", note.invoice_number, exc)
        sent = False

    if sent:
        note.emailed_at = utcnow()
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Could not stamp emailed_at on %s: %s", note.invoice_number, exc)
            await session.rollback()
    return note


async def latest_credit_note(session: AsyncSession, order_id: str) -> Optional[Invoice]:
    return (
        await session.execute(
            select(Invoice)
            .where(Invoice.order_id == order_id, Invoice.type == "credit_note")
            .order_by(Invoice.issued_at.desc(), Invoice.invoice_number.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
