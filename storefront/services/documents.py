"""
Rendering of customer-facing financial documents (invoice, credit note) and
their notification emails.
"""
from __future__ import annotations

import logging

from storefront.models import Invoice, Order
from storefront.services import mailer
from storefront.templates_cfg import templates

logger = logging.getLogger(__name__)


def render_invoice(order: Order) -> str:
    return templates.get_template("invoice.html").render(order=order)


def render_credit_note(note: Invoice, order: Order) -> str:
    return templates.get_template("credit_note.html").render(note=note, order=order)


async def send_invoice_email(order: Order) -> bool:
    """Email the invoice for a freshly paid order. Best-effort."""
    if not order.customer_email:
        logger.warning("Invoice for %s not sent: no customer email", order.order_number)
        return False

    document = render_invoice(order)
    body = templates.get_template("email_invoice.html").render(order=order)
    return await mailer.send_email(
        to=order.customer_email,
        to_name=order.shipping_full_name or None,
        subject=f"Invoice for your order {order.order_number}",
        html=body,
        attachments=[{"name": f"invoice-{order.order_number}.html", "content": document}],
    )


async def send_credit_note_email(note: Invoice, order: Order) -> bool:
    if not note.customer_email:
        logger.warning("Credit note %s not sent: no customer email", note.invoice_number)
        return False

    document = render_credit_note(note, order)
    body = templates.get_template("email_credit_note.html").render(note=note, order=order)
    return await mailer.send_email(
        to=note.customer_email,
        to_name=note.customer_name or None,
        subject=f"Credit note {note.invoice_number} for order {order.order_number}",
        html=body,
        attachments=[{"name": f"credit-note-{note.invoice_number}.html", "content": document}],
    )
