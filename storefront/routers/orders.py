"""
Customer order actions.

POST /api/orders/cancel
POST /api/orders/return
GET  /api/orders/{order_id}/invoice
GET  /api/orders/{order_id}/credit-note

Both downloads are open to the order's owner and to any active admin.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.admin.auth import active_admin
from storefront.database import get_db
from storefront.deps import current_customer, require_customer
from storefront.errors import NotAuthenticated, NotFound
from storefront.models import Order
from storefront.schemas import CancelOrderRequest, ReturnRequest
from storefront.services import credit_notes, documents, lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/cancel")
async def cancel_order(
    body: CancelOrderRequest,
    customer_id: str = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await lifecycle.cancel_by_customer(db, body.order_id, customer_id)


@router.post("/return")
async def request_return(
    body: ReturnRequest,
    customer_id: str = Depends(require_customer),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await lifecycle.request_return(
        db, body.order_id, customer_id, body.reason, body.description
    )


async def _viewable_order(
    db: AsyncSession, request: Request, order_id: str, customer_id: Optional[str]
) -> Order:
    """The order, if the caller owns it or is an active admin."""
    is_admin = await active_admin(db, request) is not None
    if not is_admin and not customer_id:
        raise NotAuthenticated("Authentication required")

    order = await db.get(Order, order_id)
    if order is None or (not is_admin and order.user_id != customer_id):
        raise NotFound("Order not found")
    return order


@router.get("/{order_id}/invoice", response_class=HTMLResponse)
async def download_invoice(
    order_id: str,
    request: Request,
    customer_id: Optional[str] = Depends(current_customer),
    db: AsyncSession = Depends(get_db),
) -> HTMLResponse:
    order = await _viewable_order(db, request, order_id, customer_id)
    return HTMLResponse(
        documents.render_invoice(order),
        headers={"Content-Disposition": f'inline; filename="invoice-{order.order_number}.html"'},
    )


@router.get("/{order_id}/credit-note", response_class=HTMLResponse)
async def download_credit_note(
    order_id: str,
    request: Request,
    customer_id: Optional[str] = Depends(current_customer),
    db: AsyncSession = Depends(get_db),
) -> HTMLResponse:
    """Latest credit note of the order."""
    order = await _viewable_order(db, request, order_id, customer_id)
    note = await credit_notes.latest_credit_note(db, order.id)
    if note is None:
        raise NotFound("No credit note for this order")

    return HTMLResponse(
        documents.render_credit_note(note, order),
        headers={
            "Content-Disposition": f'inline; filename="credit-note-{note.invoice_number}.html"'
        },
    )
