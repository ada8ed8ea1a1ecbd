"""
Admin / operational endpoints.

GET  /admin/health
GET  /admin/stock/{product_id}
POST /admin/orders/{order_id}/refund
POST /admin/orders/{order_id}/status
POST /admin/returns/manage
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.admin.deps import require_admin
from storefront.database import get_db
from storefront.errors import NotFound, ValidationFailed
from storefront.models import AdminUser, Product
from storefront.schemas import (
    HealthResponse,
    ManageReturnRequest,
    OrderStatusUpdate,
    RefundRequest,
    StockResponse,
)
from storefront.services import lifecycle, refunds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get("/stock/{product_id}", response_model=StockResponse)
async def get_product_stock(
    product_id: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminUser = Depends(require_admin),
) -> StockResponse:
    product = await db.get(Product, product_id, populate_existing=True)
    if product is None:
        raise NotFound(f"Product {product_id!r} not found")
    return StockResponse(
        product_id=product.id,
        name=product.name,
        stock=product.stock,
        stock_by_size=product.stock_by_size,
    )


@router.post("/orders/{order_id}/refund")
async def refund_order(
    order_id: str,
    body: Optional[RefundRequest] = Body(default=None),
    db: AsyncSession = Depends(get_db),
    admin: AdminUser = Depends(require_admin),
) -> Dict[str, Any]:
    reason = body.reason if body and body.reason else f"Full refund by {admin.username}"
    logger.info("Admin %s requested refund of order %s", admin.username, order_id)
    return await refunds.refund_order(db, order_id, reason)


@router.post("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    db: AsyncSession = Depends(get_db),
    admin: AdminUser = Depends(require_admin),
) -> Dict[str, Any]:
    return await lifecycle.advance_status(
        db, order_id, body.status, tracking_number=body.tracking_number, notes=body.notes
    )


@router.post("/returns/manage")
async def manage_return(
    body: ManageReturnRequest,
    db: AsyncSession = Depends(get_db),
    admin: AdminUser = Depends(require_admin),
) -> Dict[str, Any]:
    if body.action == "expire_check":
        expired = await lifecycle.expire_overdue_returns(db)
        return {"success": True, "expired": expired}

    if not body.return_id:
        raise ValidationFailed("returnId is required")

    logger.info("Admin %s: %s return %s", admin.username, body.action, body.return_id)
    if body.action == "receive":
        return await lifecycle.receive_return(db, body.return_id, notes=body.notes)
    return await lifecycle.reject_return(db, body.return_id, notes=body.notes)
