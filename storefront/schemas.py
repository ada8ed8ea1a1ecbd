"""
Pydantic schemas for request/response validation.

Request bodies use the storefront's camelCase field names on the wire.
"""
from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Checkout ──────────────────────────────────────────────────────────────────

class CartItem(_CamelModel):
    id: str = Field(..., pattern=UUID_PATTERN)
    quantity: int = Field(..., gt=0, le=99)
    size: Optional[str] = Field(default=None, max_length=20)


class CheckoutRequest(_CamelModel):
    # Empty carts are rejected by the service with a business message
    items: List[CartItem] = Field(default_factory=list, max_length=50)
    discount_code: Optional[str] = Field(default=None, alias="discountCode", max_length=50)


class CheckoutResponse(_CamelModel):
    url: str
    session_id: str = Field(..., alias="sessionId")


class VerifyOrderRequest(_CamelModel):
    session_id: str = Field(..., alias="sessionId", max_length=255)


# ── Customer order actions ────────────────────────────────────────────────────

class CancelOrderRequest(_CamelModel):
    order_id: str = Field(..., alias="orderId", pattern=UUID_PATTERN)


class ReturnRequest(_CamelModel):
    order_id: str = Field(..., alias="orderId", pattern=UUID_PATTERN)
    reason: str = Field(..., max_length=50)
    description: Optional[str] = Field(default=None, max_length=2000)


# ── Admin ─────────────────────────────────────────────────────────────────────

class OrderStatusUpdate(_CamelModel):
    status: str
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber", max_length=100)
    notes: Optional[str] = Field(default=None, max_length=2000)


class RefundRequest(_CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class ManageReturnRequest(_CamelModel):
    action: Literal["receive", "reject", "expire_check"]
    return_id: Optional[str] = Field(default=None, alias="returnId", pattern=UUID_PATTERN)
    notes: Optional[str] = Field(default=None, max_length=2000)


class StockResponse(_CamelModel):
    product_id: str = Field(..., alias="productId")
    name: str
    stock: int
    stock_by_size: Dict[str, int] = Field(..., alias="stockBySize")


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
