"""
SQLAlchemy ORM models: catalogue + stock ledger, orders, returns, credit notes.

All monetary columns hold integer minor units (cents).
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


_JSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ── Catalogue / Stock Ledger ─────────────────────────────────────────────────

class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    sku: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    sale_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_on_sale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Global fallback counter, used for sizes without their own row
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    images: Mapped[list] = mapped_column(_JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    sizes: Mapped[List["ProductSizeStock"]] = relationship(
        back_populates="product", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    @property
    def unit_price(self) -> int:
        if self.is_on_sale and self.sale_price is not None:
            return self.sale_price
        return self.price

    @property
    def stock_by_size(self) -> Dict[str, int]:
        return {s.size: s.quantity for s in self.sizes}

    @property
    def image(self) -> str | None:
        return self.images[0] if self.images else None


class ProductSizeStock(Base):
    __tablename__ = "product_size_stock"

    product_id: Mapped[str] = mapped_column(
        Text, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    size: Mapped[str] = mapped_column(Text, primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    product: Mapped[Product] = relationship(back_populates="sizes")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_size_stock_non_negative"),
    )


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[str] = mapped_column(Text, nullable=False)  # 'percentage' | 'fixed'
    # Percentage points for 'percentage', cents for 'fixed'
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)
    min_purchase_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )


# ── Orders ────────────────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    customer_email: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Shipping snapshot, captured at payment time
    shipping_full_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_phone: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_address_line1: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_address_line2: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_city: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_state: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_postal_code: Mapped[str] = mapped_column(Text, nullable=False, default="")
    shipping_country: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Monetary snapshot, taken from the gateway's amounts
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shipping_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="eur")

    # Correlation keys: one order per payment
    payment_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    stripe_session_id: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="card")
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="unpaid")

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    pre_return_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_refund_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    tracking_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", lazy="selectin", order_by="OrderItem.id"
    )

    def append_note(self, note: str) -> None:
        """Append a timestamped line to the admin audit trail."""
        stamp = _now().strftime("%Y-%m-%d %H:%M UTC")
        line = f"{note} ({stamp})"
        self.admin_notes = f"{self.admin_notes}\n{line}" if self.admin_notes else line


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    product_slug: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    size: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )

    order: Mapped[Order] = relationship(back_populates="items")


class ReturnRecord(Base):
    __tablename__ = "returns"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    return_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)  # 'cancellation' | 'return'
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reason_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    return_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stripe_refund_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    order: Mapped[Order] = relationship(lazy="selectin")


class Invoice(Base):
    """Financial documents. Only credit notes (rectifying invoices) are persisted here."""
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    invoice_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="credit_note")
    order_id: Mapped[str] = mapped_column(
        Text, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    return_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    customer_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Negated amounts mirroring the original order
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping: Mapped[int] = mapped_column(Integer, nullable=False)
    tax: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    stripe_refund_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    emailed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ── Admin ─────────────────────────────────────────────────────────────────────

class AdminUser(Base):
    __tablename__ = "admin_users"

    id: Mapped[str] = mapped_column(Text, primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
