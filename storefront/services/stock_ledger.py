"""
Stock Ledger: per-product / per-size counters.

Every mutation is a single conditional UPDATE evaluated by the database
(``... WHERE quantity >= :qty``); nothing here reads a counter and writes it
back, except unsafe_decrement(), which only runs in degraded mode.

A size row, when it exists, takes precedence over the product's global
``stock`` counter for that size.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.models import Product, ProductSizeStock
from storefront.time_utils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class StockLine:
    product_id: str
    size: Optional[str]
    quantity: int


@dataclass
class DecrementOutcome:
    ok: bool
    strategy: str   # 'atomic' | 'retry' | 'unsafe' | 'none'


def available_quantity(product: Product, size: Optional[str]) -> int:
    """Effective availability: the size counter if present, else the global one."""
    by_size = product.stock_by_size
    if size is not None and size in by_size:
        return by_size[size]
    return product.stock


async def _has_size_row(session: AsyncSession, product_id: str, size: Optional[str]) -> bool:
    if size is None:
        return False
    row = (
        await session.execute(
            select(ProductSizeStock.product_id).where(
                ProductSizeStock.product_id == product_id,
                ProductSizeStock.size == size,
            )
        )
    ).first()
    return row is not None


async def decrement(
    session: AsyncSession, product_id: str, size: Optional[str], quantity: int
) -> bool:
    """
    Atomically subtract *quantity* if, and only if, enough stock remains.
    Returns False (and changes nothing) when stock is insufficient.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    if await _has_size_row(session, product_id, size):
        stmt = (
            update(ProductSizeStock)
            .where(
                ProductSizeStock.product_id == product_id,
                ProductSizeStock.size == size,
                ProductSizeStock.quantity >= quantity,
            )
            .values(quantity=ProductSizeStock.quantity - quantity, updated_at=utcnow())
        )
    else:
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
        )

    result = await session.execute(stmt.execution_options(synchronize_session=False))
    ok = result.rowcount == 1
    if ok:
        logger.info("Stock decremented: product=%s size=%s qty=%d", product_id, size, quantity)
    else:
        logger.warning(
            "Stock decrement rejected (insufficient): product=%s size=%s qty=%d",
            product_id, size, quantity,
        )
    return ok


async def increment(
    session: AsyncSession, product_id: str, size: Optional[str], quantity: int
) -> None:
    """Unconditionally add *quantity* back (cancellations, refunds)."""
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    if size is not None:
        result = await session.execute(
            update(ProductSizeStock)
            .where(
                ProductSizeStock.product_id == product_id,
                ProductSizeStock.size == size,
            )
            .values(quantity=ProductSizeStock.quantity + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Stock restored: product=%s size=%s qty=%+d", product_id, size, quantity)
            return

    await session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    logger.info("Stock restored: product=%s (global) qty=%+d", product_id, quantity)


async def validate_and_decrement(session: AsyncSession, lines: Iterable[StockLine]) -> bool:
    """
    All-or-nothing bulk decrement. If any line is rejected, lines already
    applied are compensated and False is returned.
    """
    applied: List[StockLine] = []
    for line in lines:
        if not await decrement(session, line.product_id, line.size, line.quantity):
            for done in reversed(applied):
                await increment(session, done.product_id, done.size, done.quantity)
            return False
        applied.append(line)
    return True


async def unsafe_decrement(
    session: AsyncSession, product_id: str, size: Optional[str], quantity: int
) -> bool:
    """
    Read-modify-write decrement. Not safe under concurrency; only allowed when
    STOCK_DEGRADED_MODE is enabled, and always logged at error level.
    """
    if not settings.stock_degraded_mode:
        raise RuntimeError("unsafe stock update attempted outside degraded mode")

    logger.error(
        "DEGRADED MODE: unsafe read-modify-write stock update product=%s size=%s qty=%d",
        product_id, size, quantity,
    )
    product = (
        await session.execute(
            select(Product)
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if product is None:
        return False

    for row in product.sizes:
        if row.size == size:
            if row.quantity < quantity:
                return False
            row.quantity = row.quantity - quantity
            await session.flush()
            return True

    if product.stock < quantity:
        return False
    product.stock = product.stock - quantity
    await session.flush()
    return True


async def decrement_with_fallbacks(session: AsyncSession, line: StockLine) -> DecrementOutcome:
    """
    Try the atomic decrement, then retry it once in a fresh savepoint, then
    (degraded mode only) the unsafe update.

    The retry runs the same conditional UPDATE: it only helps with transient
    database errors such as a deadlock or a lock timeout. A plain
    "insufficient stock" answer never moves on to the next tier.
    """
    for strategy in ("atomic", "retry"):
        try:
            async with session.begin_nested():
                ok = await decrement(session, line.product_id, line.size, line.quantity)
            return DecrementOutcome(ok=ok, strategy=strategy)
        except SQLAlchemyError as exc:
            logger.warning(
                "Stock decrement (%s) failed for product=%s: %s", strategy, line.product_id, exc
            )

    if not settings.stock_degraded_mode:
        logger.error(
            "No safe stock decrement available: product=%s size=%s qty=%d",
            line.product_id, line.size, line.quantity,
        )
        return DecrementOutcome(ok=False, strategy="none")

    ok = await unsafe_decrement(session, line.product_id, line.size, line.quantity)
    return DecrementOutcome(ok=ok, strategy="unsafe")
