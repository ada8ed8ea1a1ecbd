"""
Unit tests for the Stock Ledger: conditional decrement, restoration, fallbacks.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from storefront.services import stock_ledger
from storefront.services.stock_ledger import StockLine


@pytest.mark.asyncio
async def test_decrement_size_row(db_session, make_product, stock_of):
    product = await make_product(stock=50, sizes={"M": 3})

    assert await stock_ledger.decrement(db_session, product.id, "M", 2) is True
    await db_session.commit()

    assert await stock_of(product.id, "M") == 1
    # Global counter untouched when a size row exists
    assert await stock_of(product.id) == 50


@pytest.mark.asyncio
async def test_decrement_rejected_not_clamped(db_session, make_product, stock_of):
    product = await make_product(sizes={"M": 1})

    assert await stock_ledger.decrement(db_session, product.id, "M", 2) is False
    await db_session.commit()

    assert await stock_of(product.id, "M") == 1


@pytest.mark.asyncio
async def test_decrement_falls_back_to_global_counter(db_session, make_product, stock_of):
    product = await make_product(stock=4, sizes={"M": 10})

    # No row for size L: the global counter applies
    assert await stock_ledger.decrement(db_session, product.id, "L", 4) is True
    assert await stock_ledger.decrement(db_session, product.id, None, 1) is False
    await db_session.commit()

    assert await stock_of(product.id) == 0
    assert await stock_of(product.id, "M") == 10


@pytest.mark.asyncio
async def test_decrement_requires_positive_quantity(db_session, make_product):
    product = await make_product(stock=4)

    with pytest.raises(ValueError):
        await stock_ledger.decrement(db_session, product.id, None, 0)


@pytest.mark.asyncio
async def test_increment_restores_size_or_global(db_session, make_product, stock_of):
    product = await make_product(stock=1, sizes={"S": 0})

    await stock_ledger.increment(db_session, product.id, "S", 2)
    await stock_ledger.increment(db_session, product.id, "XL", 3)
    await db_session.commit()

    assert await stock_of(product.id, "S") == 2
    assert await stock_of(product.id) == 4


@pytest.mark.asyncio
async def test_concurrent_decrements_never_oversell(db_factory, make_product, stock_of):
    product = await make_product(sizes={"M": 3})

    async def buy() -> bool:
        async with db_factory() as session:
            ok = await stock_ledger.decrement(session, product.id, "M", 1)
            await session.commit()
            return ok

    results = await asyncio.gather(*(buy() for _ in range(5)))

    assert results.count(True) == 3
    assert await stock_of(product.id, "M") == 0


@pytest.mark.asyncio
async def test_validate_and_decrement_is_all_or_nothing(db_session, make_product, stock_of):
    shirt = await make_product(name="Shirt", sizes={"M": 5})
    jeans = await make_product(name="Jeans", sizes={"32": 1})

    ok = await stock_ledger.validate_and_decrement(
        db_session,
        [StockLine(shirt.id, "M", 2), StockLine(jeans.id, "32", 2)],
    )
    await db_session.commit()

    assert ok is False
    assert await stock_of(shirt.id, "M") == 5
    assert await stock_of(jeans.id, "32") == 1


@pytest.mark.asyncio
async def test_available_quantity(make_product):
    product = await make_product(stock=7, sizes={"M": 2})

    assert stock_ledger.available_quantity(product, "M") == 2
    assert stock_ledger.available_quantity(product, "XS") == 7
    assert stock_ledger.available_quantity(product, None) == 7


@pytest.mark.asyncio
async def test_fallbacks_retry_after_transient_error(db_session, make_product, stock_of):
    product = await make_product(sizes={"M": 2})
    broken = AsyncMock(side_effect=OperationalError("UPDATE", {}, Exception("rpc down")))
    line = StockLine(product.id, "M", 1)

    # First attempt hits a transient error, the retry goes through
    real_decrement = stock_ledger.decrement
    calls = {"n": 0}

    async def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return await broken(*args, **kwargs)
        return await real_decrement(*args, **kwargs)

    with patch("storefront.services.stock_ledger.decrement", side_effect=flaky):
        outcome = await stock_ledger.decrement_with_fallbacks(db_session, line)
    await db_session.commit()

    assert outcome.ok is True
    assert outcome.strategy == "retry"
    assert await stock_of(product.id, "M") == 1


@pytest.mark.asyncio
async def test_unsafe_tier_refused_outside_degraded_mode(db_session, make_product, stock_of):
    product = await make_product(sizes={"M": 2})
    error = OperationalError("UPDATE", {}, Exception("rpc down"))

    with patch("storefront.services.stock_ledger.decrement", new_callable=AsyncMock,
               side_effect=error):
        outcome = await stock_ledger.decrement_with_fallbacks(
            db_session, StockLine(product.id, "M", 1)
        )
    await db_session.commit()

    assert outcome.ok is False
    assert outcome.strategy == "none"
    assert await stock_of(product.id, "M") == 2

    with pytest.raises(RuntimeError):
        await stock_ledger.unsafe_decrement(db_session, product.id, "M", 1)


@pytest.mark.asyncio
async def test_unsafe_tier_in_degraded_mode(db_session, make_product, stock_of, monkeypatch):
    monkeypatch.setattr(stock_ledger.settings, "stock_degraded_mode", True)
    product = await make_product(sizes={"M": 2})
    error = OperationalError("UPDATE", {}, Exception("rpc down"))

    with patch("storefront.services.stock_ledger.decrement", new_callable=AsyncMock,
               side_effect=error):
        outcome = await stock_ledger.decrement_with_fallbacks(
            db_session, StockLine(product.id, "M", 1)
        )
    await db_session.commit()

    assert outcome.ok is True
    assert outcome.strategy == "unsafe"
    assert await stock_of(product.id, "M") == 1
