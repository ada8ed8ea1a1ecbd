"""
Shared pytest fixtures – file-backed SQLite per test (no real Postgres needed).
"""
from __future__ import annotations

import os
import tempfile

# Settings are read once at import time: configure before importing storefront
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="storefront-tests-"), "app.db"
)
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["RETURNS_EXPIRY_INTERVAL_SECONDS"] = "0"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
os.environ.pop("BREVO_API_KEY", None)

from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.database import build_engine, get_db, init_db
from storefront.main import app
from storefront.models import Order, OrderItem, Product, ProductSizeStock

CUSTOMER_ID = "user-1"


@pytest_asyncio.fixture(scope="function")
async def db_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    yield factory

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_factory) -> AsyncGenerator[AsyncSession, None]:
    async with db_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def client(db_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with db_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db_factory):
    async def _make(
        name: str = "Linen Shirt",
        price: int = 4000,
        stock: int = 0,
        sizes: Optional[Dict[str, int]] = None,
        **kwargs,
    ) -> Product:
        async with db_factory() as session:
            product = Product(
                name=name,
                slug=kwargs.pop("slug", name.lower().replace(" ", "-")),
                price=price,
                stock=stock,
                images=kwargs.pop("images", ["https://img.example/p.jpg"]),
                **kwargs,
            )
            product.sizes = [
                ProductSizeStock(size=size, quantity=qty) for size, qty in (sizes or {}).items()
            ]
            session.add(product)
            await session.commit()
            return product

    return _make


@pytest.fixture
def make_order(db_factory):
    async def _make(
        lines: List[Tuple[Product, Optional[str], int]],
        user_id: Optional[str] = CUSTOMER_ID,
        status: str = "confirmed",
        created_at: Optional[datetime] = None,
        payment_id: Optional[str] = "pi_test_1",
        payment_status: str = "paid",
        order_number: str = "ORD-2026-000001-AAAAAA",
    ) -> Order:
        subtotal = sum(p.unit_price * qty for p, _, qty in lines)
        async with db_factory() as session:
            order = Order(
                order_number=order_number,
                user_id=user_id,
                customer_email="ana@example.com",
                shipping_full_name="Ana Garcia",
                subtotal=subtotal,
                total=subtotal,
                payment_id=payment_id,
                stripe_session_id=f"cs_test_{order_number.replace('-', '')}",
                payment_status=payment_status,
                status=status,
                created_at=created_at or datetime.now(timezone.utc),
                items=[
                    OrderItem(
                        product_id=p.id,
                        product_name=p.name,
                        product_slug=p.slug,
                        size=size,
                        quantity=qty,
                        unit_price=p.unit_price,
                        subtotal=p.unit_price * qty,
                    )
                    for p, size, qty in lines
                ],
            )
            session.add(order)
            await session.commit()
            return order

    return _make


@pytest.fixture
def stock_of(db_factory):
    """Current counter for a product/size straight from the database."""
    async def _read(product_id: str, size: Optional[str] = None) -> int:
        async with db_factory() as session:
            if size is not None:
                row = await session.get(ProductSizeStock, (product_id, size))
                if row is not None:
                    return row.quantity
            product = (
                await session.execute(select(Product).where(Product.id == product_id))
            ).scalar_one()
            return product.stock

    return _read
