"""
Integration tests for the Stripe webhook endpoint.
Payloads are signed with the real Stripe-Signature scheme.
"""
from __future__ import annotations

import json
from typing import List
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from storefront.models import DiscountCode, Order

from payloads import checkout_event, deliver, line_item

GATEWAY = "storefront.services.stripe_gateway"


async def _orders(db_factory) -> List[Order]:
    async with db_factory() as session:
        return list((await session.execute(select(Order))).scalars().all())


@pytest.mark.asyncio
async def test_wrong_signature_rejected(client, db_factory):
    resp = await deliver(client, checkout_event(), signature="t=1,v1=deadbeef")

    assert resp.status_code == 400
    assert await _orders(db_factory) == []


@pytest.mark.asyncio
async def test_missing_signature_rejected(client):
    resp = await client.post("/webhooks/stripe", content=b"{}")

    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_completed_creates_order_and_decrements(client, db_factory, make_product, stock_of):
    product = await make_product(sizes={"M": 5})
    items = AsyncMock(return_value=[line_item(product.id, "M", 2)])

    with patch(f"{GATEWAY}.list_line_items", items):
        resp = await deliver(client, checkout_event())

    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert body["processed"] is True
    assert body["orderCreated"] is True

    orders = await _orders(db_factory)
    assert len(orders) == 1
    order = orders[0]
    assert order.payment_id == "pi_123"
    assert order.stripe_session_id == "cs_test_paid1"
    assert order.status == "confirmed"
    assert order.payment_status == "paid"
    assert order.user_id == "user-1"
    assert order.total == 8000
    assert order.shipping_city == "Madrid"
    assert order.needs_review is False
    assert [(i.product_id, i.size, i.quantity, i.unit_price) for i in order.items] == [
        (product.id, "M", 2, 4000)
    ]
    assert await stock_of(product.id, "M") == 3


@pytest.mark.asyncio
async def test_duplicate_delivery_creates_one_order(client, db_factory, make_product, stock_of):
    product = await make_product(sizes={"M": 5})
    items = AsyncMock(return_value=[line_item(product.id, "M", 2)])
    event = checkout_event()

    with patch(f"{GATEWAY}.list_line_items", items):
        first = await deliver(client, event)
        second = await deliver(client, event)

    assert first.json()["orderCreated"] is True
    assert second.status_code == 200
    assert second.json()["orderCreated"] is False
    assert second.json()["orderNumber"] == first.json()["orderNumber"]

    orders = await _orders(db_factory)
    assert len(orders) == 1
    assert await stock_of(product.id, "M") == 3
    # Duplicate short-circuits before asking Stripe again
    assert items.await_count == 1


@pytest.mark.asyncio
async def test_missing_product_flags_review(client, db_factory, make_product, stock_of):
    product = await make_product(sizes={"M": 5})
    items = AsyncMock(return_value=[
        line_item(product.id, "M", 1),
        line_item("00000000-0000-4000-8000-000000000000", "L", 1, name="Ghost Jacket"),
    ])

    with patch(f"{GATEWAY}.list_line_items", items):
        resp = await deliver(client, checkout_event())

    assert resp.status_code == 200
    order = (await _orders(db_factory))[0]
    assert order.needs_review is True
    assert "Ghost Jacket" in order.admin_notes
    assert len(order.items) == 1
    assert await stock_of(product.id, "M") == 4


@pytest.mark.asyncio
async def test_insufficient_stock_keeps_order_and_flags_review(
    client, db_factory, make_product, stock_of
):
    product = await make_product(sizes={"M": 1})
    items = AsyncMock(return_value=[line_item(product.id, "M", 2)])

    with patch(f"{GATEWAY}.list_line_items", items):
        resp = await deliver(client, checkout_event())

    assert resp.status_code == 200
    order = (await _orders(db_factory))[0]
    assert order.needs_review is True
    assert "stock not decremented" in order.admin_notes
    # Rejected, never clamped or driven negative
    assert await stock_of(product.id, "M") == 1


@pytest.mark.asyncio
async def test_product_resolved_from_session_metadata(client, db_factory, make_product, stock_of):
    product = await make_product(sizes={"S": 4})
    metadata = {
        "user_id": "guest",
        "order_items_sizes": json.dumps([{"product_id": product.id, "size": "S", "quantity": 1}]),
    }
    items = AsyncMock(return_value=[line_item(None, None, 1)])

    with patch(f"{GATEWAY}.list_line_items", items):
        await deliver(client, checkout_event(metadata=metadata))

    order = (await _orders(db_factory))[0]
    assert order.user_id is None
    assert order.items[0].size == "S"
    assert await stock_of(product.id, "S") == 3


@pytest.mark.asyncio
async def test_discount_usage_recorded(client, db_factory, make_product):
    product = await make_product(sizes={"M": 5})
    async with db_factory() as session:
        session.add(DiscountCode(code="SPRING10", discount_type="percentage", discount_value=10))
        await session.commit()
    metadata = {"user_id": "user-1", "discount_code": "SPRING10", "discount_amount": "800"}

    with patch(f"{GATEWAY}.list_line_items", AsyncMock(return_value=[line_item(product.id, "M", 2)])):
        await deliver(client, checkout_event(metadata=metadata))

    async with db_factory() as session:
        code = (await session.execute(select(DiscountCode))).scalar_one()
    assert code.uses == 1


@pytest.mark.asyncio
async def test_unpaid_session_does_nothing(client, db_factory):
    items = AsyncMock()
    with patch(f"{GATEWAY}.list_line_items", items):
        resp = await deliver(client, checkout_event(payment_status="unpaid"))

    assert resp.status_code == 200
    assert resp.json()["orderCreated"] is False
    items.assert_not_awaited()
    assert await _orders(db_factory) == []


@pytest.mark.asyncio
async def test_processing_error_is_still_acknowledged(client, db_factory):
    failing = AsyncMock(side_effect=RuntimeError("stripe exploded"))

    with patch(f"{GATEWAY}.list_line_items", failing):
        resp = await deliver(client, checkout_event())

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "processed": False}
    assert await _orders(db_factory) == []


@pytest.mark.asyncio
async def test_unhandled_event_acknowledged(client):
    event = checkout_event(event_type="customer.created")
    resp = await deliver(client, event)

    assert resp.status_code == 200
    assert resp.json()["handled"] is False
