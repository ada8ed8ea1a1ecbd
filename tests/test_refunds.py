"""
Admin refunds: the refund lock, gateway failures and credit note persistence.
"""
from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
import stripe
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from storefront.admin.deps import require_admin
from storefront.errors import RefundConflict
from storefront.main import app
from storefront.models import AdminUser, Invoice, Order
from storefront.services import refunds

GATEWAY = "storefront.services.stripe_gateway"
REFUND = {"id": "re_test_1", "amount": 8000, "status": "succeeded"}


@pytest_asyncio.fixture
async def as_admin(client):
    app.dependency_overrides[require_admin] = lambda: AdminUser(username="ops", password_hash="x")
    yield client


async def _order(db_factory, order_id) -> Order:
    async with db_factory() as session:
        return await session.get(Order, order_id)


async def _notes(db_factory):
    async with db_factory() as session:
        return list((await session.execute(select(Invoice))).scalars().all())


@pytest.mark.asyncio
async def test_concurrent_refunds_call_gateway_once(db_factory, make_product, make_order,
                                                    stock_of):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 2)])

    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_refund(*args, **kwargs):
        entered.set()
        await release.wait()
        return REFUND

    gateway = AsyncMock(side_effect=slow_refund)

    async def refund():
        async with db_factory() as session:
            return await refunds.refund_order(session, order.id, "Damaged in transit")

    with patch(f"{GATEWAY}.create_refund", gateway):
        first = asyncio.create_task(refund())
        await entered.wait()

        # The first request holds the lock while Stripe is working
        assert (await _order(db_factory, order.id)).status == "refunding"
        with pytest.raises(RefundConflict):
            await refund()

        release.set()
        result = await first

    assert gateway.await_count == 1
    assert result["refund"] == {"id": "re_test_1", "amount": 8000, "status": "succeeded"}
    stored = await _order(db_factory, order.id)
    assert stored.status == "refunded"
    assert stored.payment_status == "refunded"
    assert stored.pre_refund_status is None
    # Restored exactly once
    assert await stock_of(product.id, "M") == 5
    assert len(await _notes(db_factory)) == 1


@pytest.mark.asyncio
async def test_refund_endpoint_and_repeat_conflict(as_admin, db_factory, make_product,
                                                   make_order):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 1)], status="delivered")
    gateway = AsyncMock(return_value=REFUND)

    with patch(f"{GATEWAY}.create_refund", gateway):
        first = await as_admin.post(f"/admin/orders/{order.id}/refund", json={"reason": "Lost"})
        second = await as_admin.post(f"/admin/orders/{order.id}/refund")

    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    assert body["refund"]["id"] == "re_test_1"
    assert body["creditNote"].startswith("ABON-")
    assert gateway.await_args.kwargs["idempotency_key"] == f"refund-{order.id}"

    assert second.status_code == 409
    assert second.json()["success"] is False
    assert gateway.await_count == 1


@pytest.mark.asyncio
async def test_gateway_failure_releases_lock(as_admin, db_factory, make_product, make_order,
                                             stock_of):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 1)], status="shipped")
    failing = AsyncMock(side_effect=stripe.APIConnectionError("network down"))

    with patch(f"{GATEWAY}.create_refund", failing):
        resp = await as_admin.post(f"/admin/orders/{order.id}/refund")

    assert resp.status_code == 500
    assert resp.json() == {
        "success": False,
        "error": "Refund could not be processed, please try again later",
    }
    stored = await _order(db_factory, order.id)
    assert stored.status == "shipped"
    assert stored.payment_status == "paid"
    assert stored.pre_refund_status is None
    assert await stock_of(product.id, "M") == 3
    assert await _notes(db_factory) == []

    # Lock released: a retry goes through
    with patch(f"{GATEWAY}.create_refund", AsyncMock(return_value=REFUND)):
        retry = await as_admin.post(f"/admin/orders/{order.id}/refund")
    assert retry.status_code == 200


@pytest.mark.asyncio
async def test_unpaid_order_is_not_refundable(as_admin, make_product, make_order):
    product = await make_product(sizes={"M": 3})
    order = await make_order(
        [(product, "M", 1)], status="pending", payment_id=None, payment_status="unpaid"
    )
    gateway = AsyncMock(return_value=REFUND)

    with patch(f"{GATEWAY}.create_refund", gateway):
        resp = await as_admin.post(f"/admin/orders/{order.id}/refund")

    assert resp.status_code == 400
    assert resp.json()["error"] == "Order has not been paid"
    gateway.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_order_is_404(as_admin):
    resp = await as_admin.post("/admin/orders/00000000-0000-4000-8000-000000000000/refund")

    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_email_failure_keeps_credit_note(db_session, db_factory, make_product, make_order):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 1)])
    broken_mail = AsyncMock(side_effect=RuntimeError("smtp down"))

    with patch(f"{GATEWAY}.create_refund", AsyncMock(return_value=REFUND)), \
         patch("storefront.services.documents.send_credit_note_email", broken_mail):
        result = await refunds.refund_order(db_session, order.id)

    broken_mail.assert_awaited_once()
    notes = await _notes(db_factory)
    assert len(notes) == 1
    assert notes[0].invoice_number == result["creditNote"]
    assert notes[0].emailed_at is None
    assert notes[0].stripe_refund_id == "re_test_1"
    assert (await _order(db_factory, order.id)).status == "refunded"


@pytest.mark.asyncio
async def test_sent_email_is_stamped(db_session, db_factory, make_product, make_order):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 1)])

    with patch(f"{GATEWAY}.create_refund", AsyncMock(return_value=REFUND)), \
         patch("storefront.services.documents.send_credit_note_email",
               AsyncMock(return_value=True)):
        await refunds.refund_order(db_session, order.id)

    (note,) = await _notes(db_factory)
    assert note.emailed_at is not None


@pytest.mark.asyncio
async def test_failed_order_update_after_refund_is_flagged(db_session, db_factory, make_product,
                                                           make_order, stock_of, caplog):
    product = await make_product(sizes={"M": 3})
    order = await make_order([(product, "M", 2)])
    broken = AsyncMock(
        side_effect=OperationalError("UPDATE products", {}, Exception("database is locked"))
    )

    with patch(f"{GATEWAY}.create_refund", AsyncMock(return_value=REFUND)), \
         patch("storefront.services.refunds.restore_stock_for_order", broken), \
         caplog.at_level(logging.ERROR, logger="storefront.services.refunds"):
        with pytest.raises(OperationalError):
            await refunds.refund_order(db_session, order.id)

    stored = await _order(db_factory, order.id)
    assert stored.needs_review is True
    assert "MANUAL REVIEW: refund re_test_1" in stored.admin_notes
    # Left locked so nobody refunds it a second time
    assert stored.status == "refunding"
    assert await stock_of(product.id, "M") == 3
    assert await _notes(db_factory) == []
    assert any("re_test_1" in r.getMessage() for r in caplog.records if r.levelno == logging.ERROR)
