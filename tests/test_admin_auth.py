"""
Tests for admin authentication: login, logout, access protection.
"""
from __future__ import annotations

import pytest
import pytest_asyncio

from storefront.admin.auth import hash_password
from storefront.models import AdminUser


@pytest_asyncio.fixture(autouse=True)
async def admin_user(db_factory):
    async with db_factory() as session:
        session.add(AdminUser(
            username="admin",
            password_hash=hash_password("secret123"),
            is_active=True,
        ))
        session.add(AdminUser(
            username="retired",
            password_hash=hash_password("secret123"),
            is_active=False,
        ))
        await session.commit()


@pytest.mark.asyncio
async def test_login_valid_credentials(client):
    resp = await client.post(
        "/admin/login", data={"username": "admin", "password": "secret123"}
    )

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "username": "admin"}


@pytest.mark.asyncio
async def test_login_invalid_password(client):
    resp = await client.post(
        "/admin/login", data={"username": "admin", "password": "wrongpassword"}
    )

    assert resp.status_code == 401
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_login_unknown_user(client):
    resp = await client.post(
        "/admin/login", data={"username": "nobody", "password": "anything"}
    )

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_login_inactive_user(client):
    resp = await client.post(
        "/admin/login", data={"username": "retired", "password": "secret123"}
    )

    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_protected_routes_require_auth(client):
    """Admin JSON endpoints answer 401 without an admin session."""
    calls = [
        ("GET", "/admin/stock/some-product"),
        ("POST", "/admin/orders/some-order/refund"),
        ("POST", "/admin/orders/some-order/status"),
        ("POST", "/admin/returns/manage"),
    ]
    for method, path in calls:
        resp = await client.request(method, path, json={})
        assert resp.status_code == 401, f"{path} should be protected"
        assert resp.json() == {"success": False, "error": "Admin authentication required"}


@pytest.mark.asyncio
async def test_logout_clears_session(client, make_product):
    product = await make_product(sizes={"M": 3})

    await client.post("/admin/login", data={"username": "admin", "password": "secret123"})
    resp = await client.get(f"/admin/stock/{product.id}")
    assert resp.status_code == 200

    resp = await client.post("/admin/logout")
    assert resp.status_code == 200

    resp = await client.get(f"/admin/stock/{product.id}")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_health_endpoint_is_public(client):
    resp = await client.get("/admin/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "db": "ok"}
