"""
Admin credentials and the admin half of the shared session cookie.

Customers and admins share one signed session: the storefront's login flow
writes ``customer_id``; this module only ever touches ``admin_user_id``.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models import AdminUser

logger = logging.getLogger(__name__)

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ADMIN_SESSION_KEY = "admin_user_id"


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return _pwd_context.verify(plain, hashed)


async def authenticate(session: AsyncSession, username: str, password: str) -> Optional[AdminUser]:
    """The active admin matching the credentials, else None."""
    user = (
        await session.execute(select(AdminUser).where(AdminUser.username == username))
    ).scalar_one_or_none()
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


async def active_admin(session: AsyncSession, request: Request) -> Optional[AdminUser]:
    """Admin behind the request's session, if any and still active."""
    user_id = get_session_user_id(request)
    if not user_id:
        return None
    user = await session.get(AdminUser, user_id)
    if user is None or not user.is_active:
        return None
    return user


# ── Session keys ─────────────────────────────────────────────────────────────

def set_admin_session(request: Request, user_id: str) -> None:
    request.session[ADMIN_SESSION_KEY] = user_id


def clear_admin_session(request: Request) -> None:
    request.session.pop(ADMIN_SESSION_KEY, None)


def get_session_user_id(request: Request) -> str | None:
    return request.session.get(ADMIN_SESSION_KEY)
