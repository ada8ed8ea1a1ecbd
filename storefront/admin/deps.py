"""
Admin dependency: require an authenticated, active admin session.
"""
from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.admin.auth import active_admin, clear_admin_session
from storefront.database import get_db
from storefront.errors import NotAuthenticated
from storefront.models import AdminUser


async def require_admin(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AdminUser:
    user = await active_admin(db, request)
    if user is None:
        # Stale or deactivated admin: drop the key so the next request is clean
        clear_admin_session(request)
        raise NotAuthenticated("Admin authentication required")
    return user
