"""
Admin auth routes: login / logout. JSON only; there is no admin UI here.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Form, Request
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.admin.auth import authenticate, clear_admin_session, set_admin_session
from storefront.database import get_db
from storefront.errors import NotAuthenticated

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin-auth"])


@router.post("/login")
async def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    user = await authenticate(db, username, password)
    if user is None:
        logger.warning("Failed admin login for %r", username)
        raise NotAuthenticated("Invalid username or password")

    set_admin_session(request, user.id)
    logger.info("Admin %s logged in", user.username)
    return {"success": True, "username": user.username}


@router.post("/logout")
async def logout(request: Request) -> Dict[str, Any]:
    clear_admin_session(request)
    return {"success": True}
