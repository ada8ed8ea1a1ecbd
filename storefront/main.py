"""
Storefront order lifecycle service – FastAPI entry point.
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from storefront.config import get_settings
from storefront.database import init_db
from storefront.errors import StorefrontError
from storefront.routers import admin as api_admin, checkout, orders, webhooks
from storefront.admin.routers import auth_routes
from storefront.services import returns_expiry

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s – %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(
    title="Storefront Orders",
    version="1.0.0",
    description="Checkout, payment reconciliation, stock ledger and order lifecycle.",
)

# ── Middleware ────────────────────────────────────────────────────────────────

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret_key,
    session_cookie="storefront_session",
    https_only=False,   # set to True behind TLS in production
    same_site="lax",
    max_age=86400 * 7,  # 7 days
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Exception handlers ────────────────────────────────────────────────────────

@app.exception_handler(StorefrontError)
async def _storefront_error(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "details": details},
    )

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(checkout.router)
app.include_router(webhooks.router)
app.include_router(orders.router)
app.include_router(api_admin.router)
app.include_router(auth_routes.router)


# ── Startup / shutdown ────────────────────────────────────────────────────────

_background: set[asyncio.Task] = set()


@app.on_event("startup")
async def _startup() -> None:
    if settings.auto_create_schema:
        await init_db()
    await _bootstrap_admin()

    if settings.returns_expiry_interval_seconds > 0:
        logger.info("Starting return expiry worker …")
        task = asyncio.create_task(returns_expiry.worker(), name="returns-expiry-worker")
        _background.add(task)
    logger.info("Storefront order service ready.")


@app.on_event("shutdown")
async def _shutdown() -> None:
    for task in _background:
        task.cancel()
    _background.clear()


# ── Bootstrap helpers ─────────────────────────────────────────────────────────

async def _bootstrap_admin() -> None:
    """Create the first admin user from env vars if no admin_users exist."""
    username = settings.bootstrap_admin_user
    password = settings.bootstrap_admin_password
    if not username or not password:
        return

    from sqlalchemy import select, func
    from sqlalchemy.exc import SQLAlchemyError
    from storefront.database import AsyncSessionLocal
    from storefront.models import AdminUser
    from storefront.admin.auth import hash_password

    async with AsyncSessionLocal() as session:
        try:
            count = (
                await session.execute(select(func.count()).select_from(AdminUser))
            ).scalar_one()
            if count == 0:
                session.add(
                    AdminUser(username=username, password_hash=hash_password(password))
                )
                await session.commit()
                logger.info("Bootstrap admin user '%s' created.", username)
        except SQLAlchemyError as exc:
            logger.warning("Bootstrap admin skipped (table may not exist yet): %s", exc)
