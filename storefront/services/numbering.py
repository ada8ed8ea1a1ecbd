"""
Human-readable document numbers.

Credit notes and returns use per-year sequences (PREFIX-YYYY-000001); order
numbers are generated locally and never depend on a database trigger.
"""
from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime
from typing import Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from storefront.time_utils import utcnow

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

T = TypeVar("T")


class NumberAllocationError(Exception):
    pass


async def next_yearly_number(
    session: AsyncSession,
    column: InstrumentedAttribute,
    prefix: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Scan the latest persisted number for the current year and add one.
    Callers rely on a unique constraint on *column* to catch concurrent
    allocation of the same number, and retry.
    """
    year = (now or utcnow()).year
    stem = f"{prefix}-{year}-"
    latest = (
        await session.execute(
            select(column)
            .where(column.like(f"{stem}%"))
            .order_by(column.desc())
            .limit(1)
        )
    ).scalar_one_or_none()

    seq = 1
    if latest:
        try:
            seq = int(latest.rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = 1
    return f"{stem}{seq:06d}"


def generate_order_number(prefix: str, now: Optional[datetime] = None) -> str:
    """ORD-2026-483920-K7Q2ZB: year, millisecond clock tail, random suffix."""
    now = now or utcnow()
    clock = str(int(now.timestamp() * 1000))[-6:]
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{prefix}-{now.year}-{clock}-{suffix}"


async def insert_numbered(
    session: AsyncSession,
    build: Callable[[str], T],
    column: InstrumentedAttribute,
    prefix: str,
    now: Optional[datetime] = None,
    attempts: int = 3,
) -> T:
    """
    Allocate the next yearly number, build the row with it and flush it inside
    a savepoint. A unique collision (someone else took the number) retries
    with a fresh scan.
    """
    for attempt in range(1, attempts + 1):
        number = await next_yearly_number(session, column, prefix, now)
        row = build(number)
        try:
            async with session.begin_nested():
                session.add(row)
            return row
        except IntegrityError:
            logger.warning("Number %s already taken (attempt %d/%d)", number, attempt, attempts)
    raise NumberAllocationError(f"Could not allocate a {prefix} number after {attempts} attempts")
