"""
Discount code validation against a server-computed subtotal.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import BusinessRuleViolation
from storefront.models import DiscountCode
from storefront.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AppliedDiscount:
    code: str
    amount: int


def normalise_code(code: str) -> str:
    return code.strip().upper()


def compute_discount(discount: DiscountCode, subtotal: int) -> int:
    if discount.discount_type == "percentage":
        amount = subtotal * discount.discount_value // 100
    else:
        amount = discount.discount_value
    return max(0, min(amount, subtotal))


async def validate_discount(
    session: AsyncSession,
    code: str,
    subtotal: int,
    now: Optional[datetime] = None,
) -> AppliedDiscount:
    """
    Validate *code* for a cart worth *subtotal* cents and return the amount
    to take off. Raises BusinessRuleViolation with the reason otherwise.
    """
    now = now or utcnow()
    normalised = normalise_code(code)
    discount = (
        await session.execute(select(DiscountCode).where(DiscountCode.code == normalised))
    ).scalar_one_or_none()

    if discount is None or not discount.is_active:
        raise BusinessRuleViolation("Discount code is not valid", discountCode=normalised)
    if discount.valid_from and as_utc(discount.valid_from) > now:
        raise BusinessRuleViolation("Discount code is not active yet", discountCode=normalised)
    if discount.valid_until and as_utc(discount.valid_until) < now:
        raise BusinessRuleViolation("Discount code has expired", discountCode=normalised)
    if discount.max_uses is not None and discount.uses >= discount.max_uses:
        raise BusinessRuleViolation(
            "Discount code has reached its usage limit", discountCode=normalised
        )
    if subtotal < discount.min_purchase_amount:
        raise BusinessRuleViolation(
            "Cart total is below the minimum purchase for this code",
            discountCode=normalised,
            minPurchaseAmount=discount.min_purchase_amount,
        )

    amount = compute_discount(discount, subtotal)
    if amount <= 0:
        raise BusinessRuleViolation("Discount code is not valid", discountCode=normalised)
    # A free checkout has no payment to fulfil or refund against
    if amount >= subtotal:
        raise BusinessRuleViolation(
            "Discount code cannot cover the whole order", discountCode=normalised
        )
    return AppliedDiscount(code=normalised, amount=amount)


async def record_usage(session: AsyncSession, code: str) -> None:
    await session.execute(
        update(DiscountCode)
        .where(DiscountCode.code == normalise_code(code))
        .values(uses=DiscountCode.uses + 1)
        .execution_options(synchronize_session=False)
    )
    logger.info("Discount code %s usage recorded", normalise_code(code))
