"""
Shared Jinja2Templates instance for financial documents and email bodies.
Defined here to avoid circular imports.
"""
from __future__ import annotations

import pathlib

from fastapi.templating import Jinja2Templates

templates = Jinja2Templates(
    directory=str(pathlib.Path(__file__).parent / "templates")
)


def format_money(cents: int, currency: str = "eur") -> str:
    """1999 -> '19.99 EUR'; negatives keep their sign."""
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d} {currency.upper()}"


templates.env.filters["money"] = format_money
