#!/usr/bin/env python3
"""
CLI: Return expiry sweep and manual-review report, for cron and operators.

Usage:
    # Expire returns past their deadline
    python -m cli.expire_returns

    # Show what would expire without changing anything
    python -m cli.expire_returns --dry-run

    # List orders flagged for manual stock reconciliation
    python -m cli.expire_returns --needs-review
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from storefront.database import AsyncSessionLocal
from storefront.models import Order, ReturnRecord
from storefront.services.lifecycle import EXPIRABLE_RETURN_STATUSES, expire_overdue_returns
from storefront.time_utils import utcnow


async def cmd_expire() -> None:
    async with AsyncSessionLocal() as session:
        expired = await expire_overdue_returns(session)
    print(f"Expired returns: {expired}")


async def cmd_dry_run() -> None:
    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(
                select(ReturnRecord)
                .where(
                    ReturnRecord.status.in_(EXPIRABLE_RETURN_STATUSES),
                    ReturnRecord.return_deadline < utcnow(),
                )
                .order_by(ReturnRecord.return_deadline)
            )
        ).scalars().all()

    if not rows:
        print("No overdue returns.")
        return

    print(f"\n{'RETURN':<22} {'STATUS':<10} {'ORDER_ID':<38} DEADLINE")
    print("-" * 100)
    for r in rows:
        print(f"{r.return_number:<22} {r.status:<10} {r.order_id:<38} {r.return_deadline}")


async def cmd_needs_review() -> None:
    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(
                select(Order).where(Order.needs_review.is_(True)).order_by(Order.created_at)
            )
        ).scalars().all()

    if not rows:
        print("No orders flagged for review.")
        return

    for o in rows:
        print(f"\n{o.order_number}  status={o.status}  payment={o.payment_id}")
        for line in (o.admin_notes or "").splitlines():
            print(f"    {line}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Storefront returns maintenance CLI")
    parser.add_argument("--dry-run", action="store_true", help="List overdue returns only")
    parser.add_argument(
        "--needs-review", action="store_true", help="List orders flagged for manual review"
    )
    args = parser.parse_args()

    if args.dry_run:
        asyncio.run(cmd_dry_run())
    elif args.needs_review:
        asyncio.run(cmd_needs_review())
    else:
        asyncio.run(cmd_expire())


if __name__ == "__main__":
    main()
