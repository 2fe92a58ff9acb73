"""
Ledger Verification Script

Verifies credit integrity after a simulation run.
Run from project root: python scripts/verify.py

Checks:
    - every account balance equals the sum of its ledger entries
    - no order carries more than one SPEND entry
    - every CONFIRMED or COMPLETED order with a non-zero total was charged
      exactly once
    - every REFUNDED order that was charged has a matching REFUND entry

Version: 1.0.0
"""

import asyncio
import os
import sys
from datetime import datetime

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func, select

from biteclub.core.config import get_settings
from biteclub.database import Database
from biteclub.models import Account, LedgerEntry, LedgerKind, Order, OrderStatus
from biteclub.services.ledger import LedgerService, to_money


async def verify_ledger() -> bool:
    """Verify balances and order charges; returns True when all checks pass."""
    settings = get_settings()
    database = Database(settings.database_url)
    ledger = LedgerService()

    print("=" * 60)
    print("🔍 LEDGER VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🗄️  Database: {settings.database_url.split('@')[-1]}")
    print("=" * 60)

    problems = []
    try:
        async with database.session() as session:
            account_ids = list((await session.execute(select(Account.id))).scalars().all())
            for account_id in account_ids:
                balance, total = await ledger.reconcile(session, account_id)
                if balance != total:
                    problems.append(f"Account {account_id}: balance {balance} != entries {total}")

            spend_counts = dict(
                (await session.execute(
                    select(LedgerEntry.order_id, func.count(LedgerEntry.id))
                    .where(LedgerEntry.kind == LedgerKind.SPEND)
                    .group_by(LedgerEntry.order_id)
                )).all()
            )
            refund_counts = dict(
                (await session.execute(
                    select(LedgerEntry.order_id, func.count(LedgerEntry.id))
                    .where(LedgerEntry.kind == LedgerKind.REFUND)
                    .group_by(LedgerEntry.order_id)
                )).all()
            )
            orders = list((await session.execute(select(Order.id, Order.status, Order.final_amount))).all())
    finally:
        await database.dispose()

    status_totals: dict[str, int] = {}
    for order_id, status, final_amount in orders:
        status_totals[status.value] = status_totals.get(status.value, 0) + 1
        charges = spend_counts.get(order_id, 0)
        if charges > 1:
            problems.append(f"Order {order_id}: charged {charges} times")
        expected = 1 if to_money(final_amount) > 0 else 0
        if status in (OrderStatus.CONFIRMED, OrderStatus.COMPLETED) and charges != expected:
            problems.append(f"Order {order_id}: {status.value} with {charges} charges")
        if status == OrderStatus.REFUNDED and charges and refund_counts.get(order_id, 0) != 1:
            problems.append(f"Order {order_id}: charged but refund entries = {refund_counts.get(order_id, 0)}")

    print(f"\n📊 STATISTICS:")
    print(f"   Accounts: {len(account_ids)}")
    print(f"   Orders: {len(orders)}")
    for status, count in sorted(status_totals.items()):
        print(f"      {status}: {count}")
    print(f"   Charged Orders: {len(spend_counts)}")

    print("\n" + "=" * 60)
    if problems:
        print(f"❌ VERIFICATION FAILED ({len(problems)} problems)")
        for problem in problems[:20]:
            print(f"   {problem}")
    else:
        print("✅ VERIFICATION PASSED - ledger is consistent")
    print("=" * 60)

    return not problems


if __name__ == "__main__":
    success = asyncio.run(verify_ledger())
    sys.exit(0 if success else 1)
