#!/usr/bin/env python3
"""
Release orders Platform Gold put "On Hold - Contact Desk".

Re-sends each held order's shipping address and the configured shipping
instruction through the sales-order update endpoint, then re-syncs the
order's status.

Usage:
    cd backend

    # See which orders would be touched:
    python scripts/fix_on_hold_orders.py --dry-run

    # Repair everything on hold, or only the given orders:
    python scripts/fix_on_hold_orders.py
    python scripts/fix_on_hold_orders.py --order-id <ORDER_ID> --order-id <ORDER_ID>
"""

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bullion.database import SessionLocal
from bullion.services.order_reconciler import OrderReconciler


async def run_repair(
    order_ids: Optional[List[str]] = None,
    dry_run: bool = False,
    reconciler: Optional[OrderReconciler] = None,
) -> Dict[str, Any]:
    reconciler = reconciler or OrderReconciler()
    db = SessionLocal()
    try:
        return await reconciler.repair_on_hold(db, order_ids=order_ids, dry_run=dry_run)
    finally:
        db.close()


def print_summary(result: Dict[str, Any]) -> None:
    print("=" * 60)
    print("ON-HOLD ORDER REPAIR")
    print("=" * 60)
    for entry in result["results"]:
        if entry.get("dryRun"):
            print(f"  {entry['orderId']}: would re-send shipping details")
        elif entry["fixed"]:
            print(f"  {entry['orderId']}: fixed, supplier status {entry.get('status')}")
        else:
            print(f"  {entry['orderId']}: FAILED - {entry.get('error')}")
    print("-" * 60)
    print(f"Processed: {len(result['results'])}  Fixed: {result['fixedCount']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-send shipping details for on-hold Platform Gold orders")
    parser.add_argument("--order-id", action="append", dest="order_ids", help="Only repair this order (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="List the orders without calling Platform Gold")
    args = parser.parse_args()

    result = asyncio.run(run_repair(order_ids=args.order_ids, dry_run=args.dry_run))
    print_summary(result)
    failed = [r for r in result["results"] if not r["fixed"] and not r.get("dryRun")]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
