#!/usr/bin/env python3
"""
Maintenance commands for repairing settlement side effects.

Usage:
    python -m tabpay.maintenance sync-invoices [--restaurant-id ID]
    python -m tabpay.maintenance update-order-counts [--restaurant-id ID]
    python -m tabpay.maintenance init-counters

``sync-invoices`` issues invoices for paid order groups that have none
(e.g. after an ``InvoiceCreationFailed`` notification) and completes
restaurant snapshots missing the restaurant id. ``update-order-counts``
adds popularity for paid order groups that were never counted.
"""

import argparse
import logging
import sys
from typing import List, Optional

from tabpay.db.session import SessionLocal
from tabpay.services.counter_service import INVOICE_NUMBER_KEY, CounterService
from tabpay.services.invoice_service import InvoiceIssuer
from tabpay.services.settlement_service import SettlementService

logger = logging.getLogger("tabpay.maintenance")


def sync_invoices(db, restaurant_id: Optional[str] = None) -> int:
    result = InvoiceIssuer(db).sync_missing(restaurant_id)
    print(f"Checked {result['checked']} paid order groups without invoice")
    for number in result["created"]:
        print(f"  created {number}")
    for number in result["updated"]:
        print(f"  completed snapshot of {number}")
    for group_id in result["failed"]:
        print(f"  FAILED order group {group_id}")
    return 1 if result["failed"] else 0


def update_order_counts(db, restaurant_id: Optional[str] = None) -> int:
    processed = SettlementService(db).backfill_order_counts(restaurant_id)
    print(f"Processed popularity for {len(processed)} order groups")
    return 0


def init_counters(db) -> int:
    counters = CounterService(db)
    counters.init_counter(INVOICE_NUMBER_KEY)
    print(f"{INVOICE_NUMBER_KEY} = {counters.current(INVOICE_NUMBER_KEY)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tabpay-maintenance", description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync-invoices", help="Issue missing invoices for paid order groups")
    sync.add_argument("--restaurant-id", help="Only this restaurant")

    counts = commands.add_parser("update-order-counts", help="Backfill menu item popularity")
    counts.add_argument("--restaurant-id", help="Only this restaurant")

    commands.add_parser("init-counters", help="Create sequence counters if absent")
    return parser


def main(argv: Optional[List[str]] = None, session_factory=SessionLocal) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db = session_factory()
    try:
        if args.command == "sync-invoices":
            return sync_invoices(db, args.restaurant_id)
        if args.command == "update-order-counts":
            return update_order_counts(db, args.restaurant_id)
        return init_counters(db)
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
