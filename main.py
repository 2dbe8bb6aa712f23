"""Command line entry point for operator-triggered allocation runs.

Examples:
    python main.py --data-dir snapshot allocate --write
    python main.py --data-dir snapshot validate
    python main.py --db sqlite:///tracker.db remove-order ORDER_ID
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from allocation_service import AllocationService
from allocation_errors import AllocationError
from data_loader import load_ledger, load_settings, save_orders
from ledger import Ledger, MemoryLedger
from log_setup import configure_logging
from sql_ledger import SqlLedger
from utilities import batch_markdown, cascade_markdown, displacement_markdown, validation_markdown

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FIFO order-to-container allocation")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--data-dir", help="Snapshot directory with containers.json, capacity.json, orders.json")
    source.add_argument("--db", help="SQLAlchemy database URL of the tracker ledger")
    parser.add_argument("--settings-file", help="Path to settings JSON file")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default INFO)")
    parser.add_argument("--log-file", help="Optional log file (rotated daily)")
    parser.add_argument("--write", action="store_true", help="With --data-dir: write updated orders.json back")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("allocate", help="Run batch allocation over all unlinked orders")
    one = sub.add_parser("allocate-order", help="Allocate a single order")
    one.add_argument("order_id")
    rm = sub.add_parser("remove-order", help="Delete an order and reallocate later orders of its container")
    rm.add_argument("order_id")
    sub.add_parser("validate", help="Report over-allocated containers")
    sug = sub.add_parser("suggest", help="Suggest orders to unlink from an over-allocated container")
    sug.add_argument("container_id")
    return parser


def _open_ledger(args: argparse.Namespace) -> Ledger:
    if args.db:
        return SqlLedger(args.db)
    return load_ledger(args.data_dir)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    settings = load_settings(args.settings_file) if args.settings_file else None
    ledger = _open_ledger(args)
    service = AllocationService(ledger, settings)

    try:
        if args.command == "allocate":
            print(batch_markdown(service.run_batch_allocation()))
        elif args.command == "allocate-order":
            res = service.allocate_single_order(args.order_id)
            if res["allocated"]:
                print(f"Order {res['external_number']} -> {res['container_code']} (ETA {res['delivery_eta'] or 'N/A'})")
            else:
                print(f"Order {res['external_number']} not allocated: {res['reason']} {res['detail']}".rstrip())
        elif args.command == "remove-order":
            print(cascade_markdown(service.remove_order_and_cascade(args.order_id)))
        elif args.command == "validate":
            report = service.validate_allocation()
            print(validation_markdown(report))
            if report["issues_found"]:
                return 2
        elif args.command == "suggest":
            print(displacement_markdown(service.suggest_displacement(args.container_id)))
    except AllocationError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1

    if args.write and isinstance(ledger, MemoryLedger) and args.data_dir:
        path = save_orders(args.data_dir, ledger.orders())
        logger.info("Orders written to %s", path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
