"""Command-line entry point.

Thin argparse wiring over the application container; every command maps to
one service call and prints a plain-text result.
"""

from __future__ import annotations

import argparse
import logging
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Optional, Sequence

from rsm.application.container import AppContainer, build_container
from rsm.config import get_app_paths
from rsm.domain.errors import AppError
from rsm.domain.models import PaymentMethod
from rsm.logging_config import setup_logging

log = logging.getLogger("rsm.cli")


def _amount(text: str) -> Decimal:
    try:
        value = Decimal(text)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}") from None
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    return value


def _cmd_import_products(app: AppContainer, args: argparse.Namespace) -> int:
    ok, skipped = app.imports.import_products_excel(str(args.path), actor_user_id=args.actor)
    print(f"imported={ok} skipped={skipped}")
    return 0


def _cmd_movements(app: AppContainer, args: argparse.Namespace) -> int:
    for m in app.inventory.get_movement_history(args.product_id):
        print(
            f"{m.datetime}  {m.movement_type.value:<16} {m.quantity_change:>10}  "
            f"{m.stock_before} -> {m.stock_after}  {m.cause_ref}"
        )
    return 0


def _cmd_credit_summary(app: AppContainer, args: argparse.Namespace) -> int:
    if args.customer is not None:
        summaries = [app.credit.get_credit_summary(args.customer)]
    else:
        summaries = app.credit.list_credit_summaries()
    for s in summaries:
        due = s.earliest_due_date.isoformat() if s.earliest_due_date else "-"
        print(f"{s.customer_id}  {s.customer_name:<24} open={s.open_invoices_count} outstanding={s.total_outstanding} due={due} {s.aging.value}")
    return 0


def _cmd_pay(app: AppContainer, args: argparse.Namespace) -> int:
    record = app.credit.apply_payment(
        args.sale_id,
        args.amount,
        PaymentMethod(args.method),
        note=args.note,
        actor_user_id=args.actor,
    )
    sale = app.sales.get_sale(args.sale_id)
    print(f"payment_id={record.id} status={sale.status.value} outstanding={sale.outstanding_amount}")
    return 0


COMMANDS: dict[str, Callable[[AppContainer, argparse.Namespace], int]] = {
    "import-products": _cmd_import_products,
    "movements": _cmd_movements,
    "credit-summary": _cmd_credit_summary,
    "pay": _cmd_pay,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rsm", description="Retail sale settlement tools.")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database (defaults to the app data dir).")
    parser.add_argument("--actor", type=int, default=None, help="User id recorded on writes.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import-products", help="Import products/stock from an .xlsx file.")
    p.add_argument("path", type=Path)

    p = sub.add_parser("movements", help="Show a product's stock movement history.")
    p.add_argument("product_id", type=int)

    p = sub.add_parser("credit-summary", help="Outstanding credit per customer, aged as of today.")
    p.add_argument("--customer", type=int, default=None)

    p = sub.add_parser("pay", help="Apply a payment to a credit sale.")
    p.add_argument("sale_id", type=int)
    p.add_argument("amount", type=_amount)
    p.add_argument("--method", default=PaymentMethod.CASH.value, choices=["cash", "transfer", "qr", "check"])
    p.add_argument("--note", default=None)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)
    app = build_container(args.db or paths.db_path)

    try:
        return COMMANDS[args.command](app, args)
    except AppError as e:
        log.warning("command_failed command=%s error=%s", args.command, e)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
