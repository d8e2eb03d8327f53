from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Protocol

from rsm.domain.errors import ConcurrentModificationError, NotFoundError
from rsm.domain.models import (
    Customer,
    Expense,
    MovementLogEntry,
    PaymentKind,
    PaymentMethod,
    PaymentRecord,
    PricedSale,
    Product,
    Sale,
    SaleStatus,
    discount_value,
)
from rsm.domain.money import ZERO, from_db, money, to_db
from rsm.repositories.contracts import CustomerStore, ExpenseStore, PaymentStore, ProductStore, SaleStore
from rsm.repositories.sqlite_repo import (
    MOVEMENT_COLUMNS,
    PAYMENT_COLUMNS,
    SqliteRepository,
    fetch_customer,
    fetch_payments,
    fetch_product,
    fetch_sale,
    movement_from_row,
    payment_from_row,
)

PRODUCT_EDITABLE = frozenset(
    {"name", "cost_price", "selling_price", "selling_price_2", "selling_price_3", "unit", "show_in_pos", "active"}
)


def now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class UnitOfWork(ProductStore, CustomerStore, PaymentStore, SaleStore, ExpenseStore, Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...


@dataclass
class SqliteUnitOfWork:
    """One sqlite write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so a
    concurrent writer waits (up to the repository timeout) instead of
    reading a balance that is about to change. Leaving the block commits;
    any exception rolls every staged write back.
    """

    repo: SqliteRepository
    conn: Optional[sqlite3.Connection] = field(default=None, init=False)
    cur: Optional[sqlite3.Cursor] = field(default=None, init=False)

    def __enter__(self) -> "SqliteUnitOfWork":
        self.conn = self.repo._conn(autocommit=True)
        self.cur = self.conn.cursor()
        try:
            self.cur.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            self.conn.close()
            if _is_lock_error(exc):
                raise ConcurrentModificationError("Store is busy; retry the operation.") from exc
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                try:
                    self.conn.execute("COMMIT")
                except sqlite3.OperationalError as commit_exc:
                    if self.conn.in_transaction:
                        self.conn.execute("ROLLBACK")
                    if _is_lock_error(commit_exc):
                        raise ConcurrentModificationError("Commit lost a write race; retry.") from commit_exc
                    raise
            elif self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
        finally:
            self.conn.close()
            self.conn = None
            self.cur = None

    # ---------- Products ----------
    def get_product(self, product_id: int, include_inactive: bool = False) -> Optional[Product]:
        return fetch_product(self.cur, product_id, include_inactive)

    def insert_product(
        self,
        sku: str,
        name: str,
        cost_price: Decimal,
        selling_price: Decimal,
        selling_price_2: Optional[Decimal] = None,
        selling_price_3: Optional[Decimal] = None,
        unit: str = "pcs",
        show_in_pos: int = 1,
    ) -> int:
        self.cur.execute(
            """
            INSERT INTO products (sku, name, cost_price, selling_price, stock,
                                  selling_price_2, selling_price_3, unit, show_in_pos)
            VALUES (?, ?, ?, ?, '0', ?, ?, ?, ?)
            """,
            (
                sku,
                name,
                to_db(cost_price),
                to_db(selling_price),
                to_db(selling_price_2),
                to_db(selling_price_3),
                unit,
                int(show_in_pos),
            ),
        )
        return int(self.cur.lastrowid)

    def update_product(self, product_id: int, changes: dict) -> Product:
        """Write the given product columns and return the row, active or not."""
        if changes:
            unknown = set(changes) - PRODUCT_EDITABLE
            if unknown:
                raise ValueError(f"Not editable: {sorted(unknown)}")
            cols = sorted(changes)
            values = [to_db(changes[c]) if isinstance(changes[c], Decimal) else changes[c] for c in cols]
            assignments = ", ".join(f"{c}=?" for c in cols)
            self.cur.execute(
                f"UPDATE products SET {assignments} WHERE id=?",
                (*values, int(product_id)),
            )
        product = fetch_product(self.cur, product_id, include_inactive=True)
        if product is None:
            raise NotFoundError("product", product_id)
        return product

    def write_stock(self, product_id: int, expected_stock: Decimal, new_stock: Decimal) -> None:
        # compare-and-set against the stock value this batch read
        self.cur.execute(
            "SELECT stock FROM products WHERE id=? AND active=1",
            (int(product_id),),
        )
        row = self.cur.fetchone()
        if not row:
            raise NotFoundError("product", product_id)
        if from_db(row[0]) != expected_stock:
            raise ConcurrentModificationError(f"Stock of product {product_id} changed concurrently.")
        self.cur.execute(
            "UPDATE products SET stock=? WHERE id=? AND active=1 AND stock=?",
            (to_db(new_stock), int(product_id), row[0]),
        )
        if self.cur.rowcount != 1:
            raise ConcurrentModificationError(f"Stock of product {product_id} changed concurrently.")

    def append_movement_log(self, entry: dict) -> MovementLogEntry:
        self.cur.execute(
            """
            INSERT INTO product_movement_log (
                datetime, product_id, movement_type, quantity_change, stock_before, stock_after,
                cost_price, selling_price, cause_ref, actor_user_id, notes, reverses_entry_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry["datetime"],
                int(entry["product_id"]),
                entry["movement_type"].value,
                to_db(entry["quantity_change"]),
                to_db(entry["stock_before"]),
                to_db(entry["stock_after"]),
                to_db(entry["cost_price"]),
                to_db(entry["selling_price"]),
                entry["cause_ref"],
                entry.get("actor_user_id"),
                entry.get("notes"),
                entry.get("reverses_entry_id"),
            ),
        )
        log_id = int(self.cur.lastrowid)
        self.cur.execute(f"SELECT {MOVEMENT_COLUMNS} FROM product_movement_log WHERE id=?", (log_id,))
        return movement_from_row(self.cur.fetchone())

    def movements_for_cause(self, cause_ref: str) -> list[MovementLogEntry]:
        self.cur.execute(
            f"SELECT {MOVEMENT_COLUMNS} FROM product_movement_log WHERE cause_ref=? ORDER BY id",
            (cause_ref,),
        )
        return [movement_from_row(r) for r in self.cur.fetchall()]

    def reversed_entry_ids(self, entry_ids: list[int]) -> set[int]:
        if not entry_ids:
            return set()
        marks = ",".join("?" for _ in entry_ids)
        self.cur.execute(
            f"SELECT reverses_entry_id FROM product_movement_log WHERE reverses_entry_id IN ({marks})",
            tuple(int(i) for i in entry_ids),
        )
        return {int(r[0]) for r in self.cur.fetchall()}

    # ---------- Customers ----------
    def get_customer(self, customer_id: int) -> Optional[Customer]:
        return fetch_customer(self.cur, customer_id)

    def insert_customer(self, name: str, customer_type: str, credit_days: Optional[int], phone: Optional[str]) -> int:
        self.cur.execute(
            """
            INSERT INTO customers (name, customer_type, credit_days, phone, total_debt_amount)
            VALUES (?, ?, ?, ?, '0')
            """,
            (name, customer_type, credit_days, phone),
        )
        return int(self.cur.lastrowid)

    def adjust_debt(self, customer_id: int, delta: Decimal) -> Decimal:
        customer = self.get_customer(customer_id)
        if customer is None:
            raise NotFoundError("customer", customer_id)
        new_debt = max(ZERO, customer.total_debt_amount + delta)
        self.cur.execute(
            "UPDATE customers SET total_debt_amount=? WHERE id=?",
            (to_db(new_debt), int(customer_id)),
        )
        return new_debt

    # ---------- Sales ----------
    def get_sale(self, sale_id: int) -> Optional[Sale]:
        return fetch_sale(self.cur, sale_id)

    def insert_sale(self, header: dict, priced: PricedSale, places: int) -> int:
        def m(value):
            return to_db(money(value, places))

        # line values and their sums are stored exactly; cart-level stages are rounded
        after_overall = money(priced.subtotal_after_overall_discount, places)
        overall_amount = priced.subtotal_after_item_discounts - after_overall

        self.cur.execute(
            """
            INSERT INTO sales (
                receipt_number, datetime, customer_id, customer_name, payment_method, due_date,
                cart_original_total, cart_item_discount_total, subtotal_after_item_discounts,
                overall_discount_type, overall_discount_value, overall_discount_amount,
                subtotal_after_overall_discount, coupon_code, coupon_amount, subtotal_before_vat,
                vat_strategy, vat_rate, vat_amount, grand_total, received_amount, change_given,
                status, paid_amount, outstanding_amount, notes, actor_user_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                header["receipt_number"],
                header["datetime"],
                header.get("customer_id"),
                header.get("customer_name"),
                header["payment_method"].value,
                header["due_date"].isoformat() if header.get("due_date") else None,
                to_db(priced.cart_original_total),
                to_db(priced.cart_item_discount_total),
                to_db(priced.subtotal_after_item_discounts),
                priced.overall_discount.kind,
                to_db(discount_value(priced.overall_discount)),
                to_db(overall_amount),
                to_db(after_overall),
                priced.coupon_code,
                to_db(priced.coupon_amount),
                m(priced.subtotal_before_vat),
                priced.vat_strategy.value,
                to_db(priced.vat_rate),
                m(priced.vat_amount),
                m(priced.grand_total),
                to_db(header.get("received_amount")),
                to_db(header.get("change_given")),
                header["status"].value,
                m(header["paid_amount"]),
                m(header["outstanding_amount"]),
                header.get("notes"),
                header.get("actor_user_id"),
            ),
        )
        sale_id = int(self.cur.lastrowid)

        for line_no, ln in enumerate(priced.lines, start=1):
            self.cur.execute(
                """
                INSERT INTO sale_items (
                    sale_id, line_no, product_id, product_name, quantity, price_before_promotion,
                    original_unit_price, discount_type, discount_value, unit_price_after_discount,
                    line_total, promotion_id, is_free_gift
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sale_id,
                    line_no,
                    int(ln.product_id),
                    ln.product_name,
                    to_db(ln.quantity),
                    to_db(ln.price_before_promotion),
                    to_db(ln.original_unit_price),
                    ln.discount.kind,
                    to_db(discount_value(ln.discount)),
                    to_db(ln.unit_price_after_discount),
                    to_db(ln.line_total),
                    ln.promotion_id,
                    1 if ln.is_free_gift else 0,
                ),
            )
        return sale_id

    def update_sale_settlement(self, sale_id: int, status: SaleStatus, paid: Decimal, outstanding: Decimal) -> None:
        self.cur.execute(
            "UPDATE sales SET status=?, paid_amount=?, outstanding_amount=? WHERE id=?",
            (status.value, to_db(paid), to_db(outstanding), int(sale_id)),
        )
        if self.cur.rowcount == 0:
            raise NotFoundError("sale", sale_id)

    # ---------- Payments ----------
    def append_payment(
        self,
        sale_id: int,
        amount: Decimal,
        method: PaymentMethod,
        kind: PaymentKind = PaymentKind.PAYMENT,
        note: Optional[str] = None,
        actor_user_id: Optional[int] = None,
        payment_date: Optional[date] = None,
        reverses_payment_id: Optional[int] = None,
    ) -> PaymentRecord:
        self.cur.execute(
            """
            INSERT INTO sale_payments (
                sale_id, payment_date, amount, method, kind, note, actor_user_id, reverses_payment_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(sale_id),
                (payment_date or date.today()).isoformat(),
                to_db(amount),
                PaymentMethod(method).value,
                kind.value,
                note,
                actor_user_id,
                reverses_payment_id,
            ),
        )
        return self.get_payment(int(self.cur.lastrowid))

    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]:
        self.cur.execute(f"SELECT {PAYMENT_COLUMNS} FROM sale_payments WHERE id=?", (int(payment_id),))
        r = self.cur.fetchone()
        return payment_from_row(r) if r else None

    def list_payments(self, sale_id: int) -> list[PaymentRecord]:
        return fetch_payments(self.cur, sale_id)

    def mark_payment_voided(self, payment_id: int, reason: Optional[str]) -> None:
        self.cur.execute(
            "UPDATE sale_payments SET voided=1, void_reason=?, voided_at=? WHERE id=? AND voided=0",
            (reason, now_iso(), int(payment_id)),
        )
        if self.cur.rowcount != 1:
            raise ConcurrentModificationError(f"Payment {payment_id} was voided concurrently.")

    # ---------- Expenses ----------
    def insert_expense(self, date_iso: str, category: str, amount: Decimal, description: str, reference: Optional[str]) -> Expense:
        self.cur.execute(
            "INSERT INTO expenses (date, category, amount, description, reference) VALUES (?, ?, ?, ?, ?)",
            (date_iso, category, to_db(amount), description, reference),
        )
        return Expense(
            id=int(self.cur.lastrowid),
            date=date_iso,
            category=category,
            amount=amount,
            description=description,
            reference=reference,
        )
