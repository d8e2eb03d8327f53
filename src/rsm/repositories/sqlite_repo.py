from __future__ import annotations

import shutil
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from rsm.domain.models import (
    Customer,
    Expense,
    MovementLogEntry,
    MovementType,
    PaymentKind,
    PaymentMethod,
    PaymentRecord,
    Product,
    Sale,
    SaleLineItem,
    SaleStatus,
    VatStrategy,
    discount_from_parts,
)
from rsm.domain.money import from_db

PRODUCT_COLUMNS = """
    id, sku, name, cost_price, selling_price, stock,
    selling_price_2, selling_price_3, unit, show_in_pos, active
"""

CUSTOMER_COLUMNS = "id, name, customer_type, credit_days, phone, total_debt_amount"

SALE_COLUMNS = """
    id, receipt_number, datetime, customer_id, customer_name, payment_method, due_date,
    cart_original_total, cart_item_discount_total, subtotal_after_item_discounts,
    overall_discount_type, overall_discount_value, overall_discount_amount,
    subtotal_after_overall_discount, coupon_code, coupon_amount, subtotal_before_vat,
    vat_strategy, vat_rate, vat_amount, grand_total, received_amount, change_given,
    status, paid_amount, outstanding_amount, notes, actor_user_id
"""

MOVEMENT_COLUMNS = """
    id, datetime, product_id, movement_type, quantity_change, stock_before, stock_after,
    cost_price, selling_price, cause_ref, actor_user_id, notes, reverses_entry_id
"""

PAYMENT_COLUMNS = """
    id, sale_id, payment_date, amount, method, kind, note, actor_user_id,
    voided, reverses_payment_id, void_reason
"""


def _opt_decimal(value):
    return None if value is None else from_db(value)


def product_from_row(r) -> Product:
    return Product(
        id=int(r[0]),
        sku=str(r[1]),
        name=str(r[2]),
        cost_price=from_db(r[3]),
        selling_price=from_db(r[4]),
        stock=from_db(r[5]),
        selling_price_2=_opt_decimal(r[6]),
        selling_price_3=_opt_decimal(r[7]),
        unit=str(r[8]),
        show_in_pos=int(r[9]),
        active=int(r[10]),
    )


def customer_from_row(r) -> Customer:
    return Customer(
        id=int(r[0]),
        name=str(r[1]),
        customer_type=str(r[2]),
        credit_days=(int(r[3]) if r[3] is not None else None),
        phone=r[4],
        total_debt_amount=from_db(r[5]),
    )


def movement_from_row(r) -> MovementLogEntry:
    return MovementLogEntry(
        id=int(r[0]),
        datetime=str(r[1]),
        product_id=int(r[2]),
        movement_type=MovementType(r[3]),
        quantity_change=from_db(r[4]),
        stock_before=from_db(r[5]),
        stock_after=from_db(r[6]),
        cost_price=from_db(r[7]),
        selling_price=from_db(r[8]),
        cause_ref=str(r[9]),
        actor_user_id=r[10],
        notes=r[11],
        reverses_entry_id=r[12],
    )


def payment_from_row(r) -> PaymentRecord:
    return PaymentRecord(
        id=int(r[0]),
        sale_id=int(r[1]),
        payment_date=str(r[2]),
        amount=from_db(r[3]),
        method=PaymentMethod(r[4]),
        kind=PaymentKind(r[5]),
        note=r[6],
        actor_user_id=r[7],
        voided=int(r[8]),
        reverses_payment_id=r[9],
        void_reason=r[10],
    )


def _sale_items(cur: sqlite3.Cursor, sale_id: int) -> tuple[SaleLineItem, ...]:
    cur.execute(
        """
        SELECT product_id, product_name, quantity, price_before_promotion, original_unit_price,
               discount_type, discount_value, unit_price_after_discount, line_total,
               promotion_id, is_free_gift
        FROM sale_items
        WHERE sale_id = ?
        ORDER BY line_no
        """,
        (int(sale_id),),
    )
    return tuple(
        SaleLineItem(
            product_id=int(r[0]),
            product_name=str(r[1]),
            quantity=from_db(r[2]),
            price_before_promotion=from_db(r[3]),
            original_unit_price=from_db(r[4]),
            discount=discount_from_parts(r[5], r[6]),
            unit_price_after_discount=from_db(r[7]),
            line_total=from_db(r[8]),
            promotion_id=r[9],
            is_free_gift=bool(r[10]),
        )
        for r in cur.fetchall()
    )


def sale_from_row(cur: sqlite3.Cursor, r) -> Sale:
    return Sale(
        id=int(r[0]),
        receipt_number=str(r[1]),
        datetime=str(r[2]),
        customer_id=r[3],
        customer_name=r[4],
        payment_method=PaymentMethod(r[5]),
        due_date=(date.fromisoformat(r[6]) if r[6] else None),
        cart_original_total=from_db(r[7]),
        cart_item_discount_total=from_db(r[8]),
        subtotal_after_item_discounts=from_db(r[9]),
        overall_discount=discount_from_parts(r[10], r[11]),
        overall_discount_amount=from_db(r[12]),
        subtotal_after_overall_discount=from_db(r[13]),
        coupon_code=r[14],
        coupon_amount=from_db(r[15]),
        subtotal_before_vat=from_db(r[16]),
        vat_strategy=VatStrategy(r[17]),
        vat_rate=from_db(r[18]),
        vat_amount=from_db(r[19]),
        grand_total=from_db(r[20]),
        received_amount=_opt_decimal(r[21]),
        change_given=_opt_decimal(r[22]),
        status=SaleStatus(r[23]),
        paid_amount=from_db(r[24]),
        outstanding_amount=from_db(r[25]),
        notes=r[26],
        actor_user_id=r[27],
        items=_sale_items(cur, int(r[0])),
    )


def fetch_product(cur: sqlite3.Cursor, product_id: int, include_inactive: bool = False) -> Optional[Product]:
    where = "id=?" if include_inactive else "id=? AND active=1"
    cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE {where}", (int(product_id),))
    r = cur.fetchone()
    return product_from_row(r) if r else None


def fetch_customer(cur: sqlite3.Cursor, customer_id: int) -> Optional[Customer]:
    cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers WHERE id=?", (int(customer_id),))
    r = cur.fetchone()
    return customer_from_row(r) if r else None


def fetch_sale(cur: sqlite3.Cursor, sale_id: int) -> Optional[Sale]:
    cur.execute(f"SELECT {SALE_COLUMNS} FROM sales WHERE id=?", (int(sale_id),))
    r = cur.fetchone()
    return sale_from_row(cur, r) if r else None


def fetch_payments(cur: sqlite3.Cursor, sale_id: int) -> list[PaymentRecord]:
    cur.execute(
        f"SELECT {PAYMENT_COLUMNS} FROM sale_payments WHERE sale_id=? ORDER BY id",
        (int(sale_id),),
    )
    return [payment_from_row(r) for r in cur.fetchall()]


class SqliteRepository:
    def __init__(self, db_path: Path | str, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = float(timeout)

    def _conn(self, autocommit: bool = False) -> sqlite3.Connection:
        if autocommit:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        else:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        self.run_migrations()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_base),
                (2, self._migration_v2_append_only_ledgers),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def schema_version(self) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
        version = int(cur.fetchone()[0])
        conn.close()
        return version

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_base(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sku TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            cost_price TEXT NOT NULL CHECK(CAST(cost_price AS REAL) >= 0),
            selling_price TEXT NOT NULL CHECK(CAST(selling_price AS REAL) >= 0),
            stock TEXT NOT NULL DEFAULT '0' CHECK(CAST(stock AS REAL) >= 0),
            selling_price_2 TEXT,
            selling_price_3 TEXT,
            unit TEXT NOT NULL DEFAULT 'pcs',
            show_in_pos INTEGER NOT NULL DEFAULT 1 CHECK(show_in_pos IN (0,1)),
            active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            customer_type TEXT NOT NULL CHECK(customer_type IN ('cash','credit')),
            credit_days INTEGER CHECK(credit_days IS NULL OR credit_days >= 0),
            phone TEXT,
            total_debt_amount TEXT NOT NULL DEFAULT '0' CHECK(CAST(total_debt_amount AS REAL) >= 0),
            created_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sales (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            receipt_number TEXT UNIQUE NOT NULL,
            datetime TEXT NOT NULL,
            customer_id INTEGER,
            customer_name TEXT,
            payment_method TEXT NOT NULL CHECK(payment_method IN ('cash','transfer','qr','check','credit')),
            due_date TEXT,
            cart_original_total TEXT NOT NULL,
            cart_item_discount_total TEXT NOT NULL,
            subtotal_after_item_discounts TEXT NOT NULL,
            overall_discount_type TEXT NOT NULL CHECK(overall_discount_type IN ('none','percent','fixed')),
            overall_discount_value TEXT NOT NULL,
            overall_discount_amount TEXT NOT NULL,
            subtotal_after_overall_discount TEXT NOT NULL,
            coupon_code TEXT,
            coupon_amount TEXT NOT NULL,
            subtotal_before_vat TEXT NOT NULL,
            vat_strategy TEXT NOT NULL CHECK(vat_strategy IN ('none','add','included')),
            vat_rate TEXT NOT NULL,
            vat_amount TEXT NOT NULL,
            grand_total TEXT NOT NULL CHECK(CAST(grand_total AS REAL) >= 0),
            received_amount TEXT,
            change_given TEXT,
            status TEXT NOT NULL CHECK(status IN ('unpaid','partially_paid','paid')),
            paid_amount TEXT NOT NULL,
            outstanding_amount TEXT NOT NULL CHECK(CAST(outstanding_amount AS REAL) >= 0),
            notes TEXT,
            actor_user_id INTEGER,
            FOREIGN KEY(customer_id) REFERENCES customers(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sale_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sale_id INTEGER NOT NULL,
            line_no INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            product_name TEXT NOT NULL,
            quantity TEXT NOT NULL CHECK(CAST(quantity AS REAL) > 0),
            price_before_promotion TEXT NOT NULL,
            original_unit_price TEXT NOT NULL,
            discount_type TEXT NOT NULL CHECK(discount_type IN ('none','percent','fixed')),
            discount_value TEXT NOT NULL,
            unit_price_after_discount TEXT NOT NULL,
            line_total TEXT NOT NULL,
            promotion_id TEXT,
            is_free_gift INTEGER NOT NULL DEFAULT 0 CHECK(is_free_gift IN (0,1)),
            FOREIGN KEY(sale_id) REFERENCES sales(id),
            FOREIGN KEY(product_id) REFERENCES products(id),
            UNIQUE(sale_id, line_no)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS product_movement_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            datetime TEXT NOT NULL,
            product_id INTEGER NOT NULL,
            movement_type TEXT NOT NULL
                CHECK(movement_type IN ('initial_stock','sale','purchase_receipt','adjustment','reversal')),
            quantity_change TEXT NOT NULL,
            stock_before TEXT NOT NULL,
            stock_after TEXT NOT NULL CHECK(CAST(stock_after AS REAL) >= 0),
            cost_price TEXT NOT NULL,
            selling_price TEXT NOT NULL,
            cause_ref TEXT NOT NULL,
            actor_user_id INTEGER,
            notes TEXT,
            reverses_entry_id INTEGER UNIQUE,
            FOREIGN KEY(product_id) REFERENCES products(id),
            FOREIGN KEY(reverses_entry_id) REFERENCES product_movement_log(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS sale_payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sale_id INTEGER NOT NULL,
            payment_date TEXT NOT NULL,
            amount TEXT NOT NULL,
            method TEXT NOT NULL CHECK(method IN ('cash','transfer','qr','check')),
            kind TEXT NOT NULL DEFAULT 'payment' CHECK(kind IN ('payment','reversal')),
            note TEXT,
            actor_user_id INTEGER,
            voided INTEGER NOT NULL DEFAULT 0 CHECK(voided IN (0,1)),
            reverses_payment_id INTEGER UNIQUE,
            void_reason TEXT,
            voided_at TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY(sale_id) REFERENCES sales(id),
            FOREIGN KEY(reverses_payment_id) REFERENCES sale_payments(id)
        )
        """
        )

        cur.execute(
            """
        CREATE TABLE IF NOT EXISTS expenses (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            date TEXT NOT NULL,
            category TEXT NOT NULL,
            amount TEXT NOT NULL CHECK(CAST(amount AS REAL) >= 0),
            description TEXT NOT NULL,
            reference TEXT
        )
        """
        )

    def _migration_v2_append_only_ledgers(self, cur: sqlite3.Cursor) -> None:
        cur.execute("CREATE INDEX IF NOT EXISTS ix_movement_product ON product_movement_log(product_id, id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_movement_cause ON product_movement_log(cause_ref)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_sales_customer ON sales(customer_id, status)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_payments_sale ON sale_payments(sale_id)")

        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS movement_log_no_update
            BEFORE UPDATE ON product_movement_log
            BEGIN
                SELECT RAISE(ABORT, 'product_movement_log is append-only');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS movement_log_no_delete
            BEFORE DELETE ON product_movement_log
            BEGIN
                SELECT RAISE(ABORT, 'product_movement_log is append-only');
            END
            """
        )
        # only the void flag of a payment may change
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS payments_immutable
            BEFORE UPDATE OF sale_id, payment_date, amount, method, kind, reverses_payment_id ON sale_payments
            BEGIN
                SELECT RAISE(ABORT, 'sale_payments rows are immutable');
            END
            """
        )
        cur.execute(
            """
            CREATE TRIGGER IF NOT EXISTS payments_no_delete
            BEFORE DELETE ON sale_payments
            BEGIN
                SELECT RAISE(ABORT, 'sale_payments rows are immutable');
            END
            """
        )

    # ---------- Products ----------
    def get_product(self, product_id: int) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        product = fetch_product(cur, product_id)
        conn.close()
        return product

    def get_product_by_sku(self, sku: str) -> Optional[Product]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE active=1 AND sku=?", (sku,))
        r = cur.fetchone()
        conn.close()
        return product_from_row(r) if r else None

    def list_products(self, pos_only: bool = False) -> list[Product]:
        conn = self._conn()
        cur = conn.cursor()
        where = "active=1 AND show_in_pos=1" if pos_only else "active=1"
        cur.execute(f"SELECT {PRODUCT_COLUMNS} FROM products WHERE {where} ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [product_from_row(r) for r in rows]

    def movements_for_cause(self, cause_ref: str) -> list[MovementLogEntry]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {MOVEMENT_COLUMNS} FROM product_movement_log WHERE cause_ref=? ORDER BY id",
            (cause_ref,),
        )
        rows = cur.fetchall()
        conn.close()
        return [movement_from_row(r) for r in rows]

    def movement_history(self, product_id: int) -> list[MovementLogEntry]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"SELECT {MOVEMENT_COLUMNS} FROM product_movement_log WHERE product_id=? ORDER BY id",
            (int(product_id),),
        )
        rows = cur.fetchall()
        conn.close()
        return [movement_from_row(r) for r in rows]

    # ---------- Customers ----------
    def get_customer(self, customer_id: int) -> Optional[Customer]:
        conn = self._conn()
        cur = conn.cursor()
        customer = fetch_customer(cur, customer_id)
        conn.close()
        return customer

    def list_customers(self) -> list[Customer]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers ORDER BY name")
        rows = cur.fetchall()
        conn.close()
        return [customer_from_row(r) for r in rows]

    # ---------- Sales ----------
    def get_sale(self, sale_id: int) -> Optional[Sale]:
        conn = self._conn()
        cur = conn.cursor()
        sale = fetch_sale(cur, sale_id)
        conn.close()
        return sale

    def list_sales_between(self, start_iso: str, end_iso: str) -> list[Sale]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {SALE_COLUMNS}
            FROM sales
            WHERE datetime >= ? AND datetime < ?
            ORDER BY datetime DESC, id DESC
            """,
            (start_iso, end_iso),
        )
        rows = cur.fetchall()
        sales = [sale_from_row(cur, r) for r in rows]
        conn.close()
        return sales

    def list_open_credit_sales(self, customer_id: Optional[int] = None) -> list[Sale]:
        conn = self._conn()
        cur = conn.cursor()
        sql = f"""
            SELECT {SALE_COLUMNS}
            FROM sales
            WHERE payment_method='credit' AND status IN ('unpaid','partially_paid')
        """
        params: tuple = ()
        if customer_id is not None:
            sql += " AND customer_id=?"
            params = (int(customer_id),)
        cur.execute(sql + " ORDER BY due_date IS NULL, due_date, id", params)
        rows = cur.fetchall()
        sales = [sale_from_row(cur, r) for r in rows]
        conn.close()
        return sales

    def list_payments(self, sale_id: int) -> list[PaymentRecord]:
        conn = self._conn()
        cur = conn.cursor()
        payments = fetch_payments(cur, sale_id)
        conn.close()
        return payments

    # ---------- Expenses ----------
    def list_expenses(self, reference: Optional[str] = None) -> list[Expense]:
        conn = self._conn()
        cur = conn.cursor()
        if reference is None:
            cur.execute("SELECT id, date, category, amount, description, reference FROM expenses ORDER BY id")
        else:
            cur.execute(
                "SELECT id, date, category, amount, description, reference FROM expenses WHERE reference=? ORDER BY id",
                (reference,),
            )
        rows = cur.fetchall()
        conn.close()
        return [
            Expense(id=int(r[0]), date=str(r[1]), category=str(r[2]), amount=from_db(r[3]), description=str(r[4]), reference=r[5])
            for r in rows
        ]

    def integrity_check(self) -> str:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("PRAGMA integrity_check")
        row = cur.fetchone()
        conn.close()
        return str(row[0]) if row else "unknown"
