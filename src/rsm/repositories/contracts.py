from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Protocol

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
)


class ProductStore(Protocol):
    def get_product(self, product_id: int, include_inactive: bool = False) -> Optional[Product]: ...
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
    ) -> int: ...
    def update_product(self, product_id: int, changes: dict) -> Product: ...
    def write_stock(self, product_id: int, expected_stock: Decimal, new_stock: Decimal) -> None: ...
    def append_movement_log(self, entry: dict) -> MovementLogEntry: ...
    def movements_for_cause(self, cause_ref: str) -> list[MovementLogEntry]: ...
    def reversed_entry_ids(self, entry_ids: list[int]) -> set[int]: ...


class CustomerStore(Protocol):
    def get_customer(self, customer_id: int) -> Optional[Customer]: ...
    def insert_customer(self, name: str, customer_type: str, credit_days: Optional[int], phone: Optional[str]) -> int: ...
    def adjust_debt(self, customer_id: int, delta: Decimal) -> Decimal: ...


class PaymentStore(Protocol):
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
    ) -> PaymentRecord: ...
    def list_payments(self, sale_id: int) -> list[PaymentRecord]: ...
    def get_payment(self, payment_id: int) -> Optional[PaymentRecord]: ...
    def mark_payment_voided(self, payment_id: int, reason: Optional[str]) -> None: ...


class SaleStore(Protocol):
    def insert_sale(self, header: dict, priced: PricedSale, places: int) -> int: ...
    def get_sale(self, sale_id: int) -> Optional[Sale]: ...
    def update_sale_settlement(self, sale_id: int, status: SaleStatus, paid: Decimal, outstanding: Decimal) -> None: ...


class ExpenseStore(Protocol):
    def insert_expense(self, date_iso: str, category: str, amount: Decimal, description: str, reference: Optional[str]) -> Expense: ...


class ReadRepository(Protocol):
    def get_product(self, product_id: int) -> Optional[Product]: ...
    def get_customer(self, customer_id: int) -> Optional[Customer]: ...
    def get_sale(self, sale_id: int) -> Optional[Sale]: ...
    def list_payments(self, sale_id: int) -> list[PaymentRecord]: ...
    def list_open_credit_sales(self, customer_id: Optional[int] = None) -> list[Sale]: ...
    def movement_history(self, product_id: int) -> list[MovementLogEntry]: ...
    def list_customers(self) -> Iterable[Customer]: ...
