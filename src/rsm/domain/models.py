from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from rsm.domain.money import ZERO


class VatStrategy(str, Enum):
    NONE = "none"
    ADD = "add"
    INCLUDED = "included"


class SaleStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class AgingStatus(str, Enum):
    PENDING = "pending"
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"


class PaymentMethod(str, Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    QR = "qr"
    CHECK = "check"
    CREDIT = "credit"


class PaymentKind(str, Enum):
    PAYMENT = "payment"
    REVERSAL = "reversal"


class MovementType(str, Enum):
    INITIAL_STOCK = "initial_stock"
    SALE = "sale"
    PURCHASE_RECEIPT = "purchase_receipt"
    ADJUSTMENT = "adjustment"
    REVERSAL = "reversal"


# ---------- Discounts ----------
@dataclass(frozen=True)
class NoDiscount:
    kind = "none"


@dataclass(frozen=True)
class PercentDiscount:
    value: Decimal
    kind = "percent"


@dataclass(frozen=True)
class FixedDiscount:
    value: Decimal
    kind = "fixed"


Discount = Union[NoDiscount, PercentDiscount, FixedDiscount]
NO_DISCOUNT = NoDiscount()


def discount_from_parts(kind: str, value: object) -> Discount:
    if kind == "percent":
        return PercentDiscount(Decimal(str(value)))
    if kind == "fixed":
        return FixedDiscount(Decimal(str(value)))
    return NO_DISCOUNT


def discount_value(discount: Discount) -> Decimal:
    return getattr(discount, "value", ZERO)


# ---------- Catalog ----------
@dataclass(frozen=True)
class Product:
    id: int
    sku: str
    name: str
    cost_price: Decimal
    selling_price: Decimal
    stock: Decimal
    selling_price_2: Optional[Decimal] = None
    selling_price_3: Optional[Decimal] = None
    unit: str = "pcs"
    show_in_pos: int = 1
    active: int = 1


@dataclass(frozen=True)
class Customer:
    id: int
    name: str
    customer_type: str
    credit_days: Optional[int]
    phone: Optional[str]
    total_debt_amount: Decimal


class PromotionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass(frozen=True)
class Promotion:
    id: str
    name: str
    discount: Discount
    product_ids: tuple[int, ...] = ()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: PromotionStatus = PromotionStatus.ACTIVE

    def is_active(self, on: date) -> bool:
        # both ends of the window are inclusive
        if PromotionStatus(self.status) is not PromotionStatus.ACTIVE:
            return False
        if self.start_date is not None and on < self.start_date:
            return False
        return self.end_date is None or on <= self.end_date


# ---------- Pricing ----------
@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: Decimal
    unit_price: Decimal
    discount: Discount = NO_DISCOUNT
    promotion: Optional[Promotion] = None
    is_free_gift: bool = False
    product_name: str = ""


@dataclass(frozen=True)
class DiscountConfig:
    overall: Discount = NO_DISCOUNT
    coupon_amount: Decimal = ZERO
    coupon_code: Optional[str] = None


@dataclass(frozen=True)
class VatConfig:
    strategy: VatStrategy = VatStrategy.NONE
    rate: Decimal = ZERO


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    product_name: str
    quantity: Decimal
    price_before_promotion: Decimal
    original_unit_price: Decimal
    discount: Discount
    unit_price_after_discount: Decimal
    line_total: Decimal
    discount_amount: Decimal
    promotion_id: Optional[str] = None
    is_free_gift: bool = False


@dataclass(frozen=True)
class PricedSale:
    lines: tuple[PricedLine, ...]
    cart_original_total: Decimal
    cart_item_discount_total: Decimal
    subtotal_after_item_discounts: Decimal
    overall_discount: Discount
    overall_discount_amount: Decimal
    subtotal_after_overall_discount: Decimal
    coupon_code: Optional[str]
    coupon_amount: Decimal
    subtotal_before_vat: Decimal
    vat_strategy: VatStrategy
    vat_rate: Decimal
    vat_amount: Decimal
    grand_total: Decimal


# ---------- Settlement ----------
@dataclass(frozen=True)
class CreditTerms:
    credit_days: Optional[int] = None
    due_date: Optional[date] = None


@dataclass(frozen=True)
class Settlement:
    method: PaymentMethod
    received: Optional[Decimal] = None
    customer_id: Optional[int] = None
    credit_terms: Optional[CreditTerms] = None
    notes: Optional[str] = None
    deposit_method: PaymentMethod = PaymentMethod.CASH


@dataclass(frozen=True)
class SaleLineItem:
    product_id: int
    product_name: str
    quantity: Decimal
    price_before_promotion: Decimal
    original_unit_price: Decimal
    discount: Discount
    unit_price_after_discount: Decimal
    line_total: Decimal
    promotion_id: Optional[str] = None
    is_free_gift: bool = False


@dataclass(frozen=True)
class Sale:
    id: int
    receipt_number: str
    datetime: str
    customer_id: Optional[int]
    customer_name: Optional[str]
    payment_method: PaymentMethod
    due_date: Optional[date]
    cart_original_total: Decimal
    cart_item_discount_total: Decimal
    subtotal_after_item_discounts: Decimal
    overall_discount: Discount
    overall_discount_amount: Decimal
    subtotal_after_overall_discount: Decimal
    coupon_code: Optional[str]
    coupon_amount: Decimal
    subtotal_before_vat: Decimal
    vat_strategy: VatStrategy
    vat_rate: Decimal
    vat_amount: Decimal
    grand_total: Decimal
    received_amount: Optional[Decimal]
    change_given: Optional[Decimal]
    status: SaleStatus
    paid_amount: Decimal
    outstanding_amount: Decimal
    notes: Optional[str]
    actor_user_id: Optional[int]
    items: tuple[SaleLineItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PaymentRecord:
    id: int
    sale_id: int
    payment_date: str
    amount: Decimal
    method: PaymentMethod
    kind: PaymentKind
    note: Optional[str]
    actor_user_id: Optional[int]
    voided: int = 0
    reverses_payment_id: Optional[int] = None
    void_reason: Optional[str] = None


@dataclass(frozen=True)
class CreditSummary:
    customer_id: int
    customer_name: str
    open_invoices_count: int
    total_outstanding: Decimal
    earliest_due_date: Optional[date]
    aging: AgingStatus


# ---------- Ledger ----------
@dataclass(frozen=True)
class MovementDelta:
    product_id: int
    quantity_change: Decimal
    movement_type: MovementType
    cause_ref: str
    notes: Optional[str] = None
    reverses_entry_id: Optional[int] = None


@dataclass(frozen=True)
class MovementLogEntry:
    id: int
    datetime: str
    product_id: int
    movement_type: MovementType
    quantity_change: Decimal
    stock_before: Decimal
    stock_after: Decimal
    cost_price: Decimal
    selling_price: Decimal
    cause_ref: str
    actor_user_id: Optional[int]
    notes: Optional[str]
    reverses_entry_id: Optional[int] = None


@dataclass(frozen=True)
class Expense:
    id: int
    date: str
    category: str
    amount: Decimal
    description: str
    reference: Optional[str]
