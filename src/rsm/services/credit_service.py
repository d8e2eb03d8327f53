from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional

from rsm.domain.errors import NotFoundError, OverpaymentError, ValidationError
from rsm.domain.models import (
    AgingStatus,
    CreditSummary,
    PaymentKind,
    PaymentMethod,
    PaymentRecord,
    Sale,
    SaleStatus,
)
from rsm.domain.money import ZERO, money, to_decimal
from rsm.repositories.contracts import ReadRepository
from rsm.repositories.locks import EntityLocks, customer_key, sale_key
from rsm.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.credit")

PAYMENT_METHODS = (PaymentMethod.CASH, PaymentMethod.TRANSFER, PaymentMethod.QR, PaymentMethod.CHECK)


def to_payment_method(value) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as e:
        raise ValidationError(f"Unknown payment method: {value}") from e


def derive_settlement(grand_total: Decimal, paid_amount: Decimal) -> tuple[SaleStatus, Decimal]:
    """Status and outstanding balance are a pure function of paid vs. total."""
    outstanding = max(ZERO, to_decimal(grand_total) - to_decimal(paid_amount))
    if outstanding == 0:
        return SaleStatus.PAID, outstanding
    if to_decimal(paid_amount) == 0:
        return SaleStatus.UNPAID, outstanding
    return SaleStatus.PARTIALLY_PAID, outstanding


def classify_aging(due_date: Optional[date], today: date, due_soon_days: int = 3) -> AgingStatus:
    if due_date is None:
        return AgingStatus.PENDING
    days_left = (due_date - today).days
    if days_left < 0:
        return AgingStatus.OVERDUE
    if days_left <= due_soon_days:
        return AgingStatus.DUE_SOON
    return AgingStatus.PENDING


def active_paid_amount(payments: Iterable[PaymentRecord]) -> Decimal:
    return sum((p.amount for p in payments if p.kind is PaymentKind.PAYMENT and not p.voided), ZERO)


class CreditService:
    def __init__(
        self,
        repo: ReadRepository,
        locks: EntityLocks | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        currency_places: int = 2,
        due_soon_days: int = 3,
        clock: Callable[[], date] = date.today,
    ):
        self.repo = repo
        self.locks = locks or EntityLocks()
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.places = int(currency_places)
        self.due_soon_days = int(due_soon_days)
        self.clock = clock

    def _sale_or_raise(self, sale_id: int) -> Sale:
        sale = self.repo.get_sale(int(sale_id))
        if not sale:
            raise NotFoundError("sale", sale_id)
        return sale

    def _lock_keys(self, sale: Sale) -> list:
        keys = [sale_key(sale.id)]
        if sale.customer_id is not None:
            keys.append(customer_key(sale.customer_id))
        return keys

    def apply_payment(
        self,
        sale_id: int,
        amount,
        method: PaymentMethod | str = PaymentMethod.CASH,
        note: Optional[str] = None,
        actor_user_id: Optional[int] = None,
        paid_on: Optional[date] = None,
    ) -> PaymentRecord:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be > 0.")
        if money(amount, self.places) != amount:
            raise ValidationError(f"Payment amount has more than {self.places} decimal places.")
        method = to_payment_method(method)
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method.value}")

        sale = self._sale_or_raise(sale_id)
        with self.locks.hold(self._lock_keys(sale)):
            with self.uow_factory() as uow:
                # re-read under the lock; the balance may have moved
                sale = uow.get_sale(sale.id)
                if sale.status is SaleStatus.PAID:
                    raise OverpaymentError(f"Sale {sale.receipt_number} is already fully paid.")
                if amount > sale.outstanding_amount:
                    raise OverpaymentError(
                        f"Payment {amount} exceeds outstanding {sale.outstanding_amount} on {sale.receipt_number}."
                    )

                record = uow.append_payment(
                    sale.id, amount, method, note=note, actor_user_id=actor_user_id, payment_date=paid_on or self.clock()
                )
                paid = sale.paid_amount + amount
                status, outstanding = derive_settlement(sale.grand_total, paid)
                uow.update_sale_settlement(sale.id, status, paid, outstanding)
                if sale.customer_id is not None and sale.payment_method is PaymentMethod.CREDIT:
                    uow.adjust_debt(sale.customer_id, -amount)

        log.info(
            "payment_applied sale_id=%s payment_id=%s amount=%s status=%s outstanding=%s actor=%s",
            sale.id,
            record.id,
            amount,
            status.value,
            outstanding,
            actor_user_id,
        )
        return record

    def void_payment(
        self,
        sale_id: int,
        payment_id: int,
        reason: str,
        actor_user_id: Optional[int] = None,
    ) -> PaymentRecord:
        """Void a payment by appending a compensating reversal record.

        The original row only gets its void flag set; the triple is recomputed
        from the remaining payments and the amount goes back on the customer's
        debt. Returns the reversal record.
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to void a payment.")

        sale = self._sale_or_raise(sale_id)
        with self.locks.hold(self._lock_keys(sale)):
            with self.uow_factory() as uow:
                sale = uow.get_sale(sale.id)
                original = uow.get_payment(int(payment_id))
                if original is None or original.sale_id != sale.id:
                    raise NotFoundError("payment", payment_id)
                if original.kind is not PaymentKind.PAYMENT:
                    raise ValidationError("Reversal records cannot be voided.")
                if original.voided:
                    raise ValidationError(f"Payment {payment_id} is already voided.")

                uow.mark_payment_voided(original.id, reason)
                reversal = uow.append_payment(
                    sale.id,
                    -original.amount,
                    original.method,
                    kind=PaymentKind.REVERSAL,
                    note=reason,
                    actor_user_id=actor_user_id,
                    reverses_payment_id=original.id,
                )
                paid = active_paid_amount(uow.list_payments(sale.id))
                status, outstanding = derive_settlement(sale.grand_total, paid)
                uow.update_sale_settlement(sale.id, status, paid, outstanding)
                if sale.customer_id is not None and sale.payment_method is PaymentMethod.CREDIT:
                    uow.adjust_debt(sale.customer_id, original.amount)

        log.info(
            "payment_voided sale_id=%s payment_id=%s amount=%s status=%s actor=%s reason=%s",
            sale.id,
            original.id,
            original.amount,
            status.value,
            actor_user_id,
            reason,
        )
        return reversal

    def list_payments(self, sale_id: int) -> list[PaymentRecord]:
        self._sale_or_raise(sale_id)
        return self.repo.list_payments(int(sale_id))

    # ---------- Read side; aging is always computed at call time ----------
    def invoice_aging(self, sale: Sale, today: Optional[date] = None) -> AgingStatus:
        return classify_aging(sale.due_date, today or self.clock(), self.due_soon_days)

    def list_open_invoices(self, customer_id: int) -> list[Sale]:
        if self.repo.get_customer(int(customer_id)) is None:
            raise NotFoundError("customer", customer_id)
        return self.repo.list_open_credit_sales(int(customer_id))

    def _summarize(self, customer, invoices: list[Sale], today: date) -> CreditSummary:
        due_dates = [s.due_date for s in invoices if s.due_date is not None]
        earliest = min(due_dates) if due_dates else None
        return CreditSummary(
            customer_id=customer.id,
            customer_name=customer.name,
            open_invoices_count=len(invoices),
            total_outstanding=sum((s.outstanding_amount for s in invoices), ZERO),
            earliest_due_date=earliest,
            aging=classify_aging(earliest, today, self.due_soon_days),
        )

    def get_credit_summary(self, customer_id: int, today: Optional[date] = None) -> CreditSummary:
        customer = self.repo.get_customer(int(customer_id))
        if customer is None:
            raise NotFoundError("customer", customer_id)
        invoices = self.repo.list_open_credit_sales(customer.id)
        return self._summarize(customer, invoices, today or self.clock())

    def list_credit_summaries(self, today: Optional[date] = None) -> list[CreditSummary]:
        today = today or self.clock()
        by_customer: dict[int, list[Sale]] = {}
        for sale in self.repo.list_open_credit_sales():
            if sale.customer_id is not None:
                by_customer.setdefault(int(sale.customer_id), []).append(sale)

        out = []
        for customer in self.repo.list_customers():
            invoices = by_customer.get(customer.id)
            if invoices:
                out.append(self._summarize(customer, invoices, today))
        out.sort(key=lambda s: (s.earliest_due_date is None, s.earliest_due_date or today))
        return out
