from __future__ import annotations

import logging
import secrets
import string
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from rsm.config import EngineSettings
from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import (
    CartLine,
    Customer,
    DiscountConfig,
    Expense,
    MovementDelta,
    MovementType,
    PaymentMethod,
    PricedSale,
    Promotion,
    Sale,
    Settlement,
    VatConfig,
)
from rsm.domain.money import ZERO, money, to_decimal
from rsm.repositories.locks import EntityLocks, customer_key, product_key
from rsm.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from rsm.services.credit_service import derive_settlement, to_payment_method
from rsm.services.inventory_service import apply_movements
from rsm.services.pricing_service import price_sale, resolve_promotions

log = logging.getLogger("rsm.sales")

SELLING_EXPENSE = "selling_expense"
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class SalesService:
    def __init__(
        self,
        repo,
        locks: EntityLocks | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        settings: EngineSettings | None = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.locks = locks or EntityLocks()
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.settings = settings or EngineSettings()
        self.now = now

    def _money(self, value):
        return money(value, self.settings.currency_places)

    def _receipt_number(self, at: datetime) -> str:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(5))
        return f"{self.settings.receipt_prefix}-{int(at.timestamp() * 1000)}-{suffix}"

    @staticmethod
    def _due_date(settlement: Settlement, customer: Customer, sold_on: date) -> Optional[date]:
        terms = settlement.credit_terms
        if terms is not None and terms.due_date is not None:
            if terms.due_date < sold_on:
                raise ValidationError("Due date cannot be before the sale date.")
            return terms.due_date
        days = terms.credit_days if terms is not None and terms.credit_days is not None else customer.credit_days
        if days is None:
            return None
        if int(days) < 0:
            raise ValidationError("Credit days must be >= 0.")
        return sold_on + timedelta(days=int(days))

    def commit_sale(
        self,
        priced: PricedSale,
        settlement: Settlement,
        actor_user_id: int | None = None,
    ) -> Sale:
        """Persist a priced cart as a Sale in one all-or-nothing batch.

        Stock leaves through the movement ledger, free-gift lines post a
        selling expense at cost, and credit sales open a receivable against
        the customer's debt. Any failure leaves the store untouched.
        """
        if not priced.lines:
            raise ValidationError("Cart is empty.")
        method = to_payment_method(settlement.method)
        grand_total = self._money(priced.grand_total)
        received = None if settlement.received is None else to_decimal(settlement.received)
        if received is not None:
            if received < 0:
                raise ValidationError("Received amount must be >= 0.")
            if self._money(received) != received:
                raise ValidationError(
                    f"Received amount has more than {self.settings.currency_places} decimal places."
                )

        change = None
        deposit = ZERO
        deposit_method = to_payment_method(settlement.deposit_method)
        if method is PaymentMethod.CREDIT:
            if settlement.customer_id is None:
                raise ValidationError("Credit sales require a customer.")
            deposit = received or ZERO
            if deposit > grand_total:
                raise ValidationError("Down payment exceeds the grand total.")
            if deposit_method is PaymentMethod.CREDIT:
                raise ValidationError("Down payment cannot be paid on credit.")
            paid = deposit
        else:
            if method is PaymentMethod.CASH and received is not None:
                if received < grand_total:
                    raise ValidationError(f"Received {received} is less than the grand total {grand_total}.")
                change = self._money(received - grand_total)
            paid = grand_total
        status, outstanding = derive_settlement(grand_total, paid)

        keys = [product_key(ln.product_id) for ln in priced.lines]
        if settlement.customer_id is not None:
            keys.append(customer_key(settlement.customer_id))

        with self.locks.hold(keys):
            with self.uow_factory() as uow:
                customer = None
                if settlement.customer_id is not None:
                    customer = uow.get_customer(int(settlement.customer_id))
                    if customer is None:
                        raise NotFoundError("customer", settlement.customer_id)

                # 1) identity
                at = self.now().replace(microsecond=0)
                receipt = self._receipt_number(at)

                # 2) stock leaves through the ledger; fails the batch on shortage
                apply_movements(
                    uow,
                    [
                        MovementDelta(
                            ln.product_id,
                            -ln.quantity,
                            MovementType.SALE,
                            receipt,
                            f"Sold {ln.quantity} x {ln.product_name or ln.product_id}",
                        )
                        for ln in priced.lines
                    ],
                    actor_user_id=actor_user_id,
                )

                names = {}
                costs = {}
                for ln in priced.lines:
                    prod = uow.get_product(ln.product_id)
                    names[ln.product_id] = prod.name
                    costs[ln.product_id] = prod.cost_price

                # 3) free gifts are booked at cost as a selling expense
                expenses: list[Expense] = []
                for ln in priced.lines:
                    if not ln.is_free_gift:
                        continue
                    amount = self._money(costs[ln.product_id] * ln.quantity)
                    if amount > 0:
                        expenses.append(
                            uow.insert_expense(
                                at.date().isoformat(),
                                SELLING_EXPENSE,
                                amount,
                                f"Promotional giveaway: {names[ln.product_id]} x {ln.quantity} ({receipt})",
                                receipt,
                            )
                        )

                # 4) the sale record
                lines = tuple(replace(ln, product_name=ln.product_name or names[ln.product_id]) for ln in priced.lines)
                header = {
                    "receipt_number": receipt,
                    "datetime": at.isoformat(sep=" "),
                    "customer_id": customer.id if customer else None,
                    "customer_name": customer.name if customer else None,
                    "payment_method": method,
                    "due_date": self._due_date(settlement, customer, at.date()) if method is PaymentMethod.CREDIT else None,
                    "received_amount": received,
                    "change_given": change,
                    "status": status,
                    "paid_amount": paid,
                    "outstanding_amount": outstanding,
                    "notes": settlement.notes,
                    "actor_user_id": actor_user_id,
                }
                sale_id = uow.insert_sale(header, replace(priced, lines=lines), self.settings.currency_places)

                # 5) receivable
                if method is PaymentMethod.CREDIT:
                    uow.adjust_debt(customer.id, grand_total)
                    if deposit > 0:
                        uow.append_payment(
                            sale_id,
                            deposit,
                            deposit_method,
                            note="Down payment",
                            actor_user_id=actor_user_id,
                            payment_date=at.date(),
                        )
                        uow.adjust_debt(customer.id, -deposit)

                sale = uow.get_sale(sale_id)

        log.info(
            "sale_committed sale_id=%s receipt=%s lines=%s total=%s method=%s status=%s expenses=%s actor=%s",
            sale.id,
            sale.receipt_number,
            len(sale.items),
            sale.grand_total,
            sale.payment_method.value,
            sale.status.value,
            len(expenses),
            actor_user_id,
        )
        return sale

    def checkout(
        self,
        cart: Iterable[CartLine],
        settlement: Settlement,
        discounts: DiscountConfig | None = None,
        vat: VatConfig | None = None,
        actor_user_id: int | None = None,
        promotions: Iterable[Promotion] | None = None,
    ) -> Sale:
        if promotions is not None:
            cart = resolve_promotions(cart, promotions, self.now().date())
        priced = price_sale(cart, discounts, vat, places=self.settings.currency_places)
        return self.commit_sale(priced, settlement, actor_user_id=actor_user_id)

    def get_sale(self, sale_id: int) -> Sale:
        sale = self.repo.get_sale(int(sale_id))
        if not sale:
            raise NotFoundError("sale", sale_id)
        return sale

    def list_sales_between(self, start_iso: str, end_iso: str) -> list[Sale]:
        return self.repo.list_sales_between(start_iso, end_iso)

    def sale_expenses(self, sale_id: int) -> list[Expense]:
        return self.repo.list_expenses(reference=self.get_sale(sale_id).receipt_number)
