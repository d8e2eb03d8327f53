import re
import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import TODAY, add_product

from rsm.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from rsm.domain.models import (
    CartLine,
    CreditTerms,
    DiscountConfig,
    FixedDiscount,
    MovementType,
    PaymentMethod,
    PercentDiscount,
    Promotion,
    SaleStatus,
    Settlement,
    VatConfig,
    VatStrategy,
)
from rsm.repositories.unit_of_work import SqliteUnitOfWork
from rsm.services.sales_service import SELLING_EXPENSE, SalesService

D = Decimal
VAT_7_ADD = VatConfig(VatStrategy.ADD, D("0.07"))


class FailingUnitOfWork(SqliteUnitOfWork):
    def insert_sale(self, header, priced, places):
        super().insert_sale(header, priced, places)
        raise RuntimeError("boom")


def test_cash_sale_moves_stock_and_stores_change(app):
    pid = add_product(app, stock="10")

    sale = app.sales.checkout(
        [CartLine(pid, D("2"), D("100"))],
        Settlement(PaymentMethod.CASH, received=D("250")),
        vat=VAT_7_ADD,
    )

    assert re.fullmatch(r"RCPT-\d+-[A-Z0-9]{5}", sale.receipt_number)
    assert sale.grand_total == D("214.00")
    assert sale.vat_amount == D("14.00")
    assert sale.change_given == D("36.00")
    assert sale.status is SaleStatus.PAID
    assert sale.paid_amount == D("214.00")
    assert sale.outstanding_amount == 0
    assert sale.items[0].product_name == "Product SKU-1"
    assert app.inventory.get_product(pid).stock == 8

    movements = app.repo.movements_for_cause(sale.receipt_number)
    assert len(movements) == 1
    assert movements[0].movement_type is MovementType.SALE
    assert movements[0].quantity_change == D("-2")
    assert app.credit.list_payments(sale.id) == []


def test_short_cash_is_rejected_before_any_write(app):
    pid = add_product(app, stock="10")
    with pytest.raises(ValidationError):
        app.sales.checkout([CartLine(pid, D("2"), D("100"))], Settlement(PaymentMethod.CASH, received=D("150")))
    assert app.inventory.get_product(pid).stock == 10


def test_non_cash_sale_is_paid_at_commit(app):
    pid = add_product(app, stock="10")
    sale = app.sales.checkout([CartLine(pid, D("1"), D("100"))], Settlement(PaymentMethod.TRANSFER))

    assert sale.status is SaleStatus.PAID
    assert sale.received_amount is None
    assert sale.change_given is None
    assert sale.due_date is None


def test_oversell_leaves_store_untouched(app):
    pid = add_product(app, stock="3")

    with pytest.raises(InsufficientStockError):
        app.sales.checkout([CartLine(pid, D("5"), D("100"))], Settlement(PaymentMethod.CASH))

    assert app.inventory.get_product(pid).stock == 3
    assert len(app.inventory.get_movement_history(pid)) == 1
    assert app.sales.list_sales_between("2000-01-01 00:00:00", "2100-01-01 00:00:00") == []


def test_multi_line_sale_fails_whole_on_one_short_line(app):
    a = add_product(app, sku="A", stock="10")
    b = add_product(app, sku="B", stock="1")

    with pytest.raises(InsufficientStockError):
        app.sales.checkout(
            [CartLine(a, D("4"), D("10")), CartLine(b, D("2"), D("10"))],
            Settlement(PaymentMethod.CASH),
        )
    assert app.inventory.get_product(a).stock == 10
    assert app.inventory.get_product(b).stock == 1


def test_failure_after_stock_write_rolls_everything_back(app):
    pid = add_product(app, stock="10")
    gift = add_product(app, sku="GIFT", cost="5", price="20", stock="10")
    cid = app.customers.add_customer("Acme", "credit", credit_days=15)
    sales = SalesService(app.repo, app.locks, uow_factory=lambda: FailingUnitOfWork(app.repo))

    with pytest.raises(RuntimeError):
        sales.checkout(
            [
                CartLine(pid, D("2"), D("100")),
                CartLine(gift, D("1"), D("20"), discount=FixedDiscount(D("20")), is_free_gift=True),
            ],
            Settlement(PaymentMethod.CREDIT, customer_id=cid),
        )

    assert app.inventory.get_product(pid).stock == 10
    assert app.inventory.get_product(gift).stock == 10
    assert app.repo.list_expenses() == []
    assert app.customers.get_customer(cid).total_debt_amount == 0
    assert app.sales.list_sales_between("2000-01-01 00:00:00", "2100-01-01 00:00:00") == []


def test_credit_sale_opens_receivable(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("Acme", "credit", credit_days=15)

    sale = app.sales.checkout(
        [CartLine(pid, D("5"), D("100"))],
        Settlement(PaymentMethod.CREDIT, customer_id=cid),
    )

    assert sale.status is SaleStatus.UNPAID
    assert sale.outstanding_amount == D("500")
    assert sale.customer_name == "Acme"
    assert sale.due_date == TODAY + timedelta(days=15)
    assert app.customers.get_customer(cid).total_debt_amount == D("500")


def test_credit_sale_down_payment_is_recorded(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("Acme", "credit")

    sale = app.sales.checkout(
        [CartLine(pid, D("5"), D("100"))],
        Settlement(
            PaymentMethod.CREDIT,
            received=D("100"),
            customer_id=cid,
            credit_terms=CreditTerms(credit_days=7),
            deposit_method=PaymentMethod.TRANSFER,
        ),
    )

    assert sale.status is SaleStatus.PARTIALLY_PAID
    assert sale.paid_amount == D("100")
    assert sale.outstanding_amount == D("400")
    assert sale.due_date == TODAY + timedelta(days=7)
    assert app.customers.get_customer(cid).total_debt_amount == D("400")

    (deposit,) = app.credit.list_payments(sale.id)
    assert deposit.amount == D("100")
    assert deposit.method is PaymentMethod.TRANSFER
    assert deposit.note == "Down payment"


def test_credit_sale_without_terms_has_no_due_date(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("No Terms", "credit")

    sale = app.sales.checkout([CartLine(pid, D("1"), D("100"))], Settlement(PaymentMethod.CREDIT, customer_id=cid))
    assert sale.due_date is None


def test_credit_sale_validation(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("Acme", "credit")
    cart = [CartLine(pid, D("1"), D("100"))]

    with pytest.raises(ValidationError):
        app.sales.checkout(cart, Settlement(PaymentMethod.CREDIT))
    with pytest.raises(NotFoundError):
        app.sales.checkout(cart, Settlement(PaymentMethod.CREDIT, customer_id=999))
    with pytest.raises(ValidationError):
        app.sales.checkout(cart, Settlement(PaymentMethod.CREDIT, received=D("101"), customer_id=cid))
    with pytest.raises(ValidationError):
        app.sales.checkout(
            cart,
            Settlement(PaymentMethod.CREDIT, customer_id=cid, credit_terms=CreditTerms(due_date=TODAY - timedelta(days=1))),
        )
    assert app.inventory.get_product(pid).stock == 10
    assert app.customers.get_customer(cid).total_debt_amount == 0


def test_down_payment_with_extra_decimals_is_rejected(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("Acme", "credit")

    with pytest.raises(ValidationError, match="decimal places"):
        app.sales.checkout(
            [CartLine(pid, D("1"), D("100"))],
            Settlement(PaymentMethod.CREDIT, received=D("3.335"), customer_id=cid),
        )
    assert app.inventory.get_product(pid).stock == 10
    assert app.customers.get_customer(cid).total_debt_amount == 0


def test_unknown_payment_method_is_a_validation_error(app):
    pid = add_product(app, stock="10")
    cid = app.customers.add_customer("Acme", "credit")
    cart = [CartLine(pid, D("1"), D("100"))]

    with pytest.raises(ValidationError, match="wire"):
        app.sales.checkout(cart, Settlement("wire"))
    with pytest.raises(ValidationError, match="wire"):
        app.sales.checkout(cart, Settlement(PaymentMethod.CREDIT, received=D("10"), customer_id=cid, deposit_method="wire"))
    assert app.inventory.get_product(pid).stock == 10


def test_checkout_applies_active_promotions(app):
    pid = add_product(app, stock="10")
    other = add_product(app, sku="B", stock="10")
    offers = [
        Promotion("SPRING", "Spring", PercentDiscount(D("20")), product_ids=(pid,)),
        Promotion("OLD", "Old", PercentDiscount(D("50")), product_ids=(other,), end_date=TODAY - timedelta(days=1)),
    ]

    sale = app.sales.checkout(
        [CartLine(pid, D("1"), D("100")), CartLine(other, D("1"), D("100"))],
        Settlement(PaymentMethod.CASH),
        promotions=offers,
    )

    promoted, plain = sale.items
    assert promoted.promotion_id == "SPRING"
    assert promoted.price_before_promotion == D("100")
    assert promoted.line_total == D("80")
    assert plain.promotion_id is None
    assert sale.grand_total == D("180")


def test_free_gift_posts_selling_expense_at_cost(app):
    pid = add_product(app, stock="10")
    gift = add_product(app, sku="MUG", cost="3.50", price="12", stock="10")

    sale = app.sales.checkout(
        [
            CartLine(pid, D("1"), D("100")),
            CartLine(gift, D("2"), D("12"), discount=FixedDiscount(D("12")), is_free_gift=True),
        ],
        Settlement(PaymentMethod.CASH, received=D("100")),
    )

    assert sale.grand_total == D("100.00")
    assert sale.items[1].is_free_gift is True
    assert sale.items[1].line_total == 0
    assert app.inventory.get_product(gift).stock == 8

    (expense,) = app.sales.sale_expenses(sale.id)
    assert expense.category == SELLING_EXPENSE
    assert expense.amount == D("7.00")
    assert expense.reference == sale.receipt_number


def test_persisted_breakdown_is_rounded(app):
    pid = add_product(app, stock="10")
    sale = app.sales.checkout([CartLine(pid, D("3"), D("3.335"))], Settlement(PaymentMethod.QR))

    assert sale.items[0].unit_price_after_discount == D("3.34")
    assert sale.items[0].line_total == D("10.02")
    assert sale.subtotal_after_item_discounts == D("10.02")
    assert sale.subtotal_before_vat == D("10.02")
    assert sale.grand_total == D("10.02")


def test_stored_lines_add_up_to_stored_subtotal(app):
    a = add_product(app, sku="A", stock="10")
    b = add_product(app, sku="B", stock="10")
    half = PercentDiscount(D("50"))
    sale = app.sales.checkout(
        [CartLine(a, D("1"), D("1.17"), discount=half), CartLine(b, D("1"), D("1.17"), discount=half)],
        Settlement(PaymentMethod.CASH),
    )
    sale = app.sales.get_sale(sale.id)

    for item in sale.items:
        assert item.unit_price_after_discount == D("0.59")
        assert item.line_total == item.quantity * item.unit_price_after_discount
    assert sale.subtotal_after_item_discounts == sum(item.line_total for item in sale.items) == D("1.18")
    assert sale.cart_item_discount_total == sale.cart_original_total - sale.subtotal_after_item_discounts
    assert sale.grand_total == D("1.18")


def test_overall_discount_amount_matches_rounded_subtotal(app):
    pid = add_product(app, stock="10")
    sale = app.sales.checkout(
        [CartLine(pid, D("1"), D("10.05"))],
        Settlement(PaymentMethod.CASH),
        discounts=DiscountConfig(overall=PercentDiscount(D("10"))),
    )

    assert sale.subtotal_after_overall_discount == D("9.05")
    assert sale.overall_discount_amount == D("1.00")
    assert sale.subtotal_after_item_discounts - sale.overall_discount_amount == sale.subtotal_after_overall_discount
    assert sale.grand_total == D("9.05")


def test_sales_listed_by_commit_time(app):
    pid = add_product(app, stock="10")
    first = app.sales.checkout([CartLine(pid, D("1"), D("100"))], Settlement(PaymentMethod.CASH))
    second = app.sales.checkout([CartLine(pid, D("1"), D("100"))], Settlement(PaymentMethod.CHECK))

    listed = app.sales.list_sales_between("2024-03-15 00:00:00", "2024-03-16 00:00:00")
    assert [s.id for s in listed] == [second.id, first.id]
    assert app.sales.list_sales_between("2024-03-16 00:00:00", "2024-03-17 00:00:00") == []


def test_unknown_sale(app):
    with pytest.raises(NotFoundError):
        app.sales.get_sale(12345)


def test_concurrent_checkouts_do_not_oversell(app):
    pid = add_product(app, stock="5")
    results = []
    guard = threading.Lock()

    def buy():
        try:
            app.sales.checkout([CartLine(pid, D("3"), D("100"))], Settlement(PaymentMethod.CASH))
            outcome = "ok"
        except InsufficientStockError:
            outcome = "short"
        with guard:
            results.append(outcome)

    threads = [threading.Thread(target=buy) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["ok", "short"]
    assert app.inventory.get_product(pid).stock == 2
