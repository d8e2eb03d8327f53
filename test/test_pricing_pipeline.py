from datetime import date
from decimal import Decimal

import pytest

from rsm.domain.errors import InvalidDiscountError, ValidationError
from rsm.domain.models import (
    CartLine,
    DiscountConfig,
    FixedDiscount,
    PercentDiscount,
    Promotion,
    PromotionStatus,
    VatConfig,
    VatStrategy,
)
from rsm.services.pricing_service import (
    PricingService,
    apply_discount,
    gross_profit_percent,
    price_for_margin,
    price_sale,
    resolve_promotions,
)

D = Decimal
VAT_7_ADD = VatConfig(VatStrategy.ADD, D("0.07"))


def two_at_100():
    return [CartLine(product_id=1, quantity=D("2"), unit_price=D("100"))]


def test_vat_added_on_top_of_subtotal():
    priced = price_sale(two_at_100(), vat=VAT_7_ADD)

    assert priced.subtotal_after_item_discounts == D("200")
    assert priced.vat_amount == D("14.00")
    assert priced.grand_total == D("214.00")


def test_overall_discount_applies_before_vat():
    priced = price_sale(two_at_100(), DiscountConfig(overall=PercentDiscount(D("10"))), VAT_7_ADD)

    assert priced.overall_discount_amount == D("20")
    assert priced.subtotal_after_overall_discount == D("180")
    assert priced.vat_amount == D("12.60")
    assert priced.grand_total == D("192.60")


def test_included_vat_is_extracted_without_changing_total():
    cart = [CartLine(product_id=1, quantity=D("1"), unit_price=D("107"))]
    priced = price_sale(cart, vat=VatConfig(VatStrategy.INCLUDED, D("0.07")))

    assert priced.vat_amount == D("7.00")
    assert priced.grand_total == D("107.00")


def test_zero_rate_keeps_strategy_but_adds_nothing():
    priced = price_sale(two_at_100(), vat=VatConfig(VatStrategy.ADD, D("0")))

    assert priced.vat_strategy is VatStrategy.ADD
    assert priced.vat_amount == 0
    assert priced.grand_total == D("200.00")


def test_coupon_comes_after_overall_discount():
    priced = price_sale(
        two_at_100(),
        DiscountConfig(overall=FixedDiscount(D("50")), coupon_amount=D("30"), coupon_code="SPRING"),
    )

    assert priced.subtotal_after_overall_discount == D("150")
    assert priced.subtotal_before_vat == D("120")
    assert priced.coupon_code == "SPRING"
    assert priced.grand_total == D("120.00")


def test_coupon_larger_than_subtotal_is_rejected():
    with pytest.raises(InvalidDiscountError):
        price_sale(two_at_100(), DiscountConfig(coupon_amount=D("250")))


def test_negative_coupon_is_rejected():
    with pytest.raises(InvalidDiscountError):
        price_sale(two_at_100(), DiscountConfig(coupon_amount=D("-1")))


def test_promotion_then_item_discount_per_line():
    promo = Promotion("PROMO-20", "Twenty off", PercentDiscount(D("20")))
    cart = [
        CartLine(product_id=1, quantity=D("2"), unit_price=D("100"), discount=FixedDiscount(D("10")), promotion=promo),
        CartLine(product_id=2, quantity=D("1"), unit_price=D("50")),
    ]
    priced = price_sale(cart)
    promoted = priced.lines[0]

    assert promoted.price_before_promotion == D("100")
    assert promoted.original_unit_price == D("80")
    assert promoted.unit_price_after_discount == D("70")
    assert promoted.line_total == D("140")
    assert promoted.promotion_id == "PROMO-20"
    assert priced.cart_original_total == D("250")
    assert priced.cart_item_discount_total == D("60")
    assert priced.subtotal_after_item_discounts == D("190")
    assert priced.subtotal_after_item_discounts == priced.cart_original_total - priced.cart_item_discount_total


@pytest.mark.parametrize(
    "discount",
    [PercentDiscount(D("100")), PercentDiscount(D("-5")), FixedDiscount(D("-1")), FixedDiscount(D("150"))],
)
def test_invalid_item_discounts_raise(discount):
    cart = [CartLine(product_id=1, quantity=D("1"), unit_price=D("100"), discount=discount)]
    with pytest.raises(InvalidDiscountError):
        price_sale(cart)


def test_discount_down_to_zero_is_allowed_for_free_items():
    assert apply_discount(D("100"), FixedDiscount(D("100"))) == 0

    cart = [CartLine(product_id=1, quantity=D("1"), unit_price=D("100"), discount=FixedDiscount(D("100")), is_free_gift=True)]
    priced = price_sale(cart)
    assert priced.grand_total == 0
    assert priced.lines[0].is_free_gift is True


def test_unit_price_is_rounded_and_line_total_follows_it():
    cart = [CartLine(product_id=1, quantity=D("3"), unit_price=D("3.335"))]
    line = price_sale(cart).lines[0]

    assert line.unit_price_after_discount == D("3.34")
    assert line.line_total == D("10.02")
    assert line.line_total == line.quantity * line.unit_price_after_discount


def test_half_price_lines_sum_to_subtotal():
    cart = [CartLine(product_id=i, quantity=D("1"), unit_price=D("1.17"), discount=PercentDiscount(D("50"))) for i in (1, 2)]
    priced = price_sale(cart)

    assert [ln.unit_price_after_discount for ln in priced.lines] == [D("0.59"), D("0.59")]
    assert priced.subtotal_after_item_discounts == D("1.18")
    assert priced.subtotal_after_item_discounts == sum(ln.line_total for ln in priced.lines)
    assert priced.cart_item_discount_total == priced.cart_original_total - priced.subtotal_after_item_discounts
    assert priced.grand_total == D("1.18")


def test_cart_stages_keep_full_precision():
    cart = [CartLine(product_id=1, quantity=D("1"), unit_price=D("10.05"))]
    priced = price_sale(cart, DiscountConfig(overall=PercentDiscount(D("10"))))

    assert priced.subtotal_after_overall_discount == D("9.045")
    assert priced.subtotal_before_vat == D("9.045")
    assert priced.grand_total == D("9.05")


def test_empty_cart_and_bad_quantities_are_rejected():
    with pytest.raises(ValidationError):
        price_sale([])
    with pytest.raises(ValidationError):
        price_sale([CartLine(product_id=1, quantity=D("0"), unit_price=D("10"))])
    with pytest.raises(ValidationError):
        price_sale(two_at_100(), vat=VatConfig(VatStrategy.ADD, D("-0.07")))


def test_pricing_service_uses_configured_precision():
    priced = PricingService(currency_places=0).price(two_at_100(), vat=VatConfig(VatStrategy.ADD, D("0.075")))

    assert priced.vat_amount == D("15")
    assert priced.grand_total == D("215")


ON = date(2024, 3, 15)


def shelf_line(product_id=1, discount=None, promotion=None):
    kwargs = {"discount": discount} if discount is not None else {}
    return CartLine(product_id=product_id, quantity=D("1"), unit_price=D("100"), promotion=promotion, **kwargs)


def promo(pid="P1", pct="20", products=(1,), **kwargs):
    return Promotion(pid, f"{pct}% off", PercentDiscount(D(pct)), product_ids=products, **kwargs)


def test_active_promotion_is_attached_and_listed_price_kept():
    cart = resolve_promotions([shelf_line(discount=FixedDiscount(D("5")))], [promo()], ON)

    assert cart[0].promotion.id == "P1"
    priced = price_sale(cart)
    line = priced.lines[0]
    assert line.price_before_promotion == D("100")
    assert line.original_unit_price == D("80")
    assert line.unit_price_after_discount == D("80")
    assert line.promotion_id == "P1"


def test_best_of_several_promotions_wins():
    offers = [promo("P10", "10"), promo("P30", "30"), promo("P20", "20")]
    cart = resolve_promotions([shelf_line()], offers, ON)
    assert cart[0].promotion.id == "P30"


@pytest.mark.parametrize(
    "offer",
    [
        promo(end_date=date(2024, 3, 14)),
        promo(start_date=date(2024, 3, 16)),
        promo(status=PromotionStatus.INACTIVE),
        promo(products=(2, 3)),
    ],
    ids=["expired", "not-started", "inactive", "other-products"],
)
def test_promotions_that_do_not_apply_are_ignored(offer):
    line = shelf_line()
    assert resolve_promotions([line], [offer], ON) == [line]


def test_window_ends_are_inclusive():
    offer = promo(start_date=ON, end_date=ON)
    assert resolve_promotions([shelf_line()], [offer], ON)[0].promotion is offer


def test_promotion_must_beat_current_price():
    line = shelf_line(discount=PercentDiscount(D("25")))
    assert resolve_promotions([line], [promo(pct="20")], ON) == [line]

    same = shelf_line(discount=PercentDiscount(D("20")))
    assert resolve_promotions([same], [promo(pct="20")], ON) == [same]


def test_line_with_promotion_is_left_alone():
    chosen = promo("MANUAL", "5")
    line = shelf_line(promotion=chosen)
    assert resolve_promotions([line], [promo("BETTER", "50")], ON)[0].promotion is chosen


def test_promotion_pricing_below_zero_never_matches():
    offer = Promotion("BIG", "Too big", FixedDiscount(D("150")), product_ids=(1,))
    line = shelf_line()
    assert resolve_promotions([line], [offer], ON) == [line]


def test_pricing_service_resolves_promotions_on_its_clock():
    offer = promo(end_date=date(2024, 3, 31))
    in_window = PricingService(clock=lambda: ON).price([shelf_line()], promotions=[offer])
    after = PricingService(clock=lambda: date(2024, 4, 1)).price([shelf_line()], promotions=[offer])

    assert in_window.grand_total == D("80.00")
    assert after.grand_total == D("100.00")


def test_gross_profit_percent():
    assert gross_profit_percent(D("40"), D("100")) == D("60")
    assert gross_profit_percent(D("40"), D("0")) == D("-100")
    assert gross_profit_percent(D("0"), D("0")) == 0


def test_price_for_margin_back_solves_selling_price():
    assert price_for_margin(D("40"), D("60")) == D("100.00")
    assert price_for_margin(D("10"), D("25")) == D("13.33")
    with pytest.raises(ValidationError):
        price_for_margin(D("10"), D("100"))
    with pytest.raises(ValidationError):
        price_for_margin(D("-1"), D("10"))
