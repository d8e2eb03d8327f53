from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable

from rsm.domain.errors import InvalidDiscountError, ValidationError
from rsm.domain.models import (
    CartLine,
    Discount,
    DiscountConfig,
    NO_DISCOUNT,
    FixedDiscount,
    NoDiscount,
    PercentDiscount,
    PricedLine,
    PricedSale,
    Promotion,
    VatConfig,
    VatStrategy,
)
from rsm.domain.money import ZERO, money, to_decimal

HUNDRED = Decimal("100")


def validate_discount(discount: Discount) -> None:
    if isinstance(discount, PercentDiscount):
        value = to_decimal(discount.value)
        if value < 0 or value >= HUNDRED:
            raise InvalidDiscountError(f"Percent discount must be in [0, 100). Received: {value}")
    elif isinstance(discount, FixedDiscount):
        if to_decimal(discount.value) < 0:
            raise InvalidDiscountError(f"Fixed discount must be >= 0. Received: {discount.value}")
    elif not isinstance(discount, NoDiscount):
        raise InvalidDiscountError(f"Unknown discount: {discount!r}")


def apply_discount(amount: Decimal, discount: Discount) -> Decimal:
    """Return ``amount`` after ``discount``, at full precision.

    Raises InvalidDiscountError when the discount is out of range or would
    take the amount below zero. Zero itself is allowed (free items).
    """
    validate_discount(discount)
    amount = to_decimal(amount)
    if isinstance(discount, PercentDiscount):
        result = amount * (HUNDRED - to_decimal(discount.value)) / HUNDRED
    elif isinstance(discount, FixedDiscount):
        result = amount - to_decimal(discount.value)
    else:
        result = amount
    if result < 0:
        raise InvalidDiscountError(f"Discount {discount!r} drives {amount} below zero.")
    return result


def _price_line(line: CartLine, places: int) -> PricedLine:
    quantity = to_decimal(line.quantity)
    if quantity <= 0:
        raise ValidationError("Quantity must be > 0.")
    listed = to_decimal(line.unit_price)
    if listed < 0:
        raise ValidationError("Unit price must be >= 0.")

    # 1) promotion replaces the price the item discount works on
    original = listed
    promotion_id = None
    if line.promotion is not None:
        original = apply_discount(listed, line.promotion.discount)
        promotion_id = line.promotion.id

    # 2) the line's own discount; the unit price is what the receipt shows,
    # so it is settled at currency precision and the line total derives from it
    unit_after = money(apply_discount(original, line.discount), places)
    line_total = quantity * unit_after

    return PricedLine(
        product_id=int(line.product_id),
        product_name=line.product_name,
        quantity=quantity,
        price_before_promotion=listed,
        original_unit_price=original,
        discount=line.discount,
        unit_price_after_discount=unit_after,
        line_total=line_total,
        discount_amount=quantity * (listed - unit_after),
        promotion_id=promotion_id,
        is_free_gift=bool(line.is_free_gift),
    )


def _apply_vat(subtotal: Decimal, vat: VatConfig, places: int) -> tuple[Decimal, Decimal]:
    rate = to_decimal(vat.rate)
    if rate < 0:
        raise ValidationError("VAT rate must be >= 0.")
    strategy = VatStrategy(vat.strategy)
    if strategy is VatStrategy.NONE or rate == 0:
        return ZERO, money(subtotal, places)
    if strategy is VatStrategy.ADD:
        vat_amount = subtotal * rate
        return money(vat_amount, places), money(subtotal + vat_amount, places)
    # included: extracted for reporting, total unchanged
    vat_amount = subtotal - subtotal / (1 + rate)
    return money(vat_amount, places), money(subtotal, places)


def price_sale(
    cart: Iterable[CartLine],
    discounts: DiscountConfig | None = None,
    vat: VatConfig | None = None,
    places: int = 2,
) -> PricedSale:
    """Derive the full price breakdown of a cart.

    Stages run in a fixed order: promotion, item discount, cart aggregation,
    overall discount, coupon, VAT. Line unit prices are rounded to the
    currency so that every line total is exactly ``quantity * unit price``;
    the cart-level stages keep full precision and only the VAT amount and
    grand total are rounded here.
    """
    discounts = discounts or DiscountConfig()
    vat = vat or VatConfig()

    lines = tuple(_price_line(line, places) for line in cart)
    if not lines:
        raise ValidationError("Cart is empty.")

    # 3) aggregation
    cart_original_total = sum((ln.quantity * ln.price_before_promotion for ln in lines), ZERO)
    cart_item_discount_total = sum((ln.discount_amount for ln in lines), ZERO)
    subtotal_items = sum((ln.line_total for ln in lines), ZERO)

    # 4) overall discount
    subtotal_overall = apply_discount(subtotal_items, discounts.overall)
    overall_amount = subtotal_items - subtotal_overall

    # 5) coupon, after the overall discount
    coupon = to_decimal(discounts.coupon_amount or ZERO)
    if coupon < 0:
        raise InvalidDiscountError("Coupon amount must be >= 0.")
    subtotal_before_vat = subtotal_overall - coupon
    if subtotal_before_vat < 0:
        raise InvalidDiscountError(f"Coupon {coupon} exceeds the remaining subtotal {subtotal_overall}.")

    # 6) VAT
    vat_amount, grand_total = _apply_vat(subtotal_before_vat, vat, places)

    return PricedSale(
        lines=lines,
        cart_original_total=cart_original_total,
        cart_item_discount_total=cart_item_discount_total,
        subtotal_after_item_discounts=subtotal_items,
        overall_discount=discounts.overall,
        overall_discount_amount=overall_amount,
        subtotal_after_overall_discount=subtotal_overall,
        coupon_code=discounts.coupon_code,
        coupon_amount=coupon,
        subtotal_before_vat=subtotal_before_vat,
        vat_strategy=VatStrategy(vat.strategy),
        vat_rate=to_decimal(vat.rate),
        vat_amount=vat_amount,
        grand_total=grand_total,
    )


def _try_discount(price: Decimal, discount: Discount) -> Decimal | None:
    try:
        return apply_discount(price, discount)
    except InvalidDiscountError:
        return None


def resolve_promotions(
    cart: Iterable[CartLine],
    promotions: Iterable[Promotion],
    on: date,
) -> list[CartLine]:
    """Attach the best active promotion to each cart line that has none.

    A promotion matches a line through its ``product_ids`` and must be
    active on ``on``. It is attached only when its price beats the line's
    current price (listed price after the line's own discount); the line's
    own discount is then dropped, since the promotion replaces it. Lines that
    already carry a promotion are left alone. Promotions that would price an
    item below zero never match.
    """
    active = [p for p in promotions if p.is_active(on)]
    out = []
    for line in cart:
        if line.promotion is not None or not active:
            out.append(line)
            continue
        listed = to_decimal(line.unit_price)
        current = _try_discount(listed, line.discount)
        best = None
        for promo in active:
            if int(line.product_id) not in {int(pid) for pid in promo.product_ids}:
                continue
            price = _try_discount(listed, promo.discount)
            if price is None:
                continue
            if current is not None and price >= current:
                continue
            if best is None or price < best[0]:
                best = (price, promo)
        if best is None:
            out.append(line)
        else:
            out.append(replace(line, promotion=best[1], discount=NO_DISCOUNT))
    return out


def gross_profit_percent(cost_price, selling_price) -> Decimal:
    """GP% of a selling price over cost; a non-positive price with a cost is -100."""
    cost = to_decimal(cost_price)
    sell = to_decimal(selling_price)
    if sell <= 0:
        return Decimal("-100") if cost > 0 else ZERO
    return (sell - cost) / sell * HUNDRED


def price_for_margin(cost_price, gp_percent, places: int = 2) -> Decimal:
    """Back-solve the selling price that yields ``gp_percent`` gross profit."""
    cost = to_decimal(cost_price)
    gp = to_decimal(gp_percent)
    if cost < 0:
        raise ValidationError("Cost must be >= 0.")
    if gp >= HUNDRED:
        raise ValidationError(f"GP% must be below 100. Received: {gp}")
    return money(cost / (1 - gp / HUNDRED), places)


class PricingService:
    """Binds the pipeline to the configured currency precision."""

    def __init__(self, currency_places: int = 2, clock: Callable[[], date] = date.today):
        self.places = int(currency_places)
        self.clock = clock

    def price(
        self,
        cart: Iterable[CartLine],
        discounts: DiscountConfig | None = None,
        vat: VatConfig | None = None,
        promotions: Iterable[Promotion] | None = None,
    ) -> PricedSale:
        if promotions is not None:
            cart = resolve_promotions(cart, promotions, self.clock())
        return price_sale(cart, discounts, vat, places=self.places)
