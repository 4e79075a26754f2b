from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.domain.coupons import (
    CartLine,
    CouponRejected,
    CouponRules,
    CouponType,
    DiscountType,
    UsageHistory,
    evaluate,
)
from app.domain.errors import NotFoundError

NOW = datetime(2026, 3, 15, 12, 0, 0)


def rules(**overrides):
    values = dict(
        code="SAVE10",
        start_date=NOW - timedelta(days=10),
        end_date=NOW + timedelta(days=10),
        discount_value=Decimal("10"),
    )
    values.update(overrides)
    return CouponRules(**values)


def run(coupon, cart, amount=None, usage=UsageHistory(), **kwargs):
    if amount is None:
        amount = sum((line.amount for line in cart), Decimal("0"))
    return evaluate(coupon, cart, amount, "user-1", usage, now=NOW, **kwargs)


def test_percentage_discount_is_capped():
    cart = [CartLine("p1", Decimal("500"), 1)]
    discount = run(rules(max_discount_amount=Decimal("40")), cart)
    assert discount.amount == Decimal("40.00")


def test_percentage_discount_below_cap():
    cart = [CartLine("p1", Decimal("150"), 2)]
    discount = run(rules(max_discount_amount=Decimal("40")), cart)
    assert discount.amount == Decimal("30.00")


def test_zero_cap_means_uncapped():
    cart = [CartLine("p1", Decimal("1000"), 1)]
    discount = run(rules(max_discount_amount=Decimal("0")), cart)
    assert discount.amount == Decimal("100.00")


def test_fixed_discount_never_exceeds_order_amount():
    coupon = rules(discount_type=DiscountType.FIXED, discount_value=Decimal("100"))
    discount = run(coupon, [CartLine("p1", Decimal("60"), 1)])
    assert discount.amount == Decimal("60.00")


def test_percentage_uses_only_applicable_lines():
    coupon = rules(applicable_products=("p2",))
    cart = [CartLine("p1", Decimal("500"), 1), CartLine("p2", Decimal("200"), 1)]
    discount = run(coupon, cart)
    assert discount.amount == Decimal("20.00")
    assert discount.eligible_product_ids == ("p2",)


def test_buy_two_get_one_frees_one_unit():
    coupon = rules(coupon_type=CouponType.BUY_X_GET_Y, buy_quantity=2, get_quantity=1, discount_value=Decimal("0"))
    discount = run(coupon, [CartLine("p1", Decimal("100"), 3)])
    assert discount.free_units == 1
    assert discount.amount == Decimal("100.00")


def test_buy_x_get_y_gives_cheapest_units_away():
    coupon = rules(coupon_type=CouponType.BUY_X_GET_Y, buy_quantity=2, get_quantity=1, discount_value=Decimal("0"))
    cart = [CartLine("p1", Decimal("100"), 2), CartLine("p2", Decimal("40"), 1)]
    assert run(coupon, cart).amount == Decimal("40.00")


def test_buy_x_get_y_needs_enough_units():
    coupon = rules(coupon_type=CouponType.BUY_X_GET_Y, buy_quantity=2, get_quantity=1)
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "insufficient_quantity"


def test_combo_requires_every_listed_product():
    coupon = rules(coupon_type=CouponType.COMBO, applicable_products=("p1", "p2"))
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("300"), 1)])
    assert exc.value.reason == "combo_incomplete"

    cart = [CartLine("p1", Decimal("300"), 1), CartLine("p2", Decimal("200"), 1)]
    assert run(coupon, cart).amount == Decimal("100.00")


def test_same_product_discount_threshold():
    coupon = rules(
        coupon_type=CouponType.SAME_PRODUCT_DISCOUNT,
        required_quantity=3,
        discount_value=Decimal("75"),
        applicable_products=("p1",),
    )
    assert run(coupon, [CartLine("p1", Decimal("100"), 3)]).amount == Decimal("75.00")
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("100"), 2)])
    assert exc.value.reason == "insufficient_quantity"


def test_no_matching_product_is_rejected():
    coupon = rules(applicable_products=("p9",))
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "no_applicable_products"


def test_expired_coupon_is_flagged():
    coupon = rules(end_date=NOW - timedelta(seconds=1))
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "expired"
    assert exc.value.expired


def test_start_date_compares_calendar_days():
    later_today = NOW.replace(hour=23)
    assert run(rules(start_date=later_today), [CartLine("p1", Decimal("100"), 1)]).amount == Decimal("10.00")

    with pytest.raises(CouponRejected) as exc:
        run(rules(start_date=NOW + timedelta(days=1)), [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "not_started"


def test_minimum_order_amount():
    with pytest.raises(CouponRejected) as exc:
        run(rules(min_order_amount=Decimal("1000")), [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "below_minimum"


def test_usage_limit_reached():
    with pytest.raises(CouponRejected) as exc:
        run(rules(usage_limit=5, used_count=5), [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "usage_limit_reached"


def test_first_time_scope():
    coupon = rules(first_time_users_only=True)
    cart = [CartLine("p1", Decimal("100"), 1)]
    other = UsageHistory(used_other_first_time_coupon=True)

    with pytest.raises(CouponRejected) as exc:
        run(coupon, cart, usage=other)
    assert exc.value.reason == "not_first_time"
    assert run(coupon, cart, usage=other, first_time_scope="coupon").amount == Decimal("10.00")

    with pytest.raises(CouponRejected) as exc:
        run(coupon, cart, usage=UsageHistory(used_this_coupon=True), first_time_scope="coupon")
    assert exc.value.reason == "already_used"


def test_inactive_and_missing_coupons():
    with pytest.raises(CouponRejected) as exc:
        run(rules(status="inactive"), [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "inactive"

    with pytest.raises(NotFoundError):
        run(None, [CartLine("p1", Decimal("100"), 1)])


def test_checks_run_in_order():
    # expired wins over below-minimum
    coupon = rules(end_date=NOW - timedelta(days=1), min_order_amount=Decimal("1000"))
    with pytest.raises(CouponRejected) as exc:
        run(coupon, [CartLine("p1", Decimal("100"), 1)])
    assert exc.value.reason == "expired"
