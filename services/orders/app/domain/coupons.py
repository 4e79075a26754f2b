"""Coupon eligibility and discount computation.

Pure functions over value objects: nothing here touches the database or the
clock except through the ``now`` argument. Evaluation is a dry run; recording
a redemption is the caller's job and happens once per confirmed order.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from .errors import ConflictError, NotFoundError
from .money import ZERO, to_money


class CouponType(str, Enum):
    STANDARD = "standard"
    BUY_X_GET_Y = "buy_x_get_y"
    COMBO = "combo"
    SAME_PRODUCT_DISCOUNT = "same_product_discount"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponRejected(ConflictError):
    code = "coupon_rejected"

    def __init__(self, message: str, reason: str, *, expired: bool = False):
        super().__init__(message, details={"reason": reason})
        self.reason = reason
        self.expired = expired


@dataclass(frozen=True)
class CartLine:
    product_id: str
    price: Decimal
    quantity: int

    @property
    def amount(self) -> Decimal:
        return to_money(self.price) * self.quantity


@dataclass(frozen=True)
class CouponRules:
    code: str
    start_date: datetime
    end_date: datetime
    coupon_type: CouponType = CouponType.STANDARD
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = ZERO
    min_order_amount: Decimal = ZERO
    max_discount_amount: Optional[Decimal] = None
    combo_discount_amount: Decimal = Decimal("100.00")
    buy_quantity: int = 0
    get_quantity: int = 0
    required_quantity: int = 0
    applicable_products: Tuple[str, ...] = ()
    status: str = "active"
    usage_limit: Optional[int] = None
    used_count: int = 0
    first_time_users_only: bool = False

    @classmethod
    def from_model(cls, coupon) -> "CouponRules":
        return cls(
            code=coupon.code,
            start_date=coupon.start_date,
            end_date=coupon.end_date,
            coupon_type=CouponType(coupon.coupon_type),
            discount_type=DiscountType(coupon.discount_type),
            discount_value=to_money(coupon.discount_value or 0),
            min_order_amount=to_money(coupon.min_order_amount or 0),
            max_discount_amount=(
                to_money(coupon.max_discount_amount) if coupon.max_discount_amount else None
            ),
            combo_discount_amount=to_money(coupon.combo_discount_amount or 0),
            buy_quantity=coupon.buy_quantity or 0,
            get_quantity=coupon.get_quantity or 0,
            required_quantity=coupon.required_quantity or 0,
            applicable_products=tuple(str(p) for p in (coupon.applicable_products or ())),
            status=coupon.status,
            usage_limit=coupon.usage_limit,
            used_count=coupon.used_count or 0,
            first_time_users_only=bool(coupon.first_time_users_only),
        )

    def cap(self, amount: Decimal) -> Decimal:
        if self.max_discount_amount and amount > self.max_discount_amount:
            return self.max_discount_amount
        return amount


@dataclass(frozen=True)
class UsageHistory:
    """What the store knows about this user's past first-time redemptions."""

    used_this_coupon: bool = False
    used_other_first_time_coupon: bool = False


@dataclass(frozen=True)
class Discount:
    code: str
    amount: Decimal
    eligible_amount: Decimal
    free_units: int = 0
    eligible_product_ids: Tuple[str, ...] = field(default_factory=tuple)


def eligible_lines(rules: CouponRules, cart: Sequence[CartLine]) -> list[CartLine]:
    if not rules.applicable_products:
        return list(cart)
    allowed = set(rules.applicable_products)
    return [line for line in cart if line.product_id in allowed]


def _standard(rules: CouponRules, lines: Sequence[CartLine]) -> Tuple[Decimal, int]:
    eligible_amount = sum((line.amount for line in lines), ZERO)
    if rules.discount_type == DiscountType.PERCENTAGE:
        return rules.cap(to_money(rules.discount_value * eligible_amount / 100)), 0
    return to_money(rules.discount_value), 0


def _buy_x_get_y(rules: CouponRules, lines: Sequence[CartLine]) -> Tuple[Decimal, int]:
    units = sum(line.quantity for line in lines)
    if units < rules.buy_quantity:
        raise CouponRejected(
            f"At least {rules.buy_quantity} qualifying items required for this coupon",
            "insufficient_quantity",
        )
    bundle = rules.buy_quantity + rules.get_quantity
    free_count = (units // bundle) * rules.get_quantity if bundle else 0

    # cheapest units go free first
    remaining = free_count
    value = ZERO
    for line in sorted(lines, key=lambda line: to_money(line.price)):
        if remaining <= 0:
            break
        taken = min(remaining, line.quantity)
        value += to_money(line.price) * taken
        remaining -= taken
    return rules.cap(to_money(value)), free_count


def _combo(rules: CouponRules, cart: Sequence[CartLine]) -> Tuple[Decimal, int]:
    in_cart = {line.product_id for line in cart if line.quantity > 0}
    if not all(product_id in in_cart for product_id in rules.applicable_products):
        raise CouponRejected(
            "All specified products must be in the cart for this combo coupon",
            "combo_incomplete",
        )
    return rules.cap(to_money(rules.combo_discount_amount)), 0


def _same_product(rules: CouponRules, lines: Sequence[CartLine]) -> Tuple[Decimal, int]:
    if not any(line.quantity >= rules.required_quantity for line in lines):
        raise CouponRejected(
            f"At least {rules.required_quantity} units of a qualifying product are required for this coupon",
            "insufficient_quantity",
        )
    return rules.cap(to_money(rules.discount_value)), 0


def evaluate(
    rules: Optional[CouponRules],
    cart: Iterable[CartLine],
    order_amount,
    user_id: str,
    usage: UsageHistory,
    *,
    now: datetime,
    first_time_scope: str = "global",
) -> Discount:
    """Decide eligibility and compute the discount, or raise CouponRejected.

    Checks run in a fixed order so the caller always sees the first reason
    that applies: availability, expiry, start date, minimum amount, usage
    limit, first-time restriction, product allow-list, then the per-type rule.
    ``first_time_scope="global"`` rejects a first-time coupon for any user
    who has redeemed any first-time coupon before; ``"coupon"`` only looks at
    this coupon's own history.
    """
    if rules is None:
        raise NotFoundError("Coupon not found or inactive", code="coupon_not_found")
    if rules.status == "inactive":
        raise CouponRejected("Coupon is inactive", "inactive")

    if now > rules.end_date or rules.status == "expired":
        raise CouponRejected("Coupon has expired", "expired", expired=True)
    # calendar-day comparison: a coupon starting today is valid all day
    if now.date() < rules.start_date.date():
        raise CouponRejected("Coupon is not yet active", "not_started")

    order_amount = to_money(order_amount)
    if order_amount < rules.min_order_amount:
        raise CouponRejected(
            f"Minimum order amount of {rules.min_order_amount} required", "below_minimum"
        )
    if rules.usage_limit is not None and rules.used_count >= rules.usage_limit:
        raise CouponRejected("Coupon usage limit reached", "usage_limit_reached")

    if rules.first_time_users_only:
        if usage.used_this_coupon:
            raise CouponRejected(
                "This coupon can only be used once by new users", "already_used"
            )
        if first_time_scope == "global" and usage.used_other_first_time_coupon:
            raise CouponRejected("This coupon is only for first-time users", "not_first_time")

    cart = list(cart)
    lines = eligible_lines(rules, cart)
    if rules.applicable_products and not lines:
        raise CouponRejected(
            "This coupon applies only to specific products. Please add them to the cart.",
            "no_applicable_products",
        )

    if rules.coupon_type == CouponType.STANDARD:
        amount, free_units = _standard(rules, lines)
    elif rules.coupon_type == CouponType.BUY_X_GET_Y:
        amount, free_units = _buy_x_get_y(rules, lines)
    elif rules.coupon_type == CouponType.COMBO:
        amount, free_units = _combo(rules, cart)
    else:
        amount, free_units = _same_product(rules, lines)

    amount = max(ZERO, min(amount, order_amount))
    return Discount(
        code=rules.code,
        amount=amount,
        eligible_amount=sum((line.amount for line in lines), ZERO),
        free_units=free_units,
        eligible_product_ids=tuple(line.product_id for line in lines),
    )
