from datetime import datetime, time
from decimal import Decimal
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.domain import coupons as rules_engine
from app.domain.coupons import CartLine, CouponRejected, CouponRules, CouponType, Discount, UsageHistory
from app.domain.errors import NotFoundError, ValidationError
from app.domain.models import Coupon, utcnow
from app.domain.money import ZERO, to_money
from app.infrastructure.coupon_store import CouponStore
from shared.core import get_logger
from .schemas import CouponApply, CouponCreate, CouponPreview

logger = get_logger(__name__)

COUPON_STATUSES = ("active", "inactive")


class CouponService:
    def __init__(self, db: Session, first_time_scope: str = "global", clock: Callable[[], datetime] = utcnow):
        self.store = CouponStore(db)
        self.first_time_scope = first_time_scope
        self.clock = clock

    def evaluate(self, code: str, cart: Iterable[CartLine], order_amount, user_id: Optional[str]) -> Discount:
        """Dry-run a coupon against a cart; records no usage."""
        coupon = self.store.get_by_code(code)
        if coupon is None:
            raise NotFoundError("Coupon not found or inactive", code="coupon_not_found")
        usage = self.store.usage_history(coupon, user_id) if user_id else UsageHistory()
        try:
            discount = rules_engine.evaluate(
                CouponRules.from_model(coupon), cart, order_amount, user_id or "", usage,
                now=self.clock(), first_time_scope=self.first_time_scope,
            )
        except CouponRejected as e:
            if e.expired:
                self.store.mark_expired(coupon)
            logger.info(
                f"Coupon {coupon.code} rejected: {e.reason}",
                extra={'extra_fields': {'coupon': coupon.code, 'reason': e.reason, 'user_id': user_id}},
            )
            raise
        logger.info(
            f"Coupon {coupon.code} evaluated",
            extra={'extra_fields': {'coupon': coupon.code, 'discount': str(discount.amount), 'user_id': user_id}},
        )
        return discount

    def preview(self, data: CouponApply, user_id: Optional[str]) -> CouponPreview:
        order_amount = to_money(data.order_amount)
        cart = [CartLine(item.product_id, to_money(item.price), item.quantity) for item in data.cart_items]
        discount = self.evaluate(data.code, cart, order_amount, user_id or data.user_id)
        return CouponPreview(
            code=discount.code,
            discount_amount=discount.amount,
            eligible_amount=discount.eligible_amount,
            final_amount=max(ZERO, order_amount - discount.amount),
            free_units=discount.free_units,
            eligible_product_ids=list(discount.eligible_product_ids),
        )

    def list(self) -> List[Coupon]:
        return self.store.list_all()

    def create(self, data: CouponCreate) -> Coupon:
        code = data.code.strip().upper()
        if not code:
            raise ValidationError("Coupon code is required", details={"field": "code"})
        start = datetime.combine(data.start_date, time.min)
        end = datetime.combine(data.end_date, time(23, 59, 59, 999000))
        if start >= end:
            raise ValidationError("End date must be after start date", details={"field": "end_date"})

        try:
            coupon_type = CouponType(data.coupon_type)
        except ValueError:
            valid = ", ".join(t.value for t in CouponType)
            raise ValidationError(f"Invalid coupon type. Must be one of: {valid}", details={"field": "coupon_type"})

        discount_value = to_money(data.discount_value)
        if coupon_type == CouponType.BUY_X_GET_Y:
            if data.buy_quantity <= 0 or data.get_quantity <= 0:
                raise ValidationError(
                    "Buy quantity and get quantity must be greater than 0 for Buy X Get Y coupons",
                    details={"field": "buy_quantity"},
                )
        if coupon_type == CouponType.SAME_PRODUCT_DISCOUNT:
            if data.required_quantity <= 0:
                raise ValidationError(
                    "Required quantity must be greater than 0 for Same Product Discount coupons",
                    details={"field": "required_quantity"},
                )
            if discount_value <= 0:
                raise ValidationError(
                    "Discount value must be greater than 0 for Same Product Discount coupons",
                    details={"field": "discount_value"},
                )
            if not data.applicable_products:
                raise ValidationError(
                    "At least one applicable product is required for Same Product Discount coupons",
                    details={"field": "applicable_products"},
                )
        if coupon_type in (CouponType.BUY_X_GET_Y, CouponType.COMBO):
            discount_value = ZERO
        if coupon_type == CouponType.STANDARD:
            if discount_value <= 0:
                raise ValidationError(
                    "Discount value must be greater than 0 for standard coupons",
                    details={"field": "discount_value"},
                )
            if data.discount_type == "percentage" and discount_value > 100:
                raise ValidationError(
                    "Percentage discount cannot be greater than 100%", details={"field": "discount_value"},
                )

        if self.store.get_by_code(code) is not None:
            raise ValidationError(f"Coupon {code} already exists", code="duplicate_coupon", details={"field": "code"})

        coupon = Coupon(
            code=code,
            coupon_type=coupon_type.value,
            discount_type=data.discount_type,
            discount_value=discount_value,
            min_order_amount=to_money(data.min_order_amount),
            max_discount_amount=to_money(data.max_discount_amount) if data.max_discount_amount else None,
            combo_discount_amount=to_money(data.combo_discount_amount),
            buy_quantity=data.buy_quantity,
            get_quantity=data.get_quantity,
            required_quantity=data.required_quantity,
            applicable_products=[str(p) for p in data.applicable_products],
            start_date=start,
            end_date=end,
            usage_limit=data.usage_limit,
            used_count=0,
            first_time_users_only=data.first_time_users_only,
            status="active",
        )
        coupon = self.store.add(coupon)
        logger.info(f"Coupon {code} created", extra={'extra_fields': {'coupon': code, 'type': coupon_type.value}})
        return coupon

    def set_status(self, coupon_id: int, status: str) -> Coupon:
        coupon = self.store.get(coupon_id)
        if coupon is None:
            raise NotFoundError("Coupon not found", code="coupon_not_found")
        if self.clock() > coupon.end_date:
            coupon.status = "expired"
        elif status in COUPON_STATUSES:
            coupon.status = status
        else:
            raise ValidationError("Invalid status", details={"field": "status"})
        return self.store.save(coupon)


def cart_lines(items, prices) -> List[CartLine]:
    """Cart lines priced from catalog snapshots keyed by product id."""
    return [CartLine(item.product_id, prices[item.product_id], item.quantity) for item in items]


def order_subtotal(lines: Iterable[CartLine]) -> Decimal:
    return sum((line.amount for line in lines), ZERO)
