from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.domain.coupons import CouponRejected, UsageHistory
from app.domain.models import Coupon, CouponUsage


class CouponStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, coupon_id: int) -> Optional[Coupon]:
        return self.db.get(Coupon, coupon_id)

    def get_by_code(self, code: str) -> Optional[Coupon]:
        return self.db.scalars(
            select(Coupon)
            .where(Coupon.code == code.strip().upper())
            .execution_options(populate_existing=True)
        ).first()

    def list_all(self) -> List[Coupon]:
        return list(self.db.scalars(select(Coupon).order_by(Coupon.created_at.desc())))

    def add(self, coupon: Coupon) -> Coupon:
        self.db.add(coupon)
        self.db.commit()
        self.db.refresh(coupon)
        return coupon

    def save(self, coupon: Coupon) -> Coupon:
        self.db.commit()
        self.db.refresh(coupon)
        return coupon

    def usage_history(self, coupon: Coupon, user_id: str) -> UsageHistory:
        used_this = self.db.scalars(
            select(CouponUsage.id).where(
                CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == user_id
            )
        ).first() is not None
        used_other = self.db.scalars(
            select(CouponUsage.id).where(
                CouponUsage.user_id == user_id,
                CouponUsage.first_time_only.is_(True),
                CouponUsage.coupon_id != coupon.id,
            )
        ).first() is not None
        return UsageHistory(used_this_coupon=used_this, used_other_first_time_coupon=used_other)

    def mark_expired(self, coupon: Coupon) -> None:
        if coupon.status != "expired":
            coupon.status = "expired"
            self.db.commit()

    def redeem(self, code: str, user_id: str, order_number: str) -> None:
        """Count one use of ``code`` for ``order_number``.

        The increment is a single conditional UPDATE, so two concurrent
        redemptions of the last available use cannot both succeed. Does not
        commit; the caller commits together with the order it confirms.
        """
        code = code.strip().upper()
        result = self.db.execute(
            update(Coupon)
            .where(
                Coupon.code == code,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CouponRejected("Coupon usage limit reached", "usage_limit_reached")

        coupon = self.get_by_code(code)
        self.db.add(CouponUsage(
            coupon_id=coupon.id,
            user_id=user_id,
            order_number=order_number,
            first_time_only=coupon.first_time_users_only,
        ))
        self.db.flush()
