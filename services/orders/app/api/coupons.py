from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.application.coupons import CouponService
from app.application.schemas import (
    CouponApply,
    CouponCreate,
    CouponPreview,
    CouponRead,
    CouponStatusUpdate,
    Principal,
)
from app.core_settings import get_settings
from app.infrastructure.db import get_db
from .deps import optional_principal, require_admin

router = APIRouter(prefix="/coupons", tags=["coupons"])


def get_coupon_service(db: Session = Depends(get_db)) -> CouponService:
    return CouponService(db, first_time_scope=get_settings().FIRST_TIME_COUPON_SCOPE)


@router.post("/apply", response_model=CouponPreview)
def apply_coupon(
    payload: CouponApply,
    principal: Optional[Principal] = Depends(optional_principal),
    service: CouponService = Depends(get_coupon_service),
):
    """Preview a discount for a cart. Nothing is recorded."""
    return service.preview(payload, principal.id if principal else None)


@router.post("/", response_model=CouponRead, status_code=201)
def create_coupon(
    payload: CouponCreate,
    _: Principal = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    return service.create(payload)


@router.get("/", response_model=list[CouponRead])
def list_coupons(
    _: Principal = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    return service.list()


@router.patch("/{coupon_id}/status", response_model=CouponRead)
def update_coupon_status(
    coupon_id: int,
    payload: CouponStatusUpdate,
    _: Principal = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    return service.set_status(coupon_id, payload.status)
