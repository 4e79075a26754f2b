from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .errors import ConflictError
from .money import ZERO, payable_amount, to_money
from .status import OrderStatus, PaymentMethod, PaymentStatus, can_transition


def utcnow() -> datetime:
    """Naive UTC timestamp; all columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    # Customer reference from the auth store (no FK, owned by another service)
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value)
    payment_method: Mapped[str] = mapped_column(String(20))
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    payable_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    coupon_redeemed: Mapped[bool] = mapped_column(Boolean, default=False)

    shipping_address: Mapped[dict[str, Any]] = mapped_column(JSON)
    billing_address: Mapped[dict[str, Any]] = mapped_column(JSON)

    # Carrier consignment; presence is the idempotency key for booking
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    booking_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    weight: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    rto_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expected_delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rev_expected_delivery_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    cancellation_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderItem.position", lazy="selectin",
    )
    tracking_updates: Mapped[list["TrackingEvent"]] = relationship(
        "TrackingEvent", back_populates="order", cascade="all, delete-orphan",
        order_by="TrackingEvent.id", lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def order_status(self) -> OrderStatus:
        return OrderStatus(self.status)

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD.value

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    def set_amounts(self, total=None, shipping=None, discount=None) -> None:
        """Update any of the three inputs and recompute payable_amount."""
        if total is not None:
            self.total_amount = to_money(total)
        if shipping is not None:
            self.shipping_cost = to_money(shipping)
        if discount is not None:
            self.discount_amount = to_money(discount)
        self.payable_amount = payable_amount(
            self.total_amount, self.shipping_cost or ZERO, self.discount_amount or ZERO
        )

    def transition_to(self, target: OrderStatus) -> bool:
        """Move to ``target``; returns False when already there."""
        current = self.order_status
        if current == target:
            return False
        if not can_transition(current, target):
            raise ConflictError(
                f"Order {self.order_number} cannot move from {current.value} to {target.value}",
                code="invalid_transition",
            )
        self.status = target.value
        return True

    def has_tracking_event(self, code: str, timestamp: Optional[str] = None) -> bool:
        for update in self.tracking_updates:
            if update.action != code:
                continue
            if timestamp is None or update.action_timestamp == timestamp:
                return True
        return False

    def append_tracking_event(self, **fields) -> "TrackingEvent":
        tracking_event = TrackingEvent(**fields)
        self.tracking_updates.append(tracking_event)
        # appending alone does not touch the orders row; bump it so the
        # version check covers concurrent appends
        self.updated_at = utcnow()
        return tracking_event


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    # Catalog reference (no FK, catalog is owned by another service)
    product_id: Mapped[str] = mapped_column(String(64))
    # Snapshot captured at order creation time
    name: Mapped[str] = mapped_column(String(200))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int] = mapped_column(Integer)
    thumbnail: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


class TrackingEvent(Base):
    """One carrier event. Rows are only ever inserted."""

    __tablename__ = "tracking_events"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    action: Mapped[str] = mapped_column(String(20))
    action_desc: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    action_timestamp: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    origin: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    remarks: Mapped[str] = mapped_column(Text, default="")
    latitude: Mapped[str] = mapped_column(String(30), default="")
    longitude: Mapped[str] = mapped_column(String(30), default="")
    manifest_no: Mapped[str] = mapped_column(String(100), default="")
    tracking_number: Mapped[str] = mapped_column(String(100), default="")
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="tracking_updates")


class Coupon(Base):
    __tablename__ = "coupons"
    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    coupon_type: Mapped[str] = mapped_column(String(30), default="standard")
    discount_type: Mapped[str] = mapped_column(String(20), default="percentage")
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    min_order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    max_discount_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    combo_discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("100.00"))
    buy_quantity: Mapped[int] = mapped_column(Integer, default=0)
    get_quantity: Mapped[int] = mapped_column(Integer, default=0)
    required_quantity: Mapped[int] = mapped_column(Integer, default=0)
    applicable_products: Mapped[list[str]] = mapped_column(JSON, default=list)
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default="active")
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    first_time_users_only: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    usages: Mapped[list["CouponUsage"]] = relationship(
        "CouponUsage", back_populates="coupon", cascade="all, delete-orphan"
    )


@event.listens_for(Coupon, "before_insert")
@event.listens_for(Coupon, "before_update")
def _expire_coupon_on_save(mapper, connection, target: Coupon) -> None:
    if target.end_date is not None and utcnow() > target.end_date and target.status != "expired":
        target.status = "expired"


class CouponUsage(Base):
    """Per-user redemption record, one row per confirmed order."""

    __tablename__ = "coupon_usages"
    __table_args__ = (UniqueConstraint("coupon_id", "order_number", name="uq_coupon_usage_order"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey("coupons.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    order_number: Mapped[str] = mapped_column(String(50))
    first_time_only: Mapped[bool] = mapped_column(Boolean, default=False)
    used_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    coupon: Mapped[Coupon] = relationship("Coupon", back_populates="usages")


class Sequence(Base):
    """Durable counters keyed by namespace, e.g. ``order:26``."""

    __tablename__ = "sequences"
    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, default=0)
