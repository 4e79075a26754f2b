"""Order orchestration: checkout, payment confirmation, shipment booking,
tracking ingestion, cancellation and refunds.

Every state change goes through ``OrderStore.update`` so concurrent
webhooks, polls and admin actions on one order serialize on its version
column. External calls are made outside those updates. Idempotency keys:

* payment confirmation: the order number, which is also the gateway's
  merchant order id, plus ``payment_status == Paid``;
* shipment booking: a tracking number being present (and the booking claim
  while a call is in flight);
* tracking events: the (code, timestamp) pair, and a single ``BKD``;
* coupon redemption: ``coupon_redeemed`` on the order.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from app.core_settings import Settings, get_settings
from app.domain.coupons import CouponRejected
from app.domain.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    OrderError,
    ValidationError,
)
from app.domain.models import Order, OrderItem, utcnow
from app.domain.money import ZERO, to_minor_units, to_money
from app.domain.status import (
    CARRIER_STATUS_MAP,
    COD_UNCANCELLABLE,
    CarrierCode,
    GatewayState,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    can_transition,
)
from app.infrastructure.carrier import Carrier
from app.infrastructure.catalog import Catalog
from app.infrastructure.notifications import Notifier
from app.infrastructure.order_store import OrderStore
from app.infrastructure.payment_gateway import PaymentGateway, RefundReceipt
from shared.core import get_logger
from .coupons import CouponService, cart_lines, order_subtotal
from .order_ids import OrderIdGenerator
from .schemas import (
    CarrierEvent,
    OrderCreate,
    OrderCreated,
    OrderSummary,
    Principal,
    ReconcileReport,
    TrackingWebhook,
)

logger = get_logger(__name__)


@dataclass
class PaymentOutcome:
    order: Order
    state: GatewayState
    newly_paid: bool = False


@dataclass
class TrackingOutcome:
    order: Order
    recorded: int
    ignored_codes: List[str]


@dataclass
class CancelOutcome:
    order: Order
    carrier_cancelled: bool = False
    cancelled: bool = True


def _log_transition(order: Order, previous: str) -> None:
    if previous != order.status:
        logger.info(
            f"Order {order.order_number} moved from {previous} to {order.status}",
            extra={'extra_fields': {
                'order_number': order.order_number, 'from': previous, 'to': order.status,
                'payment_status': order.payment_status,
            }},
        )


def _transition(order: Order, target: OrderStatus) -> bool:
    previous = order.status
    changed = order.transition_to(target)
    _log_transition(order, previous)
    return changed


def _event_time(clock: Callable[[], datetime]) -> str:
    return clock().isoformat(timespec="seconds")


def _parse_carrier_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%d%m%Y")
    except ValueError:
        logger.warning(f"Ignoring malformed carrier date {value!r}")
        return None


class OrderService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        carrier: Carrier,
        catalog: Catalog,
        notifier: Notifier,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.carrier = carrier
        self.catalog = catalog
        self.notifier = notifier
        self.clock = clock
        self.orders = OrderStore(db)
        self.coupons = CouponService(db, first_time_scope=self.settings.FIRST_TIME_COUPON_SCOPE, clock=clock)
        self.ids = OrderIdGenerator(
            db,
            prefix=self.settings.ORDER_ID_PREFIX,
            width=self.settings.ORDER_ID_SEQUENCE_WIDTH,
            clock=clock,
        )

    # -- checkout -----------------------------------------------------------

    def _validate(self, data: OrderCreate) -> PaymentMethod:
        if not data.items:
            raise ValidationError("Order must contain at least one item", details={"field": "items"})
        for item in data.items:
            if item.quantity <= 0:
                raise ValidationError(
                    "Item quantity must be greater than 0",
                    details={"field": "items", "product_id": item.product_id},
                )
        if data.shipping_address is None:
            raise ValidationError("Shipping address is required", details={"field": "shipping_address"})
        try:
            method = PaymentMethod(data.payment_method)
        except ValueError:
            raise ValidationError(
                "Invalid payment method",
                details={"field": "payment_method", "allowed": [m.value for m in PaymentMethod]},
            )
        if to_money(data.shipping_cost) < 0:
            raise ValidationError("Shipping cost cannot be negative", details={"field": "shipping_cost"})
        if data.discount_amount is not None and to_money(data.discount_amount) < 0:
            raise ValidationError("Discount amount cannot be negative", details={"field": "discount_amount"})
        return method

    def create(self, data: OrderCreate, customer_id: str) -> OrderCreated:
        method = self._validate(data)

        snapshots = self.catalog.get_products(item.product_id for item in data.items)
        lines = cart_lines(data.items, {pid: snap.price for pid, snap in snapshots.items()})
        total = order_subtotal(lines)

        discount = ZERO
        coupon_code = None
        if data.coupon_code:
            applied = self.coupons.evaluate(data.coupon_code, lines, total, customer_id)
            discount = applied.amount
            coupon_code = applied.code
            if data.discount_amount is not None and to_money(data.discount_amount) != discount:
                logger.info(
                    f"Client discount {data.discount_amount} replaced by {discount}",
                    extra={'extra_fields': {'coupon': coupon_code, 'customer_id': customer_id}},
                )

        order = Order(
            customer_id=customer_id,
            payment_method=method.value,
            coupon_code=coupon_code,
            coupon_redeemed=False,
            shipping_address=data.shipping_address.model_dump(),
            billing_address=(data.billing_address or data.shipping_address).model_dump(),
            items=[
                OrderItem(
                    position=position,
                    product_id=item.product_id,
                    name=snapshots[item.product_id].name,
                    unit_price=snapshots[item.product_id].price,
                    quantity=item.quantity,
                    thumbnail=snapshots[item.product_id].thumbnail,
                )
                for position, item in enumerate(data.items)
            ],
        )
        order.set_amounts(total, data.shipping_cost, discount)
        if order.payable_amount < self.settings.MIN_CHARGEABLE_AMOUNT:
            raise ValidationError(
                f"Payable amount must be at least {self.settings.MIN_CHARGEABLE_AMOUNT}",
                code="below_minimum_charge",
                details={"field": "payable_amount", "payable_amount": str(order.payable_amount)},
            )

        order.order_number = self.ids.next()
        if method == PaymentMethod.COD:
            return self._create_cod(order)
        return self._create_gateway(order)

    def _create_cod(self, order: Order) -> OrderCreated:
        order.status = OrderStatus.PENDING.value
        order.payment_status = PaymentStatus.PENDING.value
        try:
            self.orders.add(order)
            self._redeem_coupon(order)
            self.orders.commit()
        except Exception:
            self.orders.rollback()
            raise
        logger.info(
            f"COD order {order.order_number} created",
            extra={'extra_fields': {
                'order_number': order.order_number, 'customer_id': order.customer_id,
                'payable_amount': str(order.payable_amount),
            }},
        )

        booking_error = None
        try:
            self.book_shipment(order.order_number)
        except OrderError as e:
            booking_error = e.message
            logger.warning(
                f"Shipment booking failed for new order {order.order_number}: {e.message}",
                extra={'extra_fields': {'order_number': order.order_number, 'code': e.code}},
            )

        order = self.orders.require(order.order_number, fresh=True)
        self.notifier.order_confirmed(order)
        return OrderCreated(
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            total_amount=order.total_amount,
            shipping_cost=order.shipping_cost,
            discount_amount=order.discount_amount,
            payable_amount=order.payable_amount,
            tracking_number=order.tracking_number,
            booking_error=booking_error,
            message=(
                "Order placed and shipment booked successfully" if booking_error is None
                else "Order placed; shipment booking will be retried"
            ),
        )

    def _create_gateway(self, order: Order) -> OrderCreated:
        order.status = OrderStatus.PENDING_PAYMENT.value
        order.payment_status = PaymentStatus.INITIATED.value
        redirect_target = f"{self.settings.BACKEND_URL.rstrip('/')}/payments/callback?order_id={order.order_number}"
        # the row stays uncommitted until the gateway accepts the checkout
        try:
            self.orders.add(order)
            redirect_url = self.gateway.initiate(
                order.order_number, to_minor_units(order.payable_amount), redirect_target,
            )
            self.orders.commit()
        except Exception:
            self.orders.rollback()
            raise
        logger.info(
            f"Gateway order {order.order_number} awaiting payment",
            extra={'extra_fields': {
                'order_number': order.order_number, 'customer_id': order.customer_id,
                'payable_amount': str(order.payable_amount),
            }},
        )
        return OrderCreated(
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            total_amount=order.total_amount,
            shipping_cost=order.shipping_cost,
            discount_amount=order.discount_amount,
            payable_amount=order.payable_amount,
            redirect_url=redirect_url,
            message="Payment initiated",
        )

    def _redeem_coupon(self, order: Order) -> None:
        if order.coupon_code and not order.coupon_redeemed:
            self.coupons.store.redeem(order.coupon_code, order.customer_id, order.order_number)
            order.coupon_redeemed = True

    # -- payment ------------------------------------------------------------

    def confirm_payment(self, order_number: str) -> PaymentOutcome:
        """Reconcile a gateway order with the gateway's view of its payment.

        Shared by the redirect callback, the status poll and the
        reconciliation sweep. Repeating it after settlement changes nothing.
        """
        order = self.orders.require(order_number, fresh=True)
        if order.is_cod:
            raise ConflictError(f"Order {order_number} is not a gateway payment", code="not_gateway_order")

        if order.is_paid:
            state = GatewayState.COMPLETED
            newly_paid = False
        else:
            verification = self.gateway.verify(order_number)
            state = verification.state
            newly_paid = False
            if state == GatewayState.COMPLETED:
                expected = to_minor_units(order.payable_amount)
                if verification.amount_minor is not None and verification.amount_minor != expected:
                    logger.error(
                        f"Settled amount mismatch on order {order_number}",
                        extra={'extra_fields': {
                            'order_number': order_number, 'expected': expected,
                            'settled': verification.amount_minor,
                        }},
                    )
                    raise ConflictError(
                        "Settled amount does not match the order", code="amount_mismatch",
                    )

                def mark_paid(order: Order) -> bool:
                    if order.is_paid:
                        return False
                    if order.order_status == OrderStatus.CANCELLED:
                        # money arrived after the customer cancelled; keep it on record for a refund
                        order.payment_status = PaymentStatus.PAID.value
                        order.transaction_id = verification.transaction_id
                        logger.error(
                            f"Payment settled for cancelled order {order.order_number}",
                            extra={'extra_fields': {
                                'order_number': order.order_number, 'code': 'settled_after_cancellation',
                                'transaction_id': verification.transaction_id,
                            }},
                        )
                        return False
                    _transition(order, OrderStatus.PROCESSING)
                    order.payment_status = PaymentStatus.PAID.value
                    order.transaction_id = verification.transaction_id
                    try:
                        self._redeem_coupon(order)
                    except CouponRejected as e:
                        # the customer already paid the discounted amount
                        logger.warning(
                            f"Coupon {order.coupon_code} not counted for paid order {order.order_number}: {e.reason}",
                            extra={'extra_fields': {'order_number': order.order_number}},
                        )
                    return True

                newly_paid = self.orders.update(order_number, mark_paid)
            elif state == GatewayState.FAILED:
                def mark_failed(order: Order) -> None:
                    if order.is_paid or order.payment_status == PaymentStatus.FAILED.value:
                        return
                    _transition(order, OrderStatus.FAILED)
                    order.payment_status = PaymentStatus.FAILED.value

                self.orders.update(order_number, mark_failed)
            else:
                logger.info(f"Payment for order {order_number} still pending")

        order = self.orders.require(order_number, fresh=True)
        if state == GatewayState.COMPLETED and order.order_status == OrderStatus.CANCELLED:
            if order.refund_id is None:
                self._refund_late_settlement(order_number)
                order = self.orders.require(order_number, fresh=True)
        elif state == GatewayState.COMPLETED:
            if order.tracking_number is None:
                self._book_quietly(order_number)
                order = self.orders.require(order_number, fresh=True)
            if newly_paid:
                self.notifier.order_confirmed(order)
        return PaymentOutcome(order=order, state=state, newly_paid=newly_paid)

    def _refund_late_settlement(self, order_number: str) -> Optional[RefundReceipt]:
        order = self.orders.require(order_number, fresh=True)
        if order.refund_id or not order.transaction_id:
            return None
        amount = order.payable_amount
        try:
            receipt = self.gateway.refund(order_number, order.transaction_id, to_minor_units(amount))
        except OrderError as e:
            # the reconciliation sweep retries these
            logger.error(
                f"Refund of late settlement failed for order {order_number}: {e.message}",
                extra={'extra_fields': {'order_number': order_number, 'code': e.code}},
            )
            return None
        self._record_refund(order_number, receipt, amount)
        logger.info(
            f"Refund {receipt.refund_id} initiated for late settlement of order {order_number}",
            extra={'extra_fields': {'order_number': order_number, 'refund_amount': str(amount)}},
        )
        return receipt

    def _record_refund(self, order_number: str, receipt: RefundReceipt, amount) -> None:
        def apply(order: Order) -> None:
            order.refund_id = receipt.refund_id
            order.refund_status = receipt.state.value
            order.refund_amount = amount

        try:
            self.orders.update(order_number, apply)
        except ConflictError:
            self.orders.record_refund(order_number, receipt.refund_id, receipt.state.value, amount)

    # -- shipment -----------------------------------------------------------

    def book_shipment(self, order_number: str) -> str:
        """Book a consignment once; returns the tracking number."""
        order = self.orders.require(order_number, fresh=True)
        if order.tracking_number:
            return order.tracking_number
        if not can_transition(order.order_status, OrderStatus.PROCESSING):
            raise ConflictError(
                f"Order {order_number} cannot be shipped while {order.status}", code="not_shippable",
            )
        if not order.is_cod and not order.is_paid:
            raise ConflictError(f"Order {order_number} has not been paid", code="not_paid")

        stale_after = timedelta(seconds=self.settings.SHIPMENT_BOOKING_CLAIM_SECONDS)
        if not self.orders.claim_booking(order_number, stale_after):
            current = self.orders.require(order_number, fresh=True)
            if current.tracking_number:
                return current.tracking_number
            raise ConflictError(
                f"Shipment booking for order {order_number} is already in progress",
                code="booking_in_progress",
            )

        try:
            tracking_number = self.carrier.book(order)
        except Exception:
            self.orders.release_booking(order_number)
            raise

        def record(order: Order) -> None:
            order.tracking_number = tracking_number
            order.booking_claimed_at = None
            _transition(order, OrderStatus.PROCESSING)
            if not order.has_tracking_event(CarrierCode.BOOKED):
                order.append_tracking_event(
                    action=CarrierCode.BOOKED.value,
                    action_desc="Shipment booked",
                    action_timestamp=_event_time(self.clock),
                    tracking_number=tracking_number,
                )

        self.orders.update(order_number, record)
        logger.info(
            f"Shipment booked for order {order_number}",
            extra={'extra_fields': {'order_number': order_number, 'tracking_number': tracking_number}},
        )
        return tracking_number

    def _book_quietly(self, order_number: str) -> Optional[str]:
        try:
            return self.book_shipment(order_number)
        except OrderError as e:
            logger.warning(
                f"Shipment booking deferred for order {order_number}: {e.message}",
                extra={'extra_fields': {'order_number': order_number, 'code': e.code}},
            )
            return None

    def ingest_tracking(self, payload: TrackingWebhook) -> TrackingOutcome:
        order = self.orders.get_by_tracking_number(payload.shipment_id)
        if order is None:
            raise NotFoundError(
                f"No order for shipment {payload.shipment_id}", code="shipment_not_found",
            )
        order_number = order.order_number

        def apply(order: Order):
            recorded = 0
            ignored: List[str] = []
            for event in payload.events:
                if self._record_event(order, event, payload.shipment_id):
                    recorded += 1

            self._apply_shipment_metadata(order, payload)

            delivered = False
            if payload.events:
                raw = payload.events[-1].code
                code = CarrierCode.parse(raw)
                target = CARRIER_STATUS_MAP.get(code) if code else None
                if target is None:
                    ignored.append(raw)
                    logger.info(
                        f"Unmapped carrier code {raw!r} for order {order.order_number}",
                        extra={'extra_fields': {'order_number': order.order_number, 'code': raw}},
                    )
                elif target != OrderStatus.PROCESSING:
                    if can_transition(order.order_status, target):
                        delivered = _transition(order, target) and target == OrderStatus.DELIVERED
                        if target == OrderStatus.DELIVERED:
                            order.payment_status = PaymentStatus.PAID.value
                    else:
                        logger.warning(
                            f"Ignoring carrier move of order {order.order_number} from {order.status} to {target.value}",
                            extra={'extra_fields': {'order_number': order.order_number, 'code': raw}},
                        )
            return recorded, ignored, delivered

        recorded, ignored, delivered = self.orders.update(order_number, apply)
        order = self.orders.require(order_number)
        if delivered:
            self.notifier.order_delivered(order)
        return TrackingOutcome(order=order, recorded=recorded, ignored_codes=ignored)

    def _record_event(self, order: Order, event: CarrierEvent, shipment_id: str) -> bool:
        code = event.code.strip().upper()
        if code == CarrierCode.BOOKED.value and order.has_tracking_event(CarrierCode.BOOKED):
            return False
        if order.has_tracking_event(code, event.timestamp):
            return False
        coordinates = event.coordinates
        order.append_tracking_event(
            action=code,
            action_desc=event.description,
            action_timestamp=event.timestamp,
            origin=event.origin,
            remarks=event.remarks or "",
            latitude=coordinates.latitude if coordinates else "",
            longitude=coordinates.longitude if coordinates else "",
            manifest_no=event.manifest_no or "",
            tracking_number=shipment_id,
        )
        return True

    def _apply_shipment_metadata(self, order: Order, payload: TrackingWebhook) -> None:
        if payload.weight:
            order.weight = payload.weight
        if payload.rto_number:
            order.rto_number = payload.rto_number
        expected = _parse_carrier_date(payload.expected_delivery_date)
        if expected:
            order.expected_delivery_date = expected
        revised = _parse_carrier_date(payload.rev_expected_delivery_date)
        if revised:
            order.rev_expected_delivery_date = revised

    # -- cancellation -------------------------------------------------------

    def _check_cancellable(self, order: Order) -> None:
        status = order.order_status
        if status == OrderStatus.DELIVERED:
            raise ConflictError("Order has already been delivered", code="already_delivered")
        if status == OrderStatus.CANCELLED:
            raise ConflictError("Order is already cancelled", code="already_cancelled")
        if order.is_cod and status in COD_UNCANCELLABLE:
            raise ConflictError(
                f"Cash-on-delivery orders cannot be cancelled once {status.value}", code="not_cancellable",
            )
        if order.refund_status:
            raise ConflictError("A refund has already been initiated", code="refund_already_initiated")
        if not can_transition(status, OrderStatus.CANCELLED):
            raise ConflictError(f"Order cannot be cancelled while {status.value}", code="not_cancellable")

    def _authorize_owner(self, order: Order, principal: Principal) -> None:
        if not principal.is_admin and order.customer_id != principal.id:
            raise ForbiddenError("Unauthorized", code="not_order_owner")

    def request_cancellation(self, order_number: str, reason: str, principal: Principal) -> Order:
        order = self.orders.require(order_number, fresh=True)
        self._authorize_owner(order, principal)

        def flag(order: Order) -> None:
            if order.order_status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
                raise ConflictError(
                    "Order cannot be cancelled as it is already shipped or delivered",
                    code="not_cancellable",
                )
            if order.order_status == OrderStatus.CANCELLED:
                raise ConflictError("Order is already cancelled", code="already_cancelled")
            order.cancellation_requested = True
            order.cancellation_reason = reason or "No reason provided"

        self.orders.update(order_number, flag)
        order = self.orders.require(order_number)
        logger.info(
            f"Cancellation requested for order {order_number}",
            extra={'extra_fields': {'order_number': order_number, 'customer_id': order.customer_id}},
        )
        self.notifier.cancellation_requested(order)
        return order

    def cancel(self, order_number: str, reason: str, principal: Principal) -> CancelOutcome:
        """Cancel an order, refunding its payable amount (what the gateway captured) first."""
        order = self.orders.require(order_number, fresh=True)
        self._authorize_owner(order, principal)
        self._check_cancellable(order)
        reason = reason or "Cancelled by user"

        receipt: Optional[RefundReceipt] = None
        refund_amount = ZERO
        if not order.is_cod and order.is_paid:
            if not order.transaction_id:
                raise ConflictError(
                    f"Order {order_number} has no settled transaction to refund", code="missing_transaction",
                )
            refund_amount = order.payable_amount
            # raises before any state change, so a failed refund leaves the order as it was
            receipt = self.gateway.refund(order_number, order.transaction_id, to_minor_units(refund_amount))
            logger.info(
                f"Refund {receipt.refund_id} initiated for order {order_number}",
                extra={'extra_fields': {'order_number': order_number, 'refund_amount': str(refund_amount)}},
            )

        carrier_cancelled = False
        if order.tracking_number:
            try:
                self.carrier.cancel(order.tracking_number, reason)
                carrier_cancelled = True
            except OrderError as e:
                logger.warning(
                    f"Carrier cancellation failed for order {order_number}: {e.message}",
                    extra={'extra_fields': {'order_number': order_number, 'tracking_number': order.tracking_number}},
                )

        def apply(order: Order) -> bool:
            if receipt is None:
                self._check_cancellable(order)
                order.refund_amount = ZERO
            else:
                # the gateway already holds this refund; it is recorded even if the cancel cannot land
                order.refund_status = receipt.state.value
                order.refund_id = receipt.refund_id
                order.refund_amount = refund_amount
                if not can_transition(order.order_status, OrderStatus.CANCELLED):
                    logger.error(
                        f"Refund {receipt.refund_id} recorded but order {order_number} is now {order.status}",
                        extra={'extra_fields': {
                            'order_number': order_number, 'code': 'refunded_without_cancellation',
                            'status': order.status,
                        }},
                    )
                    return False
            _transition(order, OrderStatus.CANCELLED)
            order.cancellation_reason = reason
            order.append_tracking_event(
                action=CarrierCode.CANCELLED.value,
                action_desc="Order cancelled",
                action_timestamp=_event_time(self.clock),
                remarks=reason,
                tracking_number=order.tracking_number or "",
            )
            return True

        try:
            cancelled = self.orders.update(order_number, apply)
        except ConflictError as e:
            if receipt is None or e.code != "concurrent_update":
                raise
            self.orders.record_refund(order_number, receipt.refund_id, receipt.state.value, refund_amount)
            logger.error(
                f"Refund {receipt.refund_id} recorded but order {order_number} could not be cancelled",
                extra={'extra_fields': {'order_number': order_number, 'code': 'refunded_without_cancellation'}},
            )
            raise
        order = self.orders.require(order_number, fresh=True)
        if cancelled:
            self.notifier.order_cancelled(order)
        return CancelOutcome(order=order, carrier_cancelled=carrier_cancelled, cancelled=cancelled)

    def check_refund_status(self, order_number: str, principal: Principal) -> Order:
        order = self.orders.require(order_number, fresh=True)
        self._authorize_owner(order, principal)
        if not order.refund_id:
            raise NotFoundError(f"No refund recorded for order {order_number}", code="refund_not_found")
        if order.refund_status != RefundStatus.INITIATED.value:
            return order

        state = self.gateway.refund_status(order.refund_id)

        def apply(order: Order) -> None:
            if order.refund_status != RefundStatus.INITIATED.value or state == RefundStatus.INITIATED:
                return
            order.refund_status = state.value
            if state == RefundStatus.COMPLETED and can_transition(order.order_status, OrderStatus.CANCELLED):
                _transition(order, OrderStatus.CANCELLED)

        self.orders.update(order_number, apply)
        logger.info(
            f"Refund for order {order_number} is {state.value}",
            extra={'extra_fields': {'order_number': order_number, 'refund_id': order.refund_id}},
        )
        return self.orders.require(order_number)

    # -- queries ------------------------------------------------------------

    def get_order(
        self,
        order_number: str,
        principal: Optional[Principal],
        transaction_id: Optional[str] = None,
    ) -> Order:
        order = self.orders.require(order_number)
        now = self.clock()
        if transaction_id and order.transaction_id == transaction_id:
            window = timedelta(hours=self.settings.TRANSACTION_ACCESS_WINDOW_HOURS)
            if now - order.created_at <= window:
                return order
            raise ForbiddenError("Transaction ID access expired", code="transaction_access_expired")
        if not transaction_id and order.is_cod:
            window = timedelta(minutes=self.settings.COD_ANONYMOUS_WINDOW_MINUTES)
            if now - order.created_at <= window:
                return order
        if principal is None:
            raise AuthenticationError("Authentication required")
        self._authorize_owner(order, principal)
        return order

    def list_for_customer(self, customer_id: str) -> List[Order]:
        return self.orders.list_for_customer(customer_id)

    def list_summaries(self) -> List[OrderSummary]:
        return [
            OrderSummary(
                order_number=order.order_number,
                customer_id=order.customer_id,
                created_at=order.created_at,
                payable_amount=order.payable_amount,
                status=order.status.lower(),
                item_count=len(order.items),
                payment_method=order.payment_method,
                tracking_number=order.tracking_number,
            )
            for order in self.orders.list_all()
        ]

    # -- reconciliation -----------------------------------------------------

    def reconcile(self) -> ReconcileReport:
        """Re-verify stale gateway checkouts and retry missing bookings."""
        report = ReconcileReport()
        cutoff = self.clock() - timedelta(minutes=self.settings.PAYMENT_RECONCILE_AFTER_MINUTES)

        for order in self.orders.list_awaiting_payment(cutoff):
            try:
                outcome = self.confirm_payment(order.order_number)
            except OrderError as e:
                report.errors.append({"order_number": order.order_number, "code": e.code, "message": e.message})
                continue
            if outcome.state == GatewayState.COMPLETED:
                report.confirmed.append(order.order_number)
            elif outcome.state == GatewayState.FAILED:
                report.failed_payments.append(order.order_number)
            else:
                report.still_pending.append(order.order_number)

        for order in self.orders.list_awaiting_shipment():
            try:
                self.book_shipment(order.order_number)
                report.booked.append(order.order_number)
            except OrderError as e:
                report.errors.append({"order_number": order.order_number, "code": e.code, "message": e.message})

        for order in self.orders.list_unrefunded_cancellations():
            if self._refund_late_settlement(order.order_number) is not None:
                report.refunded.append(order.order_number)
            else:
                report.errors.append({
                    "order_number": order.order_number, "code": "refund_failed",
                    "message": "Refund of settled payment failed",
                })

        logger.info(
            "Reconciliation finished",
            extra={'extra_fields': {
                'confirmed': len(report.confirmed), 'booked': len(report.booked),
                'refunded': len(report.refunded), 'errors': len(report.errors),
            }},
        )
        return report

