from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.application.schemas import OrderCreate, Principal, TrackingWebhook
from app.application.service import OrderService
from app.core_settings import get_settings
from app.domain.coupons import CouponRejected
from app.domain.errors import (
    AuthenticationError,
    ConflictError,
    ExternalPermanentError,
    ForbiddenError,
    NotFoundError,
)
from app.domain.models import Coupon, Order, utcnow
from app.domain.status import GatewayState, OrderStatus, PaymentStatus, RefundStatus

from conftest import order_payload

OWNER = Principal(id="user-1")
STRANGER = Principal(id="user-2")
ADMIN = Principal(id="admin-1", role="admin")


def shifted(service, delta):
    """Same collaborators, clock moved by ``delta``."""
    return OrderService(
        service.db,
        gateway=service.gateway,
        carrier=service.carrier,
        catalog=service.catalog,
        notifier=service.notifier,
        settings=get_settings(),
        clock=lambda: utcnow() + delta,
    )


def place(service, **kwargs):
    return service.create(OrderCreate(**order_payload(**kwargs)), customer_id="user-1")


def test_cod_checkout_books_and_redeems(service, carrier, notifier, make_coupon, session_factory):
    make_coupon(code="SAVE10", max_discount_amount=Decimal("40"))

    created = place(service, coupon_code="save10")

    assert created.total_amount == Decimal("500.00")
    assert created.discount_amount == Decimal("40.00")
    assert created.payable_amount == Decimal("510.00")
    assert created.status == OrderStatus.PROCESSING.value
    assert created.tracking_number == "AWB0001"
    assert carrier.bookings == [created.order_number]
    assert notifier.kinds() == ["order_confirmation"]

    with session_factory() as fresh:
        assert fresh.scalars(select(Coupon.used_count)).one() == 1
        order = fresh.scalars(select(Order)).one()
        assert order.coupon_code == "SAVE10"
        assert order.coupon_redeemed
        assert [event.action for event in order.tracking_updates] == ["BKD"]


def test_client_discount_is_ignored(service, make_coupon):
    make_coupon(code="SAVE10")
    data = OrderCreate(**order_payload(coupon_code="SAVE10"))
    data.discount_amount = Decimal("400")
    created = service.create(data, customer_id="user-1")
    assert created.discount_amount == Decimal("50.00")
    assert created.payable_amount == Decimal("500.00")


def test_exhausted_coupon_blocks_checkout(service, make_coupon, session_factory):
    make_coupon(code="ONCE", usage_limit=1, used_count=1)
    with pytest.raises(CouponRejected) as exc:
        place(service, coupon_code="ONCE")
    assert exc.value.reason == "usage_limit_reached"
    with session_factory() as fresh:
        assert fresh.scalar(select(func.count(Order.id))) == 0


def test_unknown_coupon(service):
    with pytest.raises(NotFoundError):
        place(service, coupon_code="NOPE")


def test_gateway_checkout_is_confirmed_once(service, gateway, carrier, notifier, make_coupon, session_factory):
    make_coupon(code="SAVE10", max_discount_amount=Decimal("40"))
    created = place(service, payment_method="PhonePe", coupon_code="SAVE10")

    assert created.status == OrderStatus.PENDING_PAYMENT.value
    assert created.payment_status == PaymentStatus.INITIATED.value
    number = created.order_number
    assert gateway.initiated == [(number, 51000, f"http://api.test/payments/callback?order_id={number}")]
    with session_factory() as fresh:
        assert fresh.scalars(select(Coupon.used_count)).one() == 0

    first = service.confirm_payment(number)
    second = service.confirm_payment(number)

    assert first.newly_paid and not second.newly_paid
    assert second.state == GatewayState.COMPLETED
    assert second.order.status == OrderStatus.PROCESSING.value
    assert second.order.payment_status == PaymentStatus.PAID.value
    assert second.order.transaction_id == f"T-{number}"
    assert second.order.tracking_number == "AWB0001"
    assert gateway.verify_calls == 1
    assert carrier.bookings == [number]
    assert notifier.kinds() == ["order_confirmation"]
    with session_factory() as fresh:
        assert fresh.scalars(select(Coupon.used_count)).one() == 1


def test_failed_payment_can_settle_late(service, gateway, carrier):
    number = place(service, payment_method="PhonePe").order_number

    gateway.state = GatewayState.FAILED
    failed = service.confirm_payment(number)
    assert failed.order.status == OrderStatus.FAILED.value
    assert failed.order.payment_status == PaymentStatus.FAILED.value
    assert carrier.bookings == []

    gateway.state = GatewayState.COMPLETED
    paid = service.confirm_payment(number)
    assert paid.order.status == OrderStatus.PROCESSING.value
    assert paid.order.is_paid


def test_pending_payment_changes_nothing(service, gateway, notifier):
    number = place(service, payment_method="PhonePe").order_number
    gateway.state = GatewayState.PENDING
    outcome = service.confirm_payment(number)
    assert outcome.order.status == OrderStatus.PENDING_PAYMENT.value
    assert notifier.sent == []


def test_settled_amount_must_match(service, gateway):
    number = place(service, payment_method="PhonePe").order_number
    gateway.amounts[number] = 100
    with pytest.raises(ConflictError) as exc:
        service.confirm_payment(number)
    assert exc.value.code == "amount_mismatch"
    assert service.orders.require(number, fresh=True).status == OrderStatus.PENDING_PAYMENT.value


def test_cod_orders_are_not_verified(service, gateway):
    number = place(service).order_number
    with pytest.raises(ConflictError) as exc:
        service.confirm_payment(number)
    assert exc.value.code == "not_gateway_order"
    assert gateway.verify_calls == 0


def test_booking_is_idempotent(service, carrier):
    carrier.fail = ExternalPermanentError("Pincode not serviceable", provider="carrier", operation="book")
    created = place(service)
    assert created.tracking_number is None
    assert created.booking_error == "Pincode not serviceable"
    assert created.status == OrderStatus.PENDING.value

    carrier.fail = None
    assert service.book_shipment(created.order_number) == "AWB0001"
    assert service.book_shipment(created.order_number) == "AWB0001"
    assert carrier.bookings == [created.order_number]


def test_booking_waits_for_a_claim_held_elsewhere(service, carrier):
    carrier.fail = ExternalPermanentError("Pincode not serviceable", provider="carrier", operation="book")
    number = place(service).order_number
    carrier.fail = None

    # another worker is mid-call to the carrier
    assert service.orders.claim_booking(number, timedelta(minutes=5))

    with pytest.raises(ConflictError) as exc:
        service.book_shipment(number)
    assert exc.value.code == "booking_in_progress"
    assert carrier.bookings == []

    service.orders.release_booking(number)
    assert service.book_shipment(number) == "AWB0001"


def test_unpaid_gateway_order_is_not_shipped(service):
    number = place(service, payment_method="PhonePe").order_number
    with pytest.raises(ConflictError) as exc:
        service.book_shipment(number)
    assert exc.value.code == "not_paid"


def test_tracking_applies_last_event_only(service, notifier):
    created = place(service)
    outcome = service.ingest_tracking(TrackingWebhook(
        shipmentId=created.tracking_number,
        events=[
            {"code": "PCUP", "timestamp": "2026-10-01T10:00:00", "description": "Picked up"},
            {"code": "OUTDLV", "timestamp": "2026-10-02T08:00:00", "description": "Out for delivery"},
        ],
        weight="0.6",
        expectedDeliveryDate="03102026",
    ))
    assert outcome.recorded == 2
    order = outcome.order
    assert order.status == OrderStatus.OUT_FOR_DELIVERY.value
    assert order.weight == "0.6"
    assert order.expected_delivery_date.day == 3
    assert order.expected_delivery_date.month == 10
    assert "order_delivered" not in notifier.kinds()


def test_tracking_deduplicates_and_ignores_unknown_codes(service):
    created = place(service)
    event = {"code": "PCUP", "timestamp": "2026-10-01T10:00:00"}
    service.ingest_tracking(TrackingWebhook(shipmentId=created.tracking_number, events=[event]))

    again = service.ingest_tracking(TrackingWebhook(
        shipmentId=created.tracking_number,
        events=[event, {"code": "BKD", "timestamp": "2026-10-01T09:00:00"}, {"code": "ZZZ"}],
    ))
    assert again.recorded == 1
    assert again.ignored_codes == ["ZZZ"]
    assert again.order.status == OrderStatus.SHIPPED.value
    actions = [e.action for e in again.order.tracking_updates]
    assert actions == ["BKD", "PCUP", "ZZZ"]


def test_delivery_marks_cod_paid_and_is_final(service, notifier):
    created = place(service)
    outcome = service.ingest_tracking(TrackingWebhook(
        shipmentId=created.tracking_number, events=[{"code": "DLV", "timestamp": "2026-10-03T12:00:00"}],
    ))
    assert outcome.order.status == OrderStatus.DELIVERED.value
    assert outcome.order.payment_status == PaymentStatus.PAID.value
    assert notifier.kinds().count("order_delivered") == 1

    late = service.ingest_tracking(TrackingWebhook(
        shipmentId=created.tracking_number, events=[{"code": "RTO", "timestamp": "2026-10-04T12:00:00"}],
    ))
    assert late.order.status == OrderStatus.DELIVERED.value

    with pytest.raises(ConflictError) as exc:
        service.cancel(created.order_number, "too late", OWNER)
    assert exc.value.code == "already_delivered"


def test_tracking_for_unknown_shipment(service):
    with pytest.raises(NotFoundError) as exc:
        service.ingest_tracking(TrackingWebhook(shipmentId="AWB404", events=[]))
    assert exc.value.code == "shipment_not_found"


def test_cod_cancel_refunds_nothing(service, carrier, gateway, notifier):
    created = place(service)
    outcome = service.cancel(created.order_number, "Changed my mind", OWNER)

    assert outcome.carrier_cancelled
    assert carrier.cancellations == [("AWB0001", "Changed my mind")]
    assert gateway.refunds == []
    order = outcome.order
    assert order.status == OrderStatus.CANCELLED.value
    assert order.refund_amount == Decimal("0.00")
    assert order.refund_status is None
    assert order.tracking_updates[-1].action == "CAN"
    assert notifier.kinds()[-1] == "order_cancellation"

    with pytest.raises(ConflictError) as exc:
        service.cancel(created.order_number, "again", OWNER)
    assert exc.value.code == "already_cancelled"


def test_shipped_cod_order_cannot_be_cancelled(service):
    created = place(service)
    service.ingest_tracking(TrackingWebhook(
        shipmentId=created.tracking_number, events=[{"code": "PCUP", "timestamp": "t1"}],
    ))
    with pytest.raises(ConflictError) as exc:
        service.cancel(created.order_number, "", OWNER)
    assert exc.value.code == "not_cancellable"


def test_paid_gateway_cancel_refunds_payable(service, gateway, make_coupon):
    make_coupon(code="SAVE10", max_discount_amount=Decimal("40"))
    number = place(service, payment_method="PhonePe", coupon_code="SAVE10").order_number
    service.confirm_payment(number)

    outcome = service.cancel(number, "Ordered by mistake", OWNER)

    assert gateway.refunds == [(number, f"T-{number}", 51000)]
    order = outcome.order
    assert order.status == OrderStatus.CANCELLED.value
    assert order.refund_id == f"RF-{number}"
    assert order.refund_status == "initiated"
    assert order.refund_amount == Decimal("510.00")

    with pytest.raises(ConflictError):
        service.cancel(number, "twice", OWNER)
    assert len(gateway.refunds) == 1


def test_failed_refund_leaves_order_untouched(service, gateway, carrier):
    number = place(service, payment_method="PhonePe").order_number
    service.confirm_payment(number)
    gateway.fail_refund = ExternalPermanentError("Refund rejected", provider="payment-gateway", operation="refund")

    with pytest.raises(ExternalPermanentError):
        service.cancel(number, "", OWNER)

    order = service.orders.require(number, fresh=True)
    assert order.status == OrderStatus.PROCESSING.value
    assert order.refund_status is None
    assert carrier.cancellations == []


def test_refund_is_kept_when_delivery_overtakes_cancel(service, gateway, notifier, session_factory):
    number = place(service, payment_method="PhonePe").order_number
    service.confirm_payment(number)
    refund = gateway.refund

    def refund_then_deliver(order_id, transaction_id, amount_minor):
        receipt = refund(order_id, transaction_id, amount_minor)
        # a carrier webhook lands while the refund is in flight
        with session_factory() as other:
            order = other.scalars(select(Order).where(Order.order_number == order_id)).one()
            order.status = OrderStatus.DELIVERED.value
            other.commit()
        return receipt

    gateway.refund = refund_then_deliver
    outcome = service.cancel(number, "Too slow", OWNER)

    assert not outcome.cancelled
    assert gateway.refunds == [(number, f"T-{number}", 55000)]
    order = service.orders.require(number, fresh=True)
    assert order.status == OrderStatus.DELIVERED.value
    assert order.refund_id == f"RF-{number}"
    assert order.refund_status == "initiated"
    assert order.refund_amount == Decimal("550.00")
    assert "order_cancellation" not in notifier.kinds()


def test_refund_is_kept_when_cancel_keeps_colliding(service, gateway, monkeypatch):
    number = place(service, payment_method="PhonePe").order_number
    service.confirm_payment(number)

    def collide(order_number, mutate):
        raise ConflictError("busy", code="concurrent_update")

    monkeypatch.setattr(service.orders, "update", collide)
    with pytest.raises(ConflictError) as exc:
        service.cancel(number, "", OWNER)
    assert exc.value.code == "concurrent_update"
    monkeypatch.undo()

    order = service.orders.require(number, fresh=True)
    assert order.status == OrderStatus.PROCESSING.value
    assert order.refund_id == f"RF-{number}"
    assert order.refund_amount == Decimal("550.00")


def test_payment_settling_after_cancellation_is_refunded(service, gateway, carrier, notifier):
    number = place(service, payment_method="PhonePe").order_number
    assert service.cancel(number, "Changed my mind", OWNER).order.refund_id is None

    outcome = service.confirm_payment(number)

    assert not outcome.newly_paid
    order = outcome.order
    assert order.status == OrderStatus.CANCELLED.value
    assert order.payment_status == PaymentStatus.PAID.value
    assert order.transaction_id == f"T-{number}"
    assert order.refund_id == f"RF-{number}"
    assert gateway.refunds == [(number, f"T-{number}", 55000)]
    assert carrier.bookings == []
    assert "order_confirmation" not in notifier.kinds()

    service.confirm_payment(number)
    assert len(gateway.refunds) == 1


def test_reconcile_retries_refund_of_late_settlement(service, gateway):
    number = place(service, payment_method="PhonePe").order_number
    service.cancel(number, "", OWNER)
    gateway.fail_refund = ExternalPermanentError("Refund rejected", provider="payment-gateway", operation="refund")

    assert service.confirm_payment(number).order.refund_id is None

    gateway.fail_refund = None
    report = service.reconcile()

    assert report.refunded == [number]
    assert gateway.refunds == [(number, f"T-{number}", 55000)]
    assert service.orders.require(number, fresh=True).refund_status == "initiated"
    assert service.reconcile().refunded == []


def test_refund_status_completes(service, gateway):
    number = place(service, payment_method="PhonePe").order_number
    service.confirm_payment(number)
    service.cancel(number, "", OWNER)

    assert service.check_refund_status(number, OWNER).refund_status == "initiated"
    gateway.refund_state = RefundStatus.COMPLETED
    assert service.check_refund_status(number, OWNER).refund_status == "completed"


def test_only_owner_or_admin_may_cancel(service):
    number = place(service).order_number
    with pytest.raises(ForbiddenError):
        service.cancel(number, "", STRANGER)
    assert service.cancel(number, "", ADMIN).order.status == OrderStatus.CANCELLED.value


def test_order_access_windows(service, gateway):
    cod = place(service).order_number
    assert service.get_order(cod, None).order_number == cod
    with pytest.raises(AuthenticationError):
        shifted(service, timedelta(minutes=10)).get_order(cod, None)
    # inside the anonymous window anyone holding the number may look
    assert service.get_order(cod, STRANGER).order_number == cod
    with pytest.raises(ForbiddenError):
        shifted(service, timedelta(minutes=10)).get_order(cod, STRANGER)

    paid = place(service, payment_method="PhonePe").order_number
    service.confirm_payment(paid)
    assert service.get_order(paid, None, transaction_id=f"T-{paid}").order_number == paid
    with pytest.raises(ForbiddenError) as exc:
        shifted(service, timedelta(hours=25)).get_order(paid, None, transaction_id=f"T-{paid}")
    assert exc.value.code == "transaction_access_expired"
    with pytest.raises(AuthenticationError):
        service.get_order(paid, None, transaction_id="T-wrong")
    assert service.get_order(paid, OWNER).order_number == paid


def test_reconcile_sweeps_stale_checkouts(service, gateway, carrier):
    paid = place(service, payment_method="PhonePe").order_number
    waiting = place(service, payment_method="PhonePe").order_number
    carrier.fail = ExternalPermanentError("down", provider="carrier", operation="book")
    unbooked = place(service).order_number
    carrier.fail = None

    # too early: nothing older than the reconcile window yet
    early = service.reconcile()
    assert early.confirmed == [] and early.still_pending == []
    assert early.booked == [unbooked]

    gateway.state = GatewayState.COMPLETED
    later = shifted(service, timedelta(minutes=30))

    original_verify = gateway.verify

    def verify(order_id):
        if order_id == waiting:
            gateway.state = GatewayState.PENDING
        else:
            gateway.state = GatewayState.COMPLETED
        return original_verify(order_id)

    gateway.verify = verify
    report = later.reconcile()

    assert report.confirmed == [paid]
    assert report.still_pending == [waiting]
    assert report.errors == []
    order = service.orders.require(paid, fresh=True)
    assert order.is_paid and order.tracking_number is not None
