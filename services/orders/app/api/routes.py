from typing import Optional

from fastapi import APIRouter, Depends

from app.application.schemas import (
    BookingResult,
    CancellationRequest,
    CancelOrder,
    CancelResult,
    OrderCreate,
    OrderCreated,
    OrderRead,
    OrderSummary,
    Principal,
    ReconcileReport,
)
from app.application.service import OrderService
from shared.core import set_request_context
from .deps import get_order_service, optional_principal, require_admin, verify_token

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderCreated, status_code=201)
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    """Place an order. Gateway payments return the URL to redirect the customer to."""
    return service.create(payload, customer_id=principal.id)


@router.get("/history", response_model=list[OrderRead])
def order_history(
    principal: Principal = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    return service.list_for_customer(principal.id)


@router.get("/all", response_model=list[OrderSummary])
def list_all_orders(
    _: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """Admin order list, newest first."""
    return service.list_summaries()


@router.post("/request-cancellation")
def request_cancellation(
    payload: CancellationRequest,
    principal: Principal = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    set_request_context(order_id=payload.order_number)
    order = service.request_cancellation(payload.order_number, payload.reason, principal)
    return {
        "success": True,
        "order_number": order.order_number,
        "message": "Cancellation request submitted successfully",
    }


@router.post("/reconcile", response_model=ReconcileReport)
def reconcile(
    _: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """Re-verify stale gateway checkouts and retry missing shipment bookings."""
    return service.reconcile()


@router.post("/{order_number}/cancel", response_model=CancelResult)
def cancel_order(
    order_number: str,
    payload: CancelOrder,
    principal: Principal = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    set_request_context(order_id=order_number)
    outcome = service.cancel(order_number, payload.reason, principal)
    order = outcome.order
    return CancelResult(
        success=outcome.cancelled,
        order_number=order.order_number,
        status=order.status,
        refund_status=order.refund_status,
        refund_id=order.refund_id,
        refund_amount=order.refund_amount,
        carrier_cancelled=outcome.carrier_cancelled,
        message=(
            "Refund initiated but the order could no longer be cancelled" if not outcome.cancelled
            else "Order cancelled and refund initiated" if order.refund_id
            else "Order cancelled successfully"
        ),
    )


@router.post("/{order_number}/book-shipment", response_model=BookingResult)
def book_shipment(
    order_number: str,
    _: Principal = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    set_request_context(order_id=order_number)
    tracking_number = service.book_shipment(order_number)
    order = service.orders.require(order_number)
    return BookingResult(order_number=order_number, tracking_number=tracking_number, status=order.status)


@router.get("/{order_number}", response_model=OrderRead)
def get_order(
    order_number: str,
    transaction_id: Optional[str] = None,
    principal: Optional[Principal] = Depends(optional_principal),
    service: OrderService = Depends(get_order_service),
):
    return service.get_order(order_number, principal, transaction_id=transaction_id)
