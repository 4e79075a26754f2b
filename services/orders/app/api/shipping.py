from fastapi import APIRouter, Depends

from app.application.schemas import CancelOrder, CancelResult, Principal, TrackingResult, TrackingWebhook
from app.application.service import OrderService
from shared.core import set_request_context
from .deps import get_order_service, verify_token

router = APIRouter(prefix="/shipping", tags=["shipping"])


@router.post("/tracking/update", response_model=TrackingResult)
def receive_tracking_update(payload: TrackingWebhook, service: OrderService = Depends(get_order_service)):
    """Carrier webhook. Unknown action codes are recorded but never fail the call."""
    outcome = service.ingest_tracking(payload)
    set_request_context(order_id=outcome.order.order_number)
    return TrackingResult(
        order_number=outcome.order.order_number,
        status=outcome.order.status,
        recorded_events=outcome.recorded,
        ignored_codes=outcome.ignored_codes,
    )


@router.post("/cancel-order/{order_number}", response_model=CancelResult)
def cancel_shipment(
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
        message="Shipment cancelled" if outcome.carrier_cancelled else "Order cancelled",
    )
