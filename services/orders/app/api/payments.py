from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from app.application.schemas import PaymentStatusRead, Principal, RefundStatusRead
from app.application.service import OrderService
from app.core_settings import get_settings
from app.domain.errors import OrderError
from app.domain.status import GatewayState, OrderStatus
from shared.core import get_logger, set_request_context
from .deps import get_order_service, verify_token

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/status", response_model=PaymentStatusRead)
def check_payment_status(order_id: str, service: OrderService = Depends(get_order_service)):
    """Idempotent poll; converges with the gateway callback."""
    set_request_context(order_id=order_id)
    outcome = service.confirm_payment(order_id)
    order = outcome.order
    return PaymentStatusRead(
        order_number=order.order_number,
        state=outcome.state.value,
        status=order.status,
        payment_status=order.payment_status,
        transaction_id=order.transaction_id,
        tracking_number=order.tracking_number,
    )


@router.get("/callback")
def payment_callback(order_id: str, service: OrderService = Depends(get_order_service)):
    """Browser lands here after checkout; bounce to the storefront with the outcome."""
    set_request_context(order_id=order_id)
    frontend = get_settings().FRONTEND_URL.rstrip("/")
    try:
        outcome = service.confirm_payment(order_id)
    except OrderError as e:
        logger.error(
            f"Payment callback failed for order {order_id}: {e.message}",
            extra={'extra_fields': {'order_number': order_id, 'code': e.code}},
        )
        query = urlencode({"orderId": order_id, "error": e.code})
        return RedirectResponse(f"{frontend}/checkout?{query}", status_code=302)

    order = outcome.order
    if outcome.state == GatewayState.COMPLETED and order.order_status != OrderStatus.CANCELLED:
        query = urlencode({
            "orderId": order.order_number,
            "transactionId": order.transaction_id or "",
            "status": order.status,
        })
        return RedirectResponse(f"{frontend}/order-confirmation?{query}", status_code=302)
    if outcome.state == GatewayState.FAILED or order.order_status == OrderStatus.CANCELLED:
        query = urlencode({"orderId": order.order_number, "status": order.status})
        return RedirectResponse(f"{frontend}/order-failure?{query}", status_code=302)
    query = urlencode({"orderId": order.order_number, "status": "pending"})
    return RedirectResponse(f"{frontend}/checkout?{query}", status_code=302)


@router.get("/refund-status", response_model=RefundStatusRead)
def check_refund_status(
    order_id: str,
    principal: Principal = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    set_request_context(order_id=order_id)
    order = service.check_refund_status(order_id, principal)
    return RefundStatusRead(
        order_number=order.order_number,
        refund_id=order.refund_id,
        refund_status=order.refund_status,
        status=order.status,
        refund_amount=order.refund_amount,
    )
