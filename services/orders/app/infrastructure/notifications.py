"""Outbound customer notifications.

Delivery is delegated to the notifications service. Sending never blocks or
fails the operation that triggered it: dispatch runs on a small thread pool
and errors are only logged.
"""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from app.domain.models import Order
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Notification:
    kind: str
    recipient: str
    subject: str
    order_number: str
    context: Dict[str, Any] = field(default_factory=dict)


def _recipient(order: Order) -> str:
    return (order.shipping_address or {}).get("email", "")


def _summary(order: Order) -> Dict[str, Any]:
    return {
        "order_number": order.order_number,
        "status": order.status,
        "payment_method": order.payment_method,
        "payable_amount": str(order.payable_amount),
        "tracking_number": order.tracking_number,
        "items": [
            {"name": item.name, "quantity": item.quantity, "unit_price": str(item.unit_price)}
            for item in order.items
        ],
    }


class Notifier(ABC):
    @abstractmethod
    def dispatch(self, notification: Notification) -> None:
        ...

    def notify(self, notification: Notification) -> None:
        if not notification.recipient:
            logger.info(f"No recipient for {notification.kind} on order {notification.order_number}")
            return
        try:
            self.dispatch(notification)
        except Exception as e:
            logger.error(
                f"Failed to queue {notification.kind} notification: {e}",
                extra={'extra_fields': {'order_number': notification.order_number}},
            )

    def order_confirmed(self, order: Order) -> None:
        self.notify(Notification(
            kind="order_confirmation",
            recipient=_recipient(order),
            subject=f"Order Confirmation - {order.order_number}",
            order_number=order.order_number,
            context=_summary(order),
        ))

    def cancellation_requested(self, order: Order) -> None:
        self.notify(Notification(
            kind="cancellation_request",
            recipient=_recipient(order),
            subject=f"Cancellation Request Received - {order.order_number}",
            order_number=order.order_number,
            context={**_summary(order), "reason": order.cancellation_reason},
        ))

    def order_cancelled(self, order: Order) -> None:
        self.notify(Notification(
            kind="order_cancellation",
            recipient=_recipient(order),
            subject=f"Order Cancelled - {order.order_number}",
            order_number=order.order_number,
            context={
                **_summary(order),
                "reason": order.cancellation_reason,
                "refund_status": order.refund_status,
                "refund_amount": str(order.refund_amount),
            },
        ))

    def order_delivered(self, order: Order) -> None:
        self.notify(Notification(
            kind="order_delivered",
            recipient=_recipient(order),
            subject=f"Order Delivered - {order.order_number}",
            order_number=order.order_number,
            context=_summary(order),
        ))


class HttpNotifier(Notifier):
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        executor: Optional[ThreadPoolExecutor] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")

    def _send(self, notification: Notification) -> None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/notifications/email", json={
                    "kind": notification.kind,
                    "to": notification.recipient,
                    "subject": notification.subject,
                    "order_number": notification.order_number,
                    "context": notification.context,
                })
                response.raise_for_status()
            logger.info(
                f"Sent {notification.kind} notification",
                extra={'extra_fields': {'order_number': notification.order_number}},
            )
        except httpx.HTTPError as e:
            logger.error(
                f"Notification delivery failed: {e}",
                extra={'extra_fields': {'order_number': notification.order_number, 'kind': notification.kind}},
            )

    def dispatch(self, notification: Notification) -> None:
        self.executor.submit(self._send, notification)
