"""Order lifecycle states, the transition table and the carrier code mapping."""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PENDING_PAYMENT = "Pending Payment"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    FAILED = "Failed"
    RETURN_TO_ORIGIN = "Return to Origin"
    RETURNED = "Returned"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    INITIATED = "Initiated"
    PAID = "Paid"
    FAILED = "Failed"


class PaymentMethod(str, Enum):
    COD = "COD"
    GATEWAY = "PhonePe"


class RefundStatus(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"


class GatewayState(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PENDING = "PENDING"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GatewayState":
        # anything the gateway reports that is not terminal is treated as pending
        try:
            return cls((raw or "").upper())
        except ValueError:
            return cls.PENDING


class CarrierCode(str, Enum):
    BOOKED = "BKD"
    PICKED_UP = "PCUP"
    OUT_FOR_DELIVERY = "OUTDLV"
    DELIVERED = "DLV"
    NOT_DELIVERED = "NONDLV"
    RETURN_TO_ORIGIN = "RTO"
    RETURNED = "RETURND"
    CANCELLED = "CAN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["CarrierCode"]:
        try:
            return cls((raw or "").strip().upper())
        except ValueError:
            return None


# Reviewed against the carrier's published action codes. Codes missing from
# this table are logged and ignored.
CARRIER_STATUS_MAP: Dict[CarrierCode, OrderStatus] = {
    CarrierCode.BOOKED: OrderStatus.PROCESSING,
    CarrierCode.PICKED_UP: OrderStatus.SHIPPED,
    CarrierCode.OUT_FOR_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
    CarrierCode.DELIVERED: OrderStatus.DELIVERED,
    CarrierCode.NOT_DELIVERED: OrderStatus.FAILED,
    CarrierCode.RETURN_TO_ORIGIN: OrderStatus.RETURN_TO_ORIGIN,
    CarrierCode.RETURNED: OrderStatus.RETURNED,
    CarrierCode.CANCELLED: OrderStatus.CANCELLED,
}


_IN_TRANSIT = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.FAILED,
    OrderStatus.RETURN_TO_ORIGIN,
    OrderStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PENDING_PAYMENT,
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PENDING_PAYMENT: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: _IN_TRANSIT,
    OrderStatus.SHIPPED: _IN_TRANSIT - {OrderStatus.SHIPPED},
    OrderStatus.OUT_FOR_DELIVERY: _IN_TRANSIT - {OrderStatus.OUT_FOR_DELIVERY},
    # a failed delivery attempt can be followed by another attempt; a failed
    # payment can still settle late when the gateway confirms it
    OrderStatus.FAILED: _IN_TRANSIT | {OrderStatus.PROCESSING},
    OrderStatus.RETURN_TO_ORIGIN: frozenset({OrderStatus.RETURNED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Cash-on-delivery orders cannot be cancelled once the parcel left the warehouse.
COD_UNCANCELLABLE = frozenset({
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
})


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]
