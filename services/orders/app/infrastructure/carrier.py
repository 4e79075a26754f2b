"""Carrier port and its HTTP adapter.

Booking sends one consignment per order. The declared value is always the
order's payable amount, and for cash-on-delivery the same amount is the cash
to collect. Our order number travels as ``customer_reference_number`` so the
consignment can be matched back to the order on the carrier's side.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from app.domain.errors import ExternalPermanentError
from app.domain.models import Order
from .http import RetryPolicy, send_with_retry

PROVIDER = "carrier"


@dataclass(frozen=True)
class ContactPoint:
    name: str
    phone: str
    address_line_1: str
    pincode: str
    city: str
    state: str
    address_line_2: str = ""
    country: str = "India"
    email: str = ""

    def as_payload(self) -> dict:
        return {
            "name": self.name,
            "phone": self.phone,
            "alternate_phone": self.phone,
            "address_line_1": self.address_line_1,
            "address_line_2": self.address_line_2,
            "pincode": self.pincode,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "email": self.email,
        }

    @classmethod
    def from_address(cls, address: dict) -> "ContactPoint":
        """Build from an order's address snapshot."""
        name = " ".join(filter(None, [address.get("name"), address.get("lastname")]))
        return cls(
            name=name,
            phone=address.get("phone", ""),
            address_line_1=address.get("street_address", ""),
            address_line_2=address.get("apartment") or "",
            pincode=str(address.get("zip", "")),
            city=address.get("city", ""),
            state=address.get("state", ""),
            country=address.get("country") or "India",
            email=address.get("email") or "",
        )


@dataclass(frozen=True)
class ParcelSpec:
    length_cm: Decimal = Decimal("10")
    width_cm: Decimal = Decimal("10")
    height_cm: Decimal = Decimal("10")
    weight_kg: Decimal = Decimal("0.5")


class Carrier(ABC):
    @abstractmethod
    def book(self, order: Order) -> str:
        """Book a consignment for ``order`` and return its tracking number."""

    @abstractmethod
    def cancel(self, tracking_number: str, reason: str) -> None:
        """Ask the carrier to cancel a consignment."""

    def status(self) -> dict:
        return {}


class HttpCarrier(Carrier):
    def __init__(
        self,
        api_key: str,
        book_url: str,
        cancel_url: str,
        customer_code: str,
        origin: ContactPoint,
        return_to: ContactPoint,
        parcel: ParcelSpec = ParcelSpec(),
        cod_service_type: str = "B2C SMART EXPRESS",
        prepaid_service_type: str = "B2C PRIORITY",
        commodity_id: str = "2",
        policy: RetryPolicy = RetryPolicy(),
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.book_url = book_url
        self.cancel_url = cancel_url
        self.customer_code = customer_code
        self.origin = origin
        self.return_to = return_to
        self.parcel = parcel
        self.cod_service_type = cod_service_type
        self.prepaid_service_type = prepaid_service_type
        self.commodity_id = commodity_id
        self.policy = policy
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.book_url and self.customer_code)

    def _post(self, operation: str, url: str, payload: dict) -> dict:
        if not self.configured:
            raise ExternalPermanentError(
                "Carrier integration is not configured", provider=PROVIDER, operation=operation,
            )
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = send_with_retry(
                lambda: client.post(
                    url, json=payload,
                    headers={"api-key": self.api_key, "Content-Type": "application/json"},
                ),
                provider=PROVIDER, operation=operation, policy=self.policy,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ExternalPermanentError(
                "Carrier returned an unreadable response", provider=PROVIDER, operation=operation,
            ) from e

    def build_consignment(self, order: Order) -> dict:
        payable = str(order.payable_amount)
        consignment = {
            "customer_code": self.customer_code,
            "service_type_id": self.cod_service_type if order.is_cod else self.prepaid_service_type,
            "reference_number": "",
            "load_type": "NON-DOCUMENT",
            "consignment_type": "Forward",
            "dimension_unit": "cm",
            "length": str(self.parcel.length_cm),
            "width": str(self.parcel.width_cm),
            "height": str(self.parcel.height_cm),
            "weight_unit": "kg",
            "weight": str(self.parcel.weight_kg),
            "declared_value": payable,
            "cod_amount": payable if order.is_cod else "0",
            "cod_collection_mode": "cash" if order.is_cod else "",
            "num_pieces": "1",
            "customer_reference_number": order.order_number,
            "commodity_id": self.commodity_id,
            "is_risk_surcharge_applicable": False,
            "origin_details": self.origin.as_payload(),
            "destination_details": ContactPoint.from_address(order.shipping_address).as_payload(),
            "return_details": self.return_to.as_payload(),
            "pieces_detail": [
                {
                    "description": item.name,
                    "declared_value": str(item.line_total),
                    "weight": str(self.parcel.weight_kg),
                    "height": str(self.parcel.height_cm),
                    "length": str(self.parcel.length_cm),
                    "width": str(self.parcel.width_cm),
                }
                for item in order.items
            ],
        }
        return {"consignments": [consignment]}

    def book(self, order: Order) -> str:
        data = self._post("book", self.book_url, self.build_consignment(order))
        results = data.get("data") or []
        if data.get("status") != "OK" or not results:
            raise ExternalPermanentError(
                data.get("message") or "Carrier rejected the booking",
                provider=PROVIDER, operation="book",
            )
        result = results[0]
        if not result.get("success"):
            raise ExternalPermanentError(
                result.get("message") or "Carrier rejected the booking",
                provider=PROVIDER, operation="book",
            )
        tracking_number = result.get("reference_number")
        if not tracking_number:
            raise ExternalPermanentError(
                "Carrier accepted the booking without a tracking number",
                provider=PROVIDER, operation="book",
            )
        return tracking_number

    def cancel(self, tracking_number: str, reason: str) -> None:
        data = self._post("cancel", self.cancel_url, {
            "customer_code": self.customer_code,
            "awb_number": tracking_number,
            "reason": reason,
        })
        if data.get("success") is False:
            raise ExternalPermanentError(
                data.get("message") or "Carrier refused the cancellation",
                provider=PROVIDER, operation="cancel",
            )

    def status(self) -> dict:
        return {"configured": self.configured, "cancel_configured": bool(self.cancel_url)}
