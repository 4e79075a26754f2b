"""Payment gateway port and its HTTP adapter.

The adapter speaks the gateway's checkout v2 API: OAuth client-credentials
for an access token, ``/checkout/v2/pay`` to start a hosted checkout,
``/checkout/v2/order/{id}/status`` to read settlement, and the v2 refund
endpoints. The merchant order id sent to the gateway is always our order
number, which makes every later status read for that order idempotent.

Amounts cross this boundary in minor units (paise) only.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from app.domain.errors import ExternalAuthError, ExternalPermanentError
from app.domain.status import GatewayState, RefundStatus
from .credential_cache import AccessToken, CredentialCache
from .http import RetryPolicy, send_with_retry

PROVIDER = "payment-gateway"


@dataclass(frozen=True)
class PaymentVerification:
    state: GatewayState
    transaction_id: Optional[str] = None
    amount_minor: Optional[int] = None


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    state: RefundStatus = RefundStatus.INITIATED


class PaymentGateway(ABC):
    """Contract the order orchestrator relies on."""

    @abstractmethod
    def initiate(self, order_id: str, amount_minor: int, redirect_url: str) -> str:
        """Start a checkout and return the URL to send the customer to."""

    @abstractmethod
    def verify(self, order_id: str) -> PaymentVerification:
        """Read the settlement state for a merchant order id."""

    @abstractmethod
    def refund(self, order_id: str, transaction_id: str, amount_minor: int) -> RefundReceipt:
        """Refund a settled payment; returns the gateway's refund id."""

    @abstractmethod
    def refund_status(self, refund_id: str) -> RefundStatus:
        """Read the state of a refund started earlier."""

    def status(self) -> dict:
        return {}


def refund_request_id(order_id: str) -> str:
    """Merchant refund id; deterministic so a retried refund is not paid twice."""
    return f"{order_id}-RF"


_REFUND_STATES = {
    "COMPLETED": RefundStatus.COMPLETED,
    "CONFIRMED": RefundStatus.COMPLETED,
    "FAILED": RefundStatus.FAILED,
}


class HttpPaymentGateway(PaymentGateway):
    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        cache: CredentialCache,
        client_version: str = "1",
        payment_expiry_seconds: int = 1200,
        policy: RetryPolicy = RetryPolicy(),
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.payment_expiry_seconds = payment_expiry_seconds
        self.cache = cache
        self.policy = policy
        self.timeout = timeout
        self.transport = transport

    @property
    def cache_key(self) -> str:
        return f"gateway:{self.client_id}"

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def authenticate(self) -> AccessToken:
        with self._client() as client:
            response = send_with_retry(
                lambda: client.post(
                    "/v1/oauth/token",
                    data={
                        "client_id": self.client_id,
                        "client_version": self.client_version,
                        "client_secret": self.client_secret,
                        "grant_type": "client_credentials",
                    },
                ),
                provider=PROVIDER, operation="authenticate", policy=self.policy,
            )
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ExternalAuthError(
                "Payment gateway did not issue an access token",
                provider=PROVIDER, operation="authenticate",
            )
        expires_at = data.get("expires_at")
        if expires_at is None:
            expires_at = time.time() + float(data.get("expires_in", 0))
        return AccessToken(value=token, expires_at=float(expires_at))

    def _token(self) -> str:
        return self.cache.get_or_refresh(self.cache_key, self.authenticate).value

    def _reauthenticate(self) -> None:
        self.cache.invalidate(self.cache_key)
        self._token()

    def _call(self, operation: str, method: str, path: str, **kwargs) -> dict:
        with self._client() as client:
            response = send_with_retry(
                lambda: client.request(
                    method, path,
                    headers={"Authorization": f"O-Bearer {self._token()}"},
                    **kwargs,
                ),
                provider=PROVIDER, operation=operation, policy=self.policy,
                reauthenticate=self._reauthenticate,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ExternalPermanentError(
                "Payment gateway returned an unreadable response",
                provider=PROVIDER, operation=operation,
            ) from e

    def initiate(self, order_id: str, amount_minor: int, redirect_url: str) -> str:
        data = self._call(
            "initiate", "POST", "/checkout/v2/pay",
            json={
                "merchantOrderId": order_id,
                "amount": amount_minor,
                "expireAfter": self.payment_expiry_seconds,
                "paymentFlow": {
                    "type": "PG_CHECKOUT",
                    "message": f"Payment for order {order_id}",
                    "merchantUrls": {"redirectUrl": redirect_url},
                },
            },
        )
        redirect = data.get("redirectUrl")
        if not redirect:
            raise ExternalPermanentError(
                "Payment initiation failed: no redirect URL returned",
                provider=PROVIDER, operation="initiate",
            )
        return redirect

    def verify(self, order_id: str) -> PaymentVerification:
        data = self._call(
            "verify", "GET", f"/checkout/v2/order/{order_id}/status", params={"details": "true"},
        )
        details = data.get("paymentDetails") or []
        transaction_id = details[0].get("transactionId") if details else None
        amount = data.get("amount")
        return PaymentVerification(
            state=GatewayState.parse(data.get("state")),
            transaction_id=transaction_id or data.get("orderId"),
            amount_minor=int(amount) if amount is not None else None,
        )

    def refund(self, order_id: str, transaction_id: str, amount_minor: int) -> RefundReceipt:
        data = self._call(
            "refund", "POST", "/payments/v2/refund",
            json={
                "merchantRefundId": refund_request_id(order_id),
                "originalMerchantOrderId": order_id,
                "originalTransactionId": transaction_id,
                "amount": amount_minor,
            },
        )
        refund_id = data.get("refundId")
        if not refund_id:
            raise ExternalPermanentError(
                "Refund was not accepted by the payment gateway",
                provider=PROVIDER, operation="refund",
            )
        return RefundReceipt(
            refund_id=refund_id,
            state=_REFUND_STATES.get(str(data.get("state", "")).upper(), RefundStatus.INITIATED),
        )

    def refund_status(self, refund_id: str) -> RefundStatus:
        data = self._call("refund_status", "GET", f"/payments/v2/refund/{refund_id}/status")
        return _REFUND_STATES.get(str(data.get("state", "")).upper(), RefundStatus.INITIATED)

    def status(self) -> dict:
        return self.cache.status(self.cache_key)
