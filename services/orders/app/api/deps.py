from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.application.schemas import Principal
from app.application.service import OrderService
from app.auth_local import decode_access_token
from app.core_settings import get_settings
from app.domain.errors import AuthenticationError, ForbiddenError
from app.infrastructure.carrier import Carrier, ContactPoint, HttpCarrier, ParcelSpec
from app.infrastructure.catalog import Catalog, HttpCatalog
from app.infrastructure.credential_cache import get_credential_cache
from app.infrastructure.db import get_db
from app.infrastructure.http import RetryPolicy
from app.infrastructure.notifications import HttpNotifier, Notifier
from app.infrastructure.payment_gateway import HttpPaymentGateway, PaymentGateway
from shared.core import set_request_context

BEARER_PREFIX = "Bearer "


def optional_principal(request: Request) -> Optional[Principal]:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        return None
    token_data = decode_access_token(auth_header.split(" ", 1)[1])
    if not token_data or not token_data.get("id"):
        raise AuthenticationError("Invalid token", code="invalid_token")
    principal = Principal(id=str(token_data["id"]), role=token_data.get("role", "user"))
    set_request_context(user_id=principal.id)
    return principal


def verify_token(principal: Optional[Principal] = Depends(optional_principal)) -> Principal:
    if principal is None:
        raise AuthenticationError("Missing token", code="missing_token")
    return principal


def require_admin(principal: Principal = Depends(verify_token)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required", code="admin_required")
    return principal


def _retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        attempts=settings.EXTERNAL_RETRY_ATTEMPTS,
        base_delay=settings.EXTERNAL_RETRY_BASE_DELAY,
        max_delay=settings.EXTERNAL_RETRY_MAX_DELAY,
    )


@lru_cache
def get_gateway() -> PaymentGateway:
    settings = get_settings()
    return HttpPaymentGateway(
        base_url=settings.GATEWAY_BASE_URL,
        client_id=settings.GATEWAY_CLIENT_ID,
        client_secret=settings.GATEWAY_CLIENT_SECRET,
        client_version=settings.GATEWAY_CLIENT_VERSION,
        payment_expiry_seconds=settings.GATEWAY_PAYMENT_EXPIRY_SECONDS,
        cache=get_credential_cache(),
        policy=_retry_policy(),
        timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
    )


@lru_cache
def get_carrier() -> Carrier:
    settings = get_settings()
    return HttpCarrier(
        api_key=settings.CARRIER_API_KEY,
        book_url=settings.CARRIER_BOOK_URL,
        cancel_url=settings.CARRIER_CANCEL_URL,
        customer_code=settings.CARRIER_CUSTOMER_CODE,
        origin=ContactPoint(
            name=settings.WAREHOUSE_NAME,
            phone=settings.WAREHOUSE_PHONE,
            address_line_1=settings.WAREHOUSE_ADDRESS_LINE_1,
            pincode=settings.WAREHOUSE_PINCODE,
            city=settings.WAREHOUSE_CITY,
            state=settings.WAREHOUSE_STATE,
        ),
        return_to=ContactPoint(
            name=settings.RETURN_NAME,
            phone=settings.RETURN_PHONE,
            address_line_1=settings.RETURN_ADDRESS_LINE_1,
            pincode=settings.RETURN_PINCODE,
            city=settings.RETURN_CITY,
            state=settings.RETURN_STATE,
            country=settings.RETURN_COUNTRY,
            email=settings.RETURN_EMAIL,
        ),
        parcel=ParcelSpec(
            length_cm=settings.PARCEL_LENGTH_CM,
            width_cm=settings.PARCEL_WIDTH_CM,
            height_cm=settings.PARCEL_HEIGHT_CM,
            weight_kg=settings.PARCEL_WEIGHT_KG,
        ),
        cod_service_type=settings.CARRIER_COD_SERVICE_TYPE,
        prepaid_service_type=settings.CARRIER_PREPAID_SERVICE_TYPE,
        commodity_id=settings.CARRIER_COMMODITY_ID,
        policy=_retry_policy(),
        timeout=settings.EXTERNAL_TIMEOUT_SECONDS,
    )


@lru_cache
def get_catalog() -> Catalog:
    settings = get_settings()
    return HttpCatalog(settings.PRODUCTS_SERVICE_URL, policy=_retry_policy())


@lru_cache
def get_notifier() -> Notifier:
    return HttpNotifier(get_settings().NOTIFICATIONS_SERVICE_URL)


def get_order_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    carrier: Carrier = Depends(get_carrier),
    catalog: Catalog = Depends(get_catalog),
    notifier: Notifier = Depends(get_notifier),
) -> OrderService:
    return OrderService(db, gateway=gateway, carrier=carrier, catalog=catalog, notifier=notifier)
