import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["FRONTEND_URL"] = "http://shop.test"
os.environ["BACKEND_URL"] = "http://api.test"

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.api.deps import get_carrier, get_catalog, get_gateway, get_notifier
from app.application.service import OrderService
from app.auth_local import create_access_token
from app.core_settings import get_settings
from app.domain.errors import ValidationError
from app.domain.models import Base, Coupon, utcnow
from app.domain.status import GatewayState, RefundStatus
from app.infrastructure.carrier import Carrier
from app.infrastructure.catalog import Catalog, ProductSnapshot
from app.infrastructure.db import get_db
from app.infrastructure.notifications import Notifier
from app.infrastructure.payment_gateway import PaymentGateway, PaymentVerification, RefundReceipt


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.state = GatewayState.COMPLETED
        self.refund_state = RefundStatus.INITIATED
        self.amounts = {}
        self.initiated = []
        self.verify_calls = 0
        self.refunds = []
        self.fail_initiate = None
        self.fail_refund = None

    def initiate(self, order_id, amount_minor, redirect_url):
        if self.fail_initiate:
            raise self.fail_initiate
        self.initiated.append((order_id, amount_minor, redirect_url))
        self.amounts[order_id] = amount_minor
        return f"https://pay.test/checkout/{order_id}"

    def verify(self, order_id):
        self.verify_calls += 1
        return PaymentVerification(
            state=self.state,
            transaction_id=f"T-{order_id}",
            amount_minor=self.amounts.get(order_id),
        )

    def refund(self, order_id, transaction_id, amount_minor):
        if self.fail_refund:
            raise self.fail_refund
        self.refunds.append((order_id, transaction_id, amount_minor))
        return RefundReceipt(refund_id=f"RF-{order_id}")

    def refund_status(self, refund_id):
        return self.refund_state


class FakeCarrier(Carrier):
    def __init__(self):
        self.bookings = []
        self.cancellations = []
        self.fail = None

    def book(self, order):
        if self.fail:
            raise self.fail
        self.bookings.append(order.order_number)
        return f"AWB{len(self.bookings):04d}"

    def cancel(self, tracking_number, reason):
        self.cancellations.append((tracking_number, reason))


class FakeCatalog(Catalog):
    def __init__(self, products):
        self.products = products

    def get_product(self, product_id):
        if product_id not in self.products:
            raise ValidationError(f"Product {product_id} is not available", code="product_unavailable")
        return self.products[product_id]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def dispatch(self, notification):
        self.sent.append(notification)

    def kinds(self):
        return [n.kind for n in self.sent]


ADDRESS = {
    "name": "Asha",
    "lastname": "Rao",
    "street_address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "zip": "560001",
    "phone": "9876543210",
    "email": "asha@example.com",
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture
def catalog():
    return FakeCatalog({
        "p1": ProductSnapshot("p1", "Cotton Kurta", Decimal("500.00"), "p1.jpg"),
        "p2": ProductSnapshot("p2", "Silk Scarf", Decimal("250.00"), None),
        "p3": ProductSnapshot("p3", "Hair Pin", Decimal("0.50"), None),
    })


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db, gateway, carrier, catalog, notifier):
    return OrderService(db, gateway=gateway, carrier=carrier, catalog=catalog, notifier=notifier, settings=get_settings())


@pytest.fixture
def client(session_factory, gateway, carrier, catalog, notifier):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_carrier] = lambda: carrier
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id="user-1", role="user"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def user_headers():
    return auth_headers("user-1")


@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", "admin")


@pytest.fixture
def make_coupon(db):
    def _make(**fields):
        now = utcnow()
        values = {
            "code": "SAVE10",
            "coupon_type": "standard",
            "discount_type": "percentage",
            "discount_value": Decimal("10"),
            "min_order_amount": Decimal("0"),
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "applicable_products": [],
            "used_count": 0,
        }
        values.update(fields)
        coupon = Coupon(**values)
        db.add(coupon)
        db.commit()
        return coupon
    return _make


def order_payload(payment_method="COD", items=None, shipping_cost="50", coupon_code=None):
    payload = {
        "items": items if items is not None else [{"product_id": "p1", "quantity": 1}],
        "shipping_address": ADDRESS,
        "payment_method": payment_method,
        "shipping_cost": shipping_cost,
    }
    if coupon_code:
        payload["coupon_code"] = coupon_code
    return payload
