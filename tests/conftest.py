"""Pytest fixtures for storefront tests."""

import json
import os
from decimal import Decimal

# The module-level engine must not point at a real server during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from storefront import checkout, models, schemas
from storefront.config import ALGORITHM, SECRET_KEY, CarrierConfig, GatewayConfig
from storefront.database import Base, build_engine, get_db
from storefront.main import app, get_gateway_adapter, get_shipment_tracker
from storefront.payments import PaymentGatewayAdapter, signature_for
from storefront.shipments import ShipmentTracker

SERVER_KEY = "SB-Mid-server-test-key"
CUSTOMER_ID = "user-customer-1"
OTHER_CUSTOMER_ID = "user-customer-2"
ADMIN_ID = "user-admin-1"

INLINE_ADDRESS = {
    "receiver_name": "Siti Aminah",
    "receiver_phone": "081234567890",
    "address_line1": "Jl. Melati No. 7",
    "address_line2": "RT 02 RW 05",
    "city": "Bandung",
    "province": "Jawa Barat",
    "postal_code": "40115",
}


class FakeGateway:
    """httpx MockTransport handler standing in for the payment gateway."""

    def __init__(self):
        self.requests = []
        self.queued = []
        self.timeout = False

    def queue(self, status_code, payload):
        self.queued.append((status_code, payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        body = json.loads(request.content)
        self.requests.append({"url": str(request.url), "headers": dict(request.headers), "body": body})
        if self.queued:
            status_code, payload = self.queued.pop(0)
            return httpx.Response(status_code, json=payload)
        token = f"snap-{len(self.requests)}"
        return httpx.Response(201, json={
            "token": token,
            "redirect_url": f"https://app.sandbox.midtrans.com/snap/v4/redirection/{token}",
        })


class FakeCarrier:
    """httpx MockTransport handler standing in for the carrier API."""

    def __init__(self):
        self.requests = []
        self.queued = []
        self.timeout = False

    def queue(self, status_code, payload):
        self.queued.append((status_code, payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.timeout:
            raise httpx.ConnectTimeout("timed out", request=request)
        body = json.loads(request.content)
        self.requests.append({"url": str(request.url), "headers": dict(request.headers), "body": body})
        if self.queued:
            status_code, payload = self.queued.pop(0)
            return httpx.Response(status_code, json=payload)
        number = len(self.requests)
        return httpx.Response(200, json={
            "success": True,
            "id": f"carrier-order-{number}",
            "price": 18000,
            "courier": {
                "tracking_id": f"tracking-{number}",
                "waybill_id": None,
                "company": body["courier_company"],
                "type": body["courier_type"],
                "link": None,
            },
        })


def mock_client_factory(handler):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=5.0)


@pytest.fixture
def engine(tmp_path):
    """On-disk SQLite database per test, so worker threads share it."""
    engine = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_carrier():
    return FakeCarrier()


@pytest.fixture
def gateway_config():
    return GatewayConfig(server_key=SERVER_KEY, base_url="https://gateway.test")


@pytest.fixture
def carrier_config():
    return CarrierConfig(api_key="carrier-test-key", base_url="https://carrier.test")


@pytest.fixture
def gateway_adapter(gateway_config, fake_gateway):
    return PaymentGatewayAdapter(gateway_config, client_factory=mock_client_factory(fake_gateway))


@pytest.fixture
def shipment_tracker(carrier_config, fake_carrier):
    return ShipmentTracker(carrier_config, client_factory=mock_client_factory(fake_carrier))


@pytest.fixture
def make_variant(db):
    """Create a product variant with its product and return it."""
    counter = {"n": 0}

    def _make_variant(
        sku=None,
        stock=10,
        base_price="100000",
        price_additional=None,
        price_override=None,
        name="Gamis Aisyah",
        size="L",
        color="Navy",
        active=True,
    ):
        counter["n"] += 1
        product = models.Product(name=name, base_price=Decimal(base_price))
        variant = models.ProductVariant(
            product=product,
            sku=sku or f"SKU-{counter['n']:03d}",
            size=size,
            color=color,
            stock=stock,
            price_additional=Decimal(price_additional) if price_additional is not None else None,
            price_override=Decimal(price_override) if price_override is not None else None,
            active=active,
        )
        db.add_all([product, variant])
        db.commit()
        return variant

    return _make_variant


@pytest.fixture
def stock_of(session_factory):
    """Read a SKU's stock in a fresh session."""
    def _stock_of(sku):
        session = session_factory()
        try:
            return session.query(models.ProductVariant).filter_by(sku=sku).one().stock
        finally:
            session.close()
    return _stock_of


def checkout_request(lines, shipping_cost="20000", **overrides):
    """Build a CheckoutRequest from ``[(sku, qty), ...]`` with the inline address."""
    data = {
        "items": [{"sku": sku, "quantity": qty} for sku, qty in lines],
        "shipping_address": dict(INLINE_ADDRESS),
        "shipping_cost": shipping_cost,
        "courier_code": "jne",
        "courier_service": "reg",
    }
    data.update(overrides)
    return schemas.CheckoutRequest(**data)


@pytest.fixture
def place_order(db):
    """Place an order for the default customer."""
    def _place_order(lines, shipping_cost="20000", user_id=CUSTOMER_ID, **overrides):
        return checkout.place_order(
            db, user_id, checkout_request(lines, shipping_cost, **overrides),
            customer_email="siti@example.com",
        )
    return _place_order


def signed_callback(transaction_id, transaction_status, gross_amount, status_code="200",
                    fraud_status=None, server_key=SERVER_KEY):
    """Gateway notification body with a valid signature."""
    payload = {
        "order_id": transaction_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "transaction_status": transaction_status,
        "signature_key": signature_for(transaction_id, status_code, gross_amount, server_key),
        "payment_type": "bank_transfer",
    }
    if fraud_status is not None:
        payload["fraud_status"] = fraud_status
    return payload


def make_token(user_id, role="CUSTOMER", email=None):
    claims = {"sub": user_id, "email": email or f"{user_id}@example.com", "role": role}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def auth_headers(user_id=CUSTOMER_ID, role="CUSTOMER"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER_ID)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, role="ADMIN")


@pytest.fixture
def client(session_factory, gateway_adapter, shipment_tracker):
    """TestClient bound to the per-test database and the fake gateway and carrier."""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_adapter] = lambda: gateway_adapter
    app.dependency_overrides[get_shipment_tracker] = lambda: shipment_tracker
    yield TestClient(app)
    app.dependency_overrides.clear()
