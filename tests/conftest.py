import calendar
import itertools
import os
from decimal import Decimal
from types import SimpleNamespace

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_service import config, models, orders, schemas
from order_service.database import Base, get_db
from order_service.errors import GatewayError
from order_service.gateway import StripeGateway, get_gateway, to_cents
from order_service.main import app as fastapi_app

# Setup test database
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

PRODUCTS = [
    {"id": "prod-tee", "name": "T-Shirt", "price": Decimal("29.99"), "stock_quantity": 10},
    {"id": "prod-mug", "name": "Mug", "price": Decimal("50.00"), "stock_quantity": 5},
    {"id": "prod-lamp", "name": "Lamp", "price": Decimal("100.00"), "stock_quantity": 3},
]

ADDRESS = {
    "streetAddress": "1 Main St",
    "city": "Springfield",
    "stateProvince": "IL",
    "zipCode": "62701",
    "country": "US",
}


class FakeGateway:
    """In-memory stand-in for StripeGateway; records every call by operation name."""

    currency = "usd"
    construct_event = StripeGateway.construct_event

    def __init__(self):
        self.intents = {}
        self.charges = {}
        self.refunds = {}
        self.calls = []
        self.fail = set()
        self.refund_status = "succeeded"
        self._ids = itertools.count(1)
        self._refunds_by_key = {}

    def _call(self, operation):
        self.calls.append(operation)
        if operation in self.fail:
            raise GatewayError(operation, "simulated failure")

    def add_charge(self, payment_intent_id, amount_cents, status="succeeded", metadata=None, created=0):
        charge = SimpleNamespace(
            id=f"ch_{next(self._ids)}",
            payment_intent=payment_intent_id,
            amount=amount_cents,
            status=status,
            metadata=metadata or {},
            created=created,
        )
        self.charges[charge.id] = charge
        return charge

    def add_intent(self, intent_id, amount, status="succeeded", metadata=None, created=0, with_charge=True):
        cents = to_cents(amount)
        intent = SimpleNamespace(
            id=intent_id,
            amount=cents,
            amount_received=cents if status == "succeeded" else 0,
            status=status,
            latest_charge=None,
            metadata=metadata or {},
            created=created,
            client_secret=f"{intent_id}_secret",
        )
        self.intents[intent_id] = intent
        if status == "succeeded" and with_charge:
            intent.latest_charge = self.add_charge(intent_id, cents, metadata=metadata, created=created).id
        return intent

    def create_payment_intent(self, amount, capture_method="manual", metadata=None, idempotency_key=None):
        self._call("create_payment_intent")
        return self.add_intent(f"pi_{next(self._ids)}", amount, status="requires_payment_method", metadata=metadata)

    def capture_payment_intent(self, payment_intent_id, idempotency_key=None):
        self._call("capture")
        intent = self.intents[payment_intent_id]
        intent.status = "succeeded"
        intent.amount_received = intent.amount
        intent.latest_charge = self.add_charge(payment_intent_id, intent.amount).id
        return intent

    def cancel_payment_intent(self, payment_intent_id):
        self._call("cancel")
        intent = self.intents[payment_intent_id]
        intent.status = "canceled"
        return intent

    def retrieve_payment_intent(self, payment_intent_id):
        self._call("retrieve_payment_intent")
        if payment_intent_id not in self.intents:
            raise GatewayError("retrieve_payment_intent", f"No such payment_intent: '{payment_intent_id}'")
        return self.intents[payment_intent_id]

    def retrieve_charge(self, charge_id):
        self._call("retrieve_charge")
        return self.charges[charge_id]

    def list_charges(self, payment_intent_id, limit=10):
        self._call("list_charges")
        return [c for c in self.charges.values() if c.payment_intent == payment_intent_id][:limit]

    def iter_recent_charges(self, max_results=500):
        self._call("search_charges")
        return iter(list(self.charges.values())[:max_results])

    def iter_recent_payment_intents(self, max_results=500):
        self._call("search_payment_intents")
        return iter(list(self.intents.values())[:max_results])

    def refund(self, charge_id, amount, reason=None, metadata=None, idempotency_key=None):
        self._call("refund")
        if idempotency_key in self._refunds_by_key:
            return self._refunds_by_key[idempotency_key]
        refund = SimpleNamespace(
            id=f"re_{next(self._ids)}",
            charge=charge_id,
            amount=to_cents(amount),
            status=self.refund_status,
            reason=reason,
            metadata=metadata or {},
        )
        self.refunds[refund.id] = refund
        if idempotency_key:
            self._refunds_by_key[idempotency_key] = refund
        return refund


def epoch(value):
    return calendar.timegm(value.timetuple())


def token_for(user_id, role="customer"):
    return jwt.encode({"sub": user_id, "role": role}, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def auth_headers(user_id="user-1", role="customer"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


STAFF = auth_headers("staff-1", "staff")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    db.add_all(models.Product(store_id="store-1", **p) for p in PRODUCTS)
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def order_payload(*lines, **overrides):
    """Lines are (product_id, price, quantity)."""
    payload = {
        "storeId": "store-1",
        "storeName": "Test Store",
        "items": [
            {"productId": pid, "productName": pid, "price": str(price), "quantity": qty}
            for pid, price, qty in lines
        ],
        "shippingAddress": ADDRESS,
        "paymentMethod": "card",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_order(db):
    """Check out an order through the service layer."""
    def _make(*lines, user_id="user-1", payment_intent_id=None):
        lines = lines or (("prod-tee", "29.99", 2),)
        order = orders.checkout_order(db, schemas.OrderCreate(**order_payload(*lines)), user_id=user_id)
        if payment_intent_id:
            order.payment_intent_id = payment_intent_id
            db.commit()
        return order
    return _make


def stock_of(db, product_id):
    db.expire_all()
    return db.get(models.Product, product_id).stock_quantity
