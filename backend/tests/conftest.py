"""Shared pytest fixtures for test suite"""
import json
import os
import sys
import uuid
from itertools import count
from pathlib import Path
from typing import Any, Dict, Generator, Optional
from unittest.mock import patch

import fakeredis
import pytest

# Test settings must be in place before the application is imported
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["NOTIFIER_URL"] = ""
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from sadqa.core.errors import GatewayError
from sadqa.core.signatures import sign_payload
from sadqa.db import redis as redis_module
from sadqa.db.session import get_db, get_session_factory
from sadqa.main import app
from sadqa.models import Base
from sadqa.models.payment_record import PaymentRecord
from sadqa.models.subscription import Subscription
from sadqa.services.gateway_client import get_gateway_client

WEBHOOK_SECRET = "whsec_test_secret"
KEY_SECRET = "rzp_test_secret"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeGateway:
    """In-memory stand-in for RazorpayClient"""

    def __init__(self):
        self.payments: Dict[str, Any] = {}
        self.subscriptions: Dict[str, Any] = {}
        self.calls = []
        self._ids = count(1)

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        self.calls.append(("fetch_payment", payment_id))
        value = self.payments.get(payment_id)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise GatewayError("The id provided does not exist", status_code=400)
        return value

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.calls.append(("fetch_subscription", subscription_id))
        value = self.subscriptions.get(subscription_id)
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise GatewayError("The id provided does not exist", status_code=400)
        return value

    async def create_order(self, amount_paise, receipt, currency="INR", notes=None):
        self.calls.append(("create_order", receipt))
        return {"id": self._next("order"), "amount": amount_paise, "currency": currency, "receipt": receipt}

    async def create_plan(self, period, interval, amount_paise, name, currency="INR", notes=None):
        self.calls.append(("create_plan", period, interval, amount_paise))
        return {"id": self._next("plan"), "period": period, "interval": interval}

    async def create_subscription(self, plan_id, total_count, notes=None):
        self.calls.append(("create_subscription", plan_id, total_count, notes))
        return {"id": self._next("sub"), "status": "created", "short_url": "https://rzp.io/i/test", "notes": notes}

    async def pause_subscription(self, subscription_id):
        self.calls.append(("pause_subscription", subscription_id))
        return {"id": subscription_id, "status": "paused"}

    async def resume_subscription(self, subscription_id):
        self.calls.append(("resume_subscription", subscription_id))
        return {"id": subscription_id, "status": "active"}

    async def cancel_subscription(self, subscription_id, at_cycle_end=False):
        self.calls.append(("cancel_subscription", subscription_id))
        return {"id": subscription_id, "status": "cancelled"}

    async def refund_payment(self, payment_id, amount_paise=None):
        self.calls.append(("refund_payment", payment_id, amount_paise))
        return {"id": self._next("rfnd"), "payment_id": payment_id, "amount": amount_paise}

    def called(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def session_factory(db_session):
    """Session factory bound to the test database (used for per-item sessions)"""
    return TestSessionLocal


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "get_redis_client", return_value=fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, fake_gateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and a fake gateway"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal
    app.dependency_overrides[get_gateway_client] = lambda: fake_gateway

    try:
        # Disable OpenTelemetry in tests
        with patch("sadqa.core.otel.initialize_otel", return_value=False):
            with patch("sadqa.core.otel.setup_otel_logging", return_value=False):
                with patch("sadqa.core.otel.instrument_sqlalchemy"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        app.dependency_overrides.clear()


def login(test_client: TestClient, user_id: str = "user_1", role: str = "donor") -> str:
    """Create a session in (fake) Redis and attach its cookie to the client"""
    session_id = uuid.uuid4().hex
    redis_module.set_session(session_id, user_id, role)
    test_client.cookies.set("session_id", session_id)
    return session_id


@pytest.fixture(scope="function")
def donor_client(client):
    login(client, "donor_1", "donor")
    return client


@pytest.fixture(scope="function")
def admin_client(client):
    login(client, "admin_1", "admin")
    return client


# ============================================================================
# DATA HELPERS
# ============================================================================

def make_subscription(db: Session, **overrides) -> Subscription:
    values = dict(
        user_id="donor_1",
        user_name="Test Donor",
        user_email="donor@example.com",
        cadence="monthly",
        amount_paise=50000,
        status="active",
        total_cycles=12,
        razorpay_subscription_id=f"sub_{uuid.uuid4().hex[:10]}",
    )
    values.update(overrides)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def make_payment_record(db: Session, **overrides) -> PaymentRecord:
    values = dict(
        kind="donation",
        amount_paise=10000,
        status="pending",
        payer_name="Test Donor",
        payer_email="donor@example.com",
        audit_status="unverified",
    )
    values.update(overrides)
    record = PaymentRecord(**values)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


# ============================================================================
# WEBHOOK HELPERS
# ============================================================================

def signed_webhook(event: Dict[str, Any], secret: str = WEBHOOK_SECRET):
    """Return (raw body, headers) for a gateway delivery"""
    body = json.dumps(event).encode("utf-8")
    return body, {"Content-Type": "application/json", "X-Razorpay-Signature": sign_payload(body, secret)}


def post_webhook(test_client: TestClient, event: Dict[str, Any], secret: str = WEBHOOK_SECRET):
    body, headers = signed_webhook(event, secret)
    return test_client.post("/api/webhooks/razorpay", content=body, headers=headers)


def payment_captured_event(
    event_id: str,
    receipt: Optional[str] = None,
    order_id: str = "order_test",
    payment_id: str = "pay_test",
    amount: int = 10000,
    event_type: str = "payment.captured"
) -> Dict[str, Any]:
    return {
        "id": event_id,
        "entity": "event",
        "event": event_type,
        "payload": {
            "payment": {"entity": {"id": payment_id, "order_id": order_id, "amount": amount, "status": "captured"}},
            "order": {"entity": {"id": order_id, "receipt": receipt, "amount": amount}},
        },
    }


def subscription_event(
    event_type: str,
    event_id: str,
    gateway_subscription_id: Optional[str],
    local_id: Optional[int] = None,
    payment: Optional[Dict[str, Any]] = None,
    **entity_fields
) -> Dict[str, Any]:
    entity = {"id": gateway_subscription_id, "status": event_type.split(".")[1]}
    if local_id is not None:
        entity["notes"] = {"subscription_id": str(local_id)}
    entity.update(entity_fields)
    payload = {"subscription": {"entity": entity}}
    if payment:
        payload["payment"] = {"entity": payment}
    return {"id": event_id, "entity": "event", "event": event_type, "payload": payload}
