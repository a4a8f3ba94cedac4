"""Shared pytest fixtures for test suite"""
import copy
import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Generator
from unittest.mock import patch

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["EVENT_REPLAY_INTERVAL"] = "0"
os.environ["SUBSCRIPTION_EXPIRY_INTERVAL"] = "0"

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from slumber_billing.api.subscriptions import get_processor_client
from slumber_billing.core.errors import ProcessorRequestError
from slumber_billing.db import redis as redis_module
from slumber_billing.db.session import get_db
from slumber_billing.main import app
from slumber_billing.models import Base
from slumber_billing.services.reconciler import Reconciler
from slumber_billing.services.webhook_ingest import WebhookIngest

WEBHOOK_SECRET = "whsec_test_secret"
PORTAL_URL = "https://billing.stripe.com/p/session/test_portal"

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


def ts(dt: datetime) -> int:
    return int(dt.timestamp())


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header value for a raw body"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeProcessor:
    """In-memory stand-in for ProcessorClient, returning Stripe-shaped dicts"""

    def __init__(self):
        self.sessions = {}
        self.subscriptions = {}
        self.customers = {}
        self.portal_url = PORTAL_URL
        self.calls = []
        self.failures = {}
        self.single_attempt = False

    def without_retries(self):
        self.single_attempt = True
        return self

    def fail(self, operation: str, exc: Exception):
        self.failures[operation] = exc

    def _call(self, operation: str, *args):
        self.calls.append((operation,) + args)
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def retrieve_checkout_session(self, session_id):
        self._call("retrieve_checkout_session", session_id)
        if session_id not in self.sessions:
            raise ProcessorRequestError("retrieve_checkout_session", f"No such checkout.session: {session_id}")
        session = copy.deepcopy(self.sessions[session_id])
        # expand=["subscription"]
        if isinstance(session.get("subscription"), str) and session["subscription"] in self.subscriptions:
            session["subscription"] = copy.deepcopy(self.subscriptions[session["subscription"]])
        return session

    def list_subscriptions(self, customer_id):
        self._call("list_subscriptions", customer_id)
        return [copy.deepcopy(s) for s in self.subscriptions.values() if s.get("customer") == customer_id]

    def retrieve_subscription(self, subscription_id):
        self._call("retrieve_subscription", subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProcessorRequestError("retrieve_subscription", f"No such subscription: {subscription_id}")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def retrieve_customer(self, customer_id):
        self._call("retrieve_customer", customer_id)
        return copy.deepcopy(self.customers.get(customer_id, {"id": customer_id, "metadata": {}}))

    def create_portal_session(self, customer_id, return_url):
        self._call("create_portal_session", customer_id, return_url)
        return self.portal_url


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


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture(scope="function")
def reconciler(db_session: Session) -> Reconciler:
    return Reconciler(db_session)


@pytest.fixture(scope="function")
def ingest(db_session: Session, processor: FakeProcessor, reconciler: Reconciler) -> WebhookIngest:
    return WebhookIngest(
        db_session,
        processor,
        reconciler,
        webhook_secret=WEBHOOK_SECRET,
        portal_return_url="http://localhost:3000/settings?tab=subscription",
    )


@pytest.fixture(scope="function")
def client(db_session: Session, processor: FakeProcessor) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and fake processor"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_processor_client] = lambda: processor
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# Stripe-shaped object builders
# ============================================================================

@pytest.fixture
def make_subscription():
    def _make(
        sub_id="sub_123",
        customer="cus_123",
        status="active",
        period_end=None,
        cancel_at_period_end=False,
        canceled_at=None,
        created=None,
        metadata=None,
        period_end_on_items=False,
    ):
        now = datetime.now(timezone.utc)
        period_end = period_end if period_end is not None else now + timedelta(days=30)
        subscription = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": cancel_at_period_end,
            "canceled_at": ts(canceled_at) if canceled_at else None,
            "created": ts(created) if created else ts(now - timedelta(days=1)),
            "metadata": metadata or {},
            "items": {"object": "list", "data": [{"id": f"si_{sub_id}"}]},
        }
        if period_end_on_items:
            subscription["items"]["data"][0]["current_period_end"] = ts(period_end)
        else:
            subscription["current_period_end"] = ts(period_end)
        return subscription
    return _make


@pytest.fixture
def make_session():
    def _make(
        session_id="cs_test_123",
        customer="cus_123",
        subscription="sub_123",
        status="complete",
        payment_status="paid",
        mode="subscription",
        client_reference_id=None,
        metadata=None,
    ):
        return {
            "id": session_id,
            "object": "checkout.session",
            "customer": customer,
            "subscription": subscription,
            "status": status,
            "payment_status": payment_status,
            "mode": mode,
            "client_reference_id": client_reference_id,
            "metadata": metadata or {},
        }
    return _make


@pytest.fixture
def signed_event():
    """Build a webhook body and a valid Stripe-Signature header for it"""
    def _sign(event_type, data_object, event_id=None, secret=WEBHOOK_SECRET, timestamp=None):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
        payload = json.dumps(event).encode("utf-8")
        return payload, sign(payload, secret, timestamp)
    return _sign


@pytest.fixture
def sign_payload():
    return sign
