import json
import os
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

# Point the engine at an in-memory database BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["PLAN_CHANGE_TOPUP"] = "false"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from creditledger import models  # noqa: E402, F401
from creditledger.db import Base, SessionLocal, engine as app_engine, get_engine  # noqa: E402
from creditledger.errors import ProviderUnavailableError  # noqa: E402
from creditledger.services.billing import BillingServices, build_billing_services  # noqa: E402
from creditledger.services.plans import seed_default_plans  # noqa: E402
from creditledger.services.stripe_gateway import StripeGateway, sign_payload  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"

# Create all tables and the plan catalog
Base.metadata.create_all(app_engine)
_seed_session = SessionLocal()
try:
    seed_default_plans(_seed_session)
finally:
    _seed_session.close()


class FakeStripeGateway:
    """In-memory stand-in for the Stripe API with real signature checks."""

    def __init__(self) -> None:
        self.customers: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.unavailable = False
        self.calls: list[str] = []
        self._verifier = StripeGateway(
            "sk_test_fake", WEBHOOK_SECRET, client=MagicMock(name="unused_client")
        )

    def _check(self, call: str) -> None:
        self.calls.append(call)
        if self.unavailable:
            raise ProviderUnavailableError("Stripe unreachable: connection refused")

    def is_configured(self) -> bool:
        return True

    def webhooks_configured(self) -> bool:
        return True

    def add_customer(self, customer_id: str, email: str) -> dict[str, Any]:
        customer = {"id": customer_id, "object": "customer", "email": email}
        self.customers[customer_id] = customer
        return customer

    def put_subscription(self, subscription: dict[str, Any]) -> None:
        self.subscriptions[subscription["id"]] = subscription

    def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        self._check("find_customer_by_email")
        for customer in self.customers.values():
            if customer["email"] == email:
                return customer
        return None

    def retrieve_customer(self, customer_id: str) -> dict[str, Any] | None:
        self._check("retrieve_customer")
        return self.customers.get(customer_id)

    def list_subscriptions(
        self, customer_id: str, status: str = "all", limit: int = 10
    ) -> list[dict[str, Any]]:
        self._check("list_subscriptions")
        return [s for s in self.subscriptions.values() if s["customer"] == customer_id]

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        self._check("retrieve_subscription")
        return self.subscriptions.get(subscription_id)

    def construct_event(
        self, payload: bytes, signature_header: str, now: float | None = None
    ) -> dict[str, Any]:
        return self._verifier.construct_event(payload, signature_header, now=now)

    def close(self) -> None:
        pass


@pytest.fixture(scope="session")
def engine():
    return app_engine


@pytest.fixture()
def db_session(engine):
    """Session on the shared StaticPool engine so all work sees the same data."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def isolated_db():
    """A private in-memory database, for tests that walk every subscription."""
    private_engine = get_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(private_engine)
    Session = sessionmaker(bind=private_engine, autoflush=False, autocommit=False)
    session = Session()
    seed_default_plans(session)
    try:
        yield session
    finally:
        session.close()
        private_engine.dispose()


@pytest.fixture()
def user_id() -> str:
    return f"user-{uuid.uuid4().hex}"


@pytest.fixture()
def email(user_id: str) -> str:
    return f"{user_id}@example.com"


@pytest.fixture()
def fake_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture()
def billing(fake_gateway: FakeStripeGateway) -> BillingServices:
    return build_billing_services(gateway=fake_gateway)  # type: ignore[arg-type]


@pytest.fixture()
def period_start() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


@pytest.fixture()
def stripe_subscription() -> Callable[..., dict[str, Any]]:
    def _build(
        subscription_id: str,
        customer_id: str,
        start: datetime,
        end: datetime | None = None,
        status: str = "active",
        unit_amount: int = 3999,
        price_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        end = end or start + timedelta(days=30)
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "created": int(start.timestamp()),
            "current_period_start": int(start.timestamp()),
            "current_period_end": int(end.timestamp()),
            "metadata": metadata or {},
            "items": {
                "data": [
                    {
                        "id": f"si_{subscription_id}",
                        "price": {
                            "id": price_id or f"price_{unit_amount}",
                            "unit_amount": unit_amount,
                            "metadata": {},
                        },
                    }
                ]
            },
        }

    return _build


@pytest.fixture()
def client(db_session, billing):
    """Create a test client with database and billing dependency overrides."""
    from creditledger.api.deps import get_db, get_ingestor, get_reconciler
    from creditledger.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reconciler] = lambda: billing.reconciler
    app.dependency_overrides[get_ingestor] = lambda: billing.ingestor

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def signed_event() -> Callable[..., tuple[bytes, str]]:
    """Serialize an event and sign it the way Stripe does."""

    def _build(event: dict[str, Any], timestamp: float | None = None) -> tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        ts = int(time.time() if timestamp is None else timestamp)
        return body, sign_payload(body, WEBHOOK_SECRET, ts)

    return _build


@pytest.fixture()
def event_factory() -> Callable[..., dict[str, Any]]:
    def _build(event_type: str, obj: dict[str, Any], event_id: str | None = None) -> dict[str, Any]:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _build
