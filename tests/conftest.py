"""Pytest fixtures for testing"""

import pytest
from datetime import date
from decimal import Decimal
from typing import Generator

import httpx
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from lease_billing.api.dependencies import get_dispatcher, get_gateway_client, get_session_factory
from lease_billing.api.main import create_app
from lease_billing.domain.exceptions import GatewayRateLimitedError, GatewayUnavailableError
from lease_billing.domain.models import BillingEvent
from lease_billing.domain.retry import RetryPolicy
from lease_billing.infrastructure.clients.gateway import GatewayClient
from lease_billing.infrastructure.database.models import Base, PaymentMethod
from lease_billing.infrastructure.database.repositories import PaymentRepository, ScheduleRepository
from lease_billing.infrastructure.database.session import get_db
from lease_billing.services.dispatcher import BillingEventDispatcher
from mock.gateway_server import main as gateway_server


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


# pysqlite needs explicit BEGIN for SAVEPOINT to behave
@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


class RecordingSink:
    """Notification sink that keeps delivered events in memory"""

    def __init__(self):
        self.delivered: list[BillingEvent] = []

    async def deliver(self, event: BillingEvent) -> None:
        self.delivered.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.delivered]


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db: Session) -> sessionmaker:
    """Factory for the per-schedule sessions the billing clock opens"""
    return TestingSessionLocal


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def dispatcher(sink: RecordingSink) -> BillingEventDispatcher:
    return BillingEventDispatcher(sink)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Gateway retry policy without backoff delays"""
    return RetryPolicy(
        max_attempts=3,
        backoff_base=0.0,
        retryable=(GatewayUnavailableError, GatewayRateLimitedError),
    )


@pytest.fixture
def gateway() -> GatewayClient:
    """Gateway client wired in-process to the mock gateway"""
    gateway_server.reset()
    return GatewayClient(
        base_url="http://gateway.test",
        api_key="sk_test",
        transport=httpx.ASGITransport(app=gateway_server.app),
    )


@pytest.fixture
def client(
    db: Session, gateway: GatewayClient, dispatcher: BillingEventDispatcher, session_factory: sessionmaker
) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    return TestClient(app)


@pytest.fixture
def make_payment(db: Session):
    """Insert a payment with sensible defaults"""

    def _make(**overrides):
        fields = {
            "lease_agreement_id": "lease_1",
            "payer_id": "tenant_1",
            "payment_type": "rent",
            "amount": Decimal("1000.00"),
            "due_date": date.today(),
            "description": "Monthly rent payment",
        }
        fields.update(overrides)
        return PaymentRepository(db).create(**fields)

    return _make


@pytest.fixture
def make_method(db: Session):
    """Insert a default card for a payer"""

    def _make(user_id="tenant_1", gateway_id="pm_card_visa", is_default=True, exp_year=2099, exp_month=12):
        method = PaymentMethod(
            user_id=user_id,
            gateway_payment_method_id=gateway_id,
            method_type="card",
            last_four="4242",
            brand="visa",
            exp_month=exp_month,
            exp_year=exp_year,
            is_default=is_default,
        )
        db.add(method)
        db.flush()
        return method

    return _make


@pytest.fixture
def make_schedule(db: Session):
    """Insert an active monthly rent schedule"""

    def _make(**overrides):
        start = overrides.pop("start_date", date.today())
        fields = {
            "lease_agreement_id": "lease_1",
            "payer_id": "tenant_1",
            "payment_type": "rent",
            "amount": Decimal("1200.00"),
            "frequency": "monthly",
            "start_date": start,
            "next_payment_date": start,
            "day_of_month": start.day,
            "is_active": True,
            "auto_pay": True,
        }
        fields.update(overrides)
        return ScheduleRepository(db).create(**fields)

    return _make
