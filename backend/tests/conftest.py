"""Shared pytest fixtures for test suite"""
import pytest
import sys
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import patch
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool
import fakeredis

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from lateless.main import app
from lateless.core.config import settings
from lateless.db.session import Database, get_db
from lateless.models.user import User
from lateless.models.workspace import Workspace
from lateless.models.customer import Customer
from lateless.models.invoice import Invoice
from lateless.db import redis as redis_module


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def database() -> Generator[Database, None, None]:
    """Fresh in-memory database handle per test"""
    test_db = Database(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    test_db.create_all()
    try:
        yield test_db
    finally:
        test_db.dispose()


@pytest.fixture(scope="function")
def db_session(database: Database) -> Generator[Session, None, None]:
    """Session bound to the per-test database"""
    session = database.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis (Lua support needed for rate limiting)"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(database: Database, db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.state.db = database
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()
        app.state.db = None


@pytest.fixture(scope="function")
def stripe_settings():
    """Configured Stripe keys for the duration of a test"""
    with patch.object(settings, "STRIPE_SECRET_KEY", "sk_test_123"):
        with patch.object(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test123"):
            yield settings


@pytest.fixture(scope="function")
def merchant(db_session: Session) -> User:
    """Workspace owner with a connected Stripe account"""
    user = User(
        email="merchant@example.com",
        name="Merchant",
        plan="free",
        stripe_connect_account_id="acct_test123",
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def workspace(db_session: Session, merchant: User) -> Workspace:
    workspace = Workspace(name="Acme Studio", owner_user_id=merchant.id)
    db_session.add(workspace)
    db_session.commit()
    db_session.refresh(workspace)
    return workspace


@pytest.fixture(scope="function")
def customer(db_session: Session, workspace: Workspace) -> Customer:
    customer = Customer(workspace_id=workspace.id, name="Payer", email="payer@example.com")
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture(scope="function")
def make_invoice(db_session: Session, workspace: Workspace, customer: Customer) -> Callable[..., Invoice]:
    """Factory for invoices owned by the test workspace"""
    def _make(**overrides) -> Invoice:
        fields = {
            "workspace_id": workspace.id,
            "customer_id": customer.id,
            "amount": 10000,
            "currency": "eur",
            "status": "pending",
        }
        fields.update(overrides)
        invoice = Invoice(**fields)
        db_session.add(invoice)
        db_session.commit()
        db_session.refresh(invoice)
        return invoice
    return _make


@pytest.fixture(scope="function")
def invoice(make_invoice) -> Invoice:
    return make_invoice(invoice_number="INV-0001")
