"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import Mock

import pytest

# Configure the app before it is imported: in-memory database, no background sync
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CATALOG_SYNC_INTERVAL_SECONDS"] = "0"
os.environ["STRIPE_MODE"] = "test"
os.environ["STRIPE_TEST_SECRET_KEY"] = "sk_test_dummy"

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from subpirate.api.deps import get_gateway
from subpirate.core.config import Settings, get_settings
from subpirate.db.session import get_db
from subpirate.main import app
from subpirate.models import Base
from subpirate.models.user import User
from subpirate.services.stripe_gateway import StripeGateway

from factories import FALLBACK_WEBHOOK_SECRET, PRIMARY_WEBHOOK_SECRET

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Enforce foreign keys the way Postgres does
@event.listens_for(test_engine, "connect")
def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# Spans are kept in memory so tests can inspect them
span_exporter = InMemorySpanExporter()
_tracer_provider = TracerProvider()
_tracer_provider.add_span_processor(SimpleSpanProcessor(span_exporter))
trace.set_tracer_provider(_tracer_provider)


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
def finished_spans() -> InMemorySpanExporter:
    span_exporter.clear()
    return span_exporter


@pytest.fixture(scope="function")
def gateway() -> Mock:
    """Stripe gateway double; bound() hands back the same mock"""
    mock_gateway = Mock(spec=StripeGateway)
    mock_gateway.live_mode = False
    mock_gateway.bound.return_value = mock_gateway
    return mock_gateway


@pytest.fixture(scope="function")
def test_settings() -> Settings:
    return Settings(
        DATABASE_URL=TEST_DATABASE_URL,
        STRIPE_MODE="test",
        STRIPE_TEST_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=PRIMARY_WEBHOOK_SECRET,
        STRIPE_WEBHOOK_SECRET_TEST=FALLBACK_WEBHOOK_SECRET,
        WEBHOOK_TIMEOUT_SECONDS=20.0,
        CATALOG_SYNC_INTERVAL_SECONDS=0,
    )


@pytest.fixture(scope="function")
def client(db_session: Session, gateway: Mock, test_settings: Settings) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked gateway and test settings"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: test_settings

    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(id="u_1", email="pirate@example.com", full_name="Test Pirate")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user
