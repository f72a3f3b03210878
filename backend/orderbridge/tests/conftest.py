"""Pytest configuration for orderbridge integration tests

WHAT: Shared fixtures for HTTP endpoint and queue/database tests
WHY: Consistent setup, database isolation, no real Market!N / Slack / email calls
REFERENCES:
    - orderbridge/main.py: FastAPI application
    - orderbridge/database.py: Database configuration
    - orderbridge/deps.py: Dependency injection
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before orderbridge modules are imported)
# Must be URL-safe base64-encoded 32-byte string (orderbridge.security)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from orderbridge.services.alert_service import AlertResult  # noqa: E402
from orderbridge.services.marketin_client import KeyValidation, MarketinAPIError  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


# ============================================================================
# Fakes
# ============================================================================

class FakeMarketinClient:
    """Records sent payloads; `errors` are raised in order, then sends succeed."""

    def __init__(self, errors: Optional[List[Exception]] = None, key_valid: Optional[bool] = True):
        self.errors = list(errors or [])
        self.key_valid = key_valid
        self.sent: List[Dict[str, Any]] = []
        self.api_keys: List[Optional[str]] = []

    async def send(self, payload: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        self.sent.append(payload)
        self.api_keys.append(api_key)
        if self.errors:
            raise self.errors.pop(0)
        return {"success": True, "conversionId": f"cv_{len(self.sent)}"}

    async def validate_api_key(self, api_key: str) -> KeyValidation:
        return KeyValidation(valid=self.key_valid, message="checked")


class FakeAlertService:
    def __init__(self, sent: bool = True):
        self.sent = sent
        self.failures: List[Dict[str, Any]] = []
        self.summaries: List[Any] = []
        self.configured_channels = ["slack"] if sent else []

    async def notify_permanent_failure(self, job_id, payload, error, attempts) -> AlertResult:
        self.failures.append({"job_id": job_id, "payload": payload, "error": error, "attempts": attempts})
        if self.sent:
            return AlertResult(sent=True, channels=["slack"])
        return AlertResult(sent=False, reason="not_configured")

    async def notify_periodic_summary(self, stats) -> AlertResult:
        self.summaries.append(stats)
        return AlertResult(sent=self.sent, channels=["slack"] if self.sent else [])

    async def test_configuration(self) -> Dict[str, Any]:
        return {"configured": self.sent, "channels": self.configured_channels, "alertEmail": None, "message": "test"}


def server_error(status_code: int = 503) -> MarketinAPIError:
    return MarketinAPIError(f"Market!N API error: HTTP {status_code}", status_code=status_code)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from orderbridge.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_session_factory(test_db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(test_session_factory) -> Generator[Session, None, None]:
    session = test_session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def fake_marketin():
    return FakeMarketinClient()


@pytest.fixture
def fake_alerts():
    return FakeAlertService()


@pytest.fixture
def app(test_db_session, test_session_factory, fake_marketin, fake_alerts):
    """FastAPI test application with database and outbound clients overridden."""
    from orderbridge.main import create_app
    from orderbridge.database import get_db, get_session_factory
    from orderbridge.deps import get_alert_service, get_marketin_client

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    test_app.dependency_overrides[get_marketin_client] = lambda: fake_marketin
    test_app.dependency_overrides[get_alert_service] = lambda: fake_alerts

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return dict(ADMIN_HEADERS)


@pytest.fixture
def marketin_factory():
    """Build a fake Market!N client: marketin_factory(errors=[...], key_valid=...)."""
    return FakeMarketinClient


@pytest.fixture
def alerts_factory():
    return FakeAlertService


@pytest.fixture
def api_error():
    """Build a MarketinAPIError with an HTTP status: api_error(503)."""
    return server_error
