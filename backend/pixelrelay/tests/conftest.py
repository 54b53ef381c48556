"""Pytest configuration for pixelrelay tests

WHAT: Shared fixtures for HTTP endpoint, pipeline and service tests
WHY: Consistent test setup: isolated in-memory database, fake geo resolver
     and fake CAPI forwarder so no test ever touches the network
REFERENCES:
    - pixelrelay/main.py: FastAPI application
    - pixelrelay/deps.py: Dependency injection (overridden here)
    - pixelrelay/services/ingestion_pipeline.py: Pipeline under test
"""

import base64
import hashlib
import hmac
import os
from datetime import datetime
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (pixelrelay.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

WEBHOOK_SECRET = "test-shopify-secret"
CAPI_ACCESS_TOKEN = "EAAB-test-token"


# ============================================================================
# Fakes
# ============================================================================

class FakeForwarder:
    """Records forward() calls instead of hitting graph.facebook.com."""

    def __init__(self, error: Optional[Exception] = None):
        self.calls: List[dict] = []
        self.error = error

    async def forward(self, credentials, event, app_id=None):
        self.calls.append({"credentials": credentials, "event": event, "app_id": app_id})
        if self.error:
            raise self.error
        return {"events_received": 1}


class FakeGeoResolver:
    """Returns a fixed location and records looked-up IPs."""

    def __init__(self, location=None):
        from pixelrelay.services.geo_service import GeoLocation

        self.location = location or GeoLocation(
            city="Amsterdam",
            region="North Holland",
            country="Netherlands",
            country_code="NL",
            timezone="Europe/Amsterdam",
        )
        self.calls: List[str] = []

    async def resolve(self, ip):
        self.calls.append(ip)
        return self.location


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """X-Shopify-Hmac-SHA256 value for a raw body."""
    return base64.b64encode(hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()).decode("utf-8")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine (one shared connection)."""
    # StaticPool: the probe runs in a worker thread and must see the same DB
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from pixelrelay.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def fake_forwarder() -> FakeForwarder:
    return FakeForwarder()


@pytest.fixture
def fake_geo() -> FakeGeoResolver:
    return FakeGeoResolver()


@pytest.fixture
def test_settings():
    from pixelrelay.deps import Settings

    return Settings(
        _env_file=None,
        ENVIRONMENT="test",
        SHOPIFY_API_SECRET=WEBHOOK_SECRET,
        DB_PROBE_TIMEOUT_SECONDS=1.0,
        RETRY_AFTER_SECONDS=5,
    )


@pytest.fixture
def app(test_db_session, fake_forwarder, fake_geo, test_settings):
    """Create FastAPI test application."""
    from pixelrelay.main import create_app
    from pixelrelay.database import get_db
    from pixelrelay.deps import get_forwarder, get_geo_resolver, get_settings

    test_app = create_app()

    def override_get_db():
        # Not closed here: fixtures keep using the session after the request
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_forwarder] = lambda: fake_forwarder
    test_app.dependency_overrides[get_geo_resolver] = lambda: fake_geo
    test_app.dependency_overrides[get_settings] = lambda: test_settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_shop(test_db_session):
    from pixelrelay.models import Shop

    shop = Shop(shop_domain="mystore.myshopify.com", created_at=datetime.utcnow())
    test_db_session.add(shop)
    test_db_session.commit()
    test_db_session.refresh(shop)
    return shop


@pytest.fixture
def test_app_record(test_db_session, test_shop):
    """Tenant with public id pixel_1 and no settings row (all defaults)."""
    from pixelrelay.models import App

    record = App(app_id="pixel_1", name="My Store Pixel", shop_id=test_shop.id, created_at=datetime.utcnow())
    test_db_session.add(record)
    test_db_session.commit()
    test_db_session.refresh(record)
    return record


@pytest.fixture
def make_app_settings(test_db_session):
    """Factory: attach an AppSettings row to an app."""
    from pixelrelay.models import AppSettings
    from pixelrelay.security import encrypt_secret

    def _make(app_record, forwarding: bool = True, access_token: Optional[str] = CAPI_ACCESS_TOKEN, **overrides):
        values = dict(
            app_id=app_record.id,
            record_ip=True,
            record_location=True,
            record_session=True,
            meta_pixel_id="123456789" if forwarding else None,
            meta_access_token_enc=(
                encrypt_secret(access_token, context="test") if forwarding and access_token else None
            ),
            meta_pixel_enabled=forwarding,
            meta_verified=forwarding,
        )
        values.update(overrides)
        settings = AppSettings(**values)
        test_db_session.add(settings)
        test_db_session.commit()
        return settings

    return _make


@pytest.fixture
def forwarding_app(test_app_record, make_app_settings):
    """Tenant with Meta forwarding enabled, verified and credentialed."""
    make_app_settings(test_app_record, forwarding=True)
    return test_app_record


# ============================================================================
# Notes
# ============================================================================
#
# USAGE:
#
# # HTTP test
# def test_pageview(client, test_app_record):
#     response = client.post("/track", json={"appId": "pixel_1", "eventName": "pageview"})
#     assert response.status_code == 200
#
# # Forwarding test
# def test_forwarded(client, forwarding_app, fake_forwarder):
#     client.post("/track", json={"appId": "pixel_1", "eventName": "AddToCart"})
#     assert fake_forwarder.calls[0]["event"].event_name == "AddToCart"
#
# ============================================================================
