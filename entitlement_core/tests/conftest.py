"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session / session_factory: SQLite in-memory database,
  fresh per test (handlers commit and roll back for real)
- settings, tier_resolver, reconciler, normalizer
- signing_chain / app_store_verifier: throwaway certificate chain trusted
  by the verifier under test
- stripe_api: in-process Stripe stand-in served through httpx.MockTransport
- app / client: the FastAPI application wired to all of the above
- make_yaml_config: factory for YAML config files in a temp dir
"""

import os
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Set test environment
os.environ.setdefault("ENV", "test")

from entitlement_core.api.dependencies.components import build_components
from entitlement_core.config.settings import Settings
from entitlement_core.database.session import build_engine, build_session_factory
from entitlement_core.entitlements.normalizer import EventNormalizer
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.entitlements.tiers import TierResolver
from entitlement_core.integrations.stripe.billing_client import StripeBillingClient
from entitlement_core.main import create_app
from entitlement_core.models import Base
from entitlement_core.tests.helpers.signing import (
    AUTH_SECRET,
    BUNDLE_ID,
    STRIPE_WEBHOOK_SECRET,
    build_signing_chain,
)
from entitlement_core.tests.helpers.stripe_api import FakeStripeAPI
from entitlement_core.verification.app_store_verifier import AppStoreNotificationVerifier

STRIPE_PRICES = {
    "price_pro_monthly": "pro",
    "price_pro_yearly": "pro",
    "price_team_monthly": "team",
    "price_team_yearly": "team",
}


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """
    Fresh SQLite in-memory database per test.

    Services commit, so the outer-transaction rollback trick does not
    isolate tests; a new engine does.
    """
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Configuration and pure components
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        env="test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        stripe_api_base="https://api.stripe.test",
        stripe_prices=dict(STRIPE_PRICES),
        app_store_bundle_id=BUNDLE_ID,
        web_app_url="https://app.example.test",
        auth_jwt_secret=AUTH_SECRET,
    )


@pytest.fixture
def tier_resolver(settings) -> TierResolver:
    return TierResolver.from_settings(settings)


@pytest.fixture
def reconciler(tier_resolver) -> EntitlementReconciler:
    return EntitlementReconciler(tier_resolver)


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer()


# =============================================================================
# Provider stand-ins
# =============================================================================

@pytest.fixture(scope="session")
def signing_chain():
    """One certificate chain per run; key generation is the slow part."""
    return build_signing_chain()


@pytest.fixture
def app_store_verifier(signing_chain) -> AppStoreNotificationVerifier:
    return AppStoreNotificationVerifier(
        root_certificates=[signing_chain.root_pem],
        bundle_id=BUNDLE_ID,
    )


@pytest.fixture
def stripe_api() -> FakeStripeAPI:
    return FakeStripeAPI()


@pytest.fixture
def stripe_client_factory(settings, stripe_api):
    def _factory() -> StripeBillingClient:
        return StripeBillingClient(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            transport=httpx.MockTransport(stripe_api.handle),
        )
    return _factory


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def components(settings, tier_resolver, app_store_verifier, stripe_client_factory):
    return build_components(
        settings,
        tier_resolver=tier_resolver,
        app_store_verifier=app_store_verifier,
        stripe_client_factory=stripe_client_factory,
    )


@pytest.fixture
def app(settings, components, session_factory):
    return create_app(settings, components=components, session_factory=session_factory)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: HTTP surface end to end")


# =============================================================================
# Config files
# =============================================================================

@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("product_tiers.yml", {"app_store": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
