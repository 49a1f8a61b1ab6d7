"""
Root test configuration and fixtures.

Every test gets a fresh SQLite in-memory database, a frozen clock and an
EntitlementEngine wired against both, so lifecycle tests can move time
forward deterministically.
"""

import copy
import json
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from tenant_entitlements.config.settings import EngineSettings, reset_settings
from tenant_entitlements.db_base import Base
from tenant_entitlements.entitlements.catalog import (
    DEFAULT_CATALOG_PATH,
    EntitlementCatalog,
    reset_entitlement_catalog,
)
from tenant_entitlements.entitlements.engine import EntitlementEngine
from tenant_entitlements.platform import audit  # noqa: F401 - Audit log model
from tenant_entitlements.platform.tenant_guard import TenantScope
from tenant_entitlements.repositories.audit_repository import AuditRepository
from tenant_entitlements.repositories.subscription_store import SqlAlchemySubscriptionStore
from tenant_entitlements import models  # noqa: F401 - Registers tables

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Keep process-wide caches from leaking between tests."""
    reset_entitlement_catalog()
    reset_settings()
    yield
    reset_entitlement_catalog()
    reset_settings()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autoflush=False, bind=db_engine)


@pytest.fixture
def store(session_factory):
    return SqlAlchemySubscriptionStore(session_factory)


@pytest.fixture
def audit_repo(session_factory):
    return AuditRepository(session_factory)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def catalog():
    return EntitlementCatalog.load(DEFAULT_CATALOG_PATH)


@pytest.fixture
def catalog_document():
    """Deep copy of the bundled catalog JSON, for tests that tweak it."""
    with open(DEFAULT_CATALOG_PATH, "r") as f:
        return copy.deepcopy(json.load(f))


@pytest.fixture
def settings():
    return EngineSettings().validate()


@pytest.fixture
def engine(store, catalog, settings, clock):
    return EntitlementEngine(
        store,
        catalog=catalog,
        settings=settings,
        clock=clock,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def scope():
    return TenantScope(
        tenant_id="tenant-a",
        user_id="user-1",
        user_email="alice@contoso.com",
        correlation_id="corr-a",
    )


@pytest.fixture
def make_event():
    """Factory for normalised billing event payloads, timestamped relative to T0."""
    counter = {"n": 0}

    def _make(event_type: str, offset: timedelta = timedelta(hours=1), **fields):
        counter["n"] += 1
        payload = {
            "event_id": fields.pop("event_id", f"evt_{counter['n']}"),
            "type": event_type,
            "timestamp": (T0 + offset).isoformat(),
            "billing_customer_id": fields.pop("billing_customer_id", "cus_a"),
        }
        payload.update(fields)
        return payload

    return _make
