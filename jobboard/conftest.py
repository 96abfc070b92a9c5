# jobboard/conftest.py
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")

from jobboard.core.config import settings
from jobboard.core.database import init_engine, create_all_tables, dispose_engine
from jobboard.features.billing.service import check_cache
from jobboard.features.refresh.session import registry


TEST_DB_URL = "sqlite://"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Tests never talk to a real Stripe account or require real JWTs."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", None)
    yield


@pytest.fixture(autouse=True)
def db():
    """
    Fresh in-memory SQLite database per test.

    One shared connection (StaticPool), so sessions opened from worker
    threads see the same tables.
    """
    engine = init_engine(TEST_DB_URL)
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture(autouse=True)
def clear_caches():
    check_cache.invalidate()
    registry.clear()
    yield
    check_cache.invalidate()
    registry.clear()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
