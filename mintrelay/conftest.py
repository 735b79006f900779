# mintrelay/conftest.py
import os

os.environ.setdefault("ENV", "test")

import pytest
from fastapi.testclient import TestClient

from mintrelay.core.config import Settings
from mintrelay.core.database import init_engine, reset_database
from mintrelay.core.metrics import METRICS
from mintrelay.core.ratelimit import RateLimitConfig
from mintrelay.features.mirror.store import MirrorStore
from mintrelay.features.relay.executor import RelayExecutor
from mintrelay.features.services import build_services
from mintrelay.tests.mocks import CLAIMABLE_FACTORY, FACTORY, MANAGER, TOKEN, FakeChain

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="session", autouse=True)
def test_engine():
    """Shared in-memory SQLite engine for the mirror."""
    return init_engine("sqlite://")


@pytest.fixture(scope="function", autouse=True)
def clean_state(test_engine):
    """Fresh mirror tables and metrics for every test."""
    reset_database()
    METRICS.reset()
    yield


@pytest.fixture
def cfg():
    return Settings(
        ENV="test",
        DATABASE_URL="sqlite://",
        SUBSCRIPTION_MANAGER_ADDRESS=MANAGER,
        STABLE_TOKEN_ADDRESS=TOKEN,
        STABLE_TOKEN_DECIMALS=6,
        COLLECTION_FACTORY_ADDRESS=FACTORY,
        CLAIMABLE_FACTORY_ADDRESS=CLAIMABLE_FACTORY,
        LEDGER_SUPPORTS_PERMIT=True,
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def mirror():
    return MirrorStore()


@pytest.fixture
def executor(chain):
    return RelayExecutor(chain, confirmation_timeout_seconds=0.05, poll_interval_seconds=0.01)


@pytest.fixture
def services(cfg, chain, mirror, executor):
    return build_services(cfg, chain=chain, mirror=mirror, executor=executor)


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def client(services):
    from mintrelay.main import create_app

    app = create_app(services, rate_limit_config=RateLimitConfig(enabled=False))
    with TestClient(app) as test_client:
        yield test_client
