from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from examprep.core.auth import create_token
from examprep.core.config import Settings
from examprep.core.container import build_container
from examprep.core.database import build_engine, build_sessionmaker, init_db
from examprep.main import create_app
from examprep.stores.memory import MemoryStore
from examprep.stores.sql import SqlStore

SECRET = "test-secret-key-that-is-long-enough-for-hs256"
NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = dict(
        ENVIRONMENT="testing",
        SECRET_KEY=SECRET,
        AUTH_MODE="jwt",
        STORE_BACKEND="memory",
        CONTENT_BACKEND="static",
        BILLING_BACKEND="mock",
        STORAGE_BACKEND="memory",
        RATE_LIMIT_BACKEND="memory",
        DATABASE_URL="sqlite:///:memory:",
        SENTRY_DSN=None,
        PROMETHEUS_ENABLED=False,
        GENERATION_TIMEOUT_SECONDS=5.0,
        EXPLANATION_TIMEOUT_SECONDS=1.0,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sql_store():
    engine = build_engine(make_settings(STORE_BACKEND="sql"))
    init_db(engine)
    store = SqlStore(build_sessionmaker(engine))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Both store implementations behind the same contract."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def container(settings, memory_store, clock):
    return build_container(settings, store=memory_store, clock=clock)


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as c:
        yield c


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_token(user_id, SECRET)}"}
