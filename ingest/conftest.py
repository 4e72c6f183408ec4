# ingest/conftest.py
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

# Add repo root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from ingest.core.config import Settings
from ingest.core.database import build_engine, create_all_tables
from ingest.core.memory import MemoryDatabase
from ingest.core.metrics import METRICS

APP_TOKEN = "test-app-token"
CRON_SECRET = "test-cron-secret"

# 2026-03-04 is a Wednesday; 2026-03-08 is a Sunday
WEDNESDAY_NOON = datetime(2026, 3, 4, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: datetime = WEDNESDAY_NOON):
        self.now_ms = int(start.timestamp() * 1000)

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def advance_seconds(self, seconds: float) -> None:
        self.advance(int(seconds * 1000))


def make_settings(**overrides) -> Settings:
    values = {
        "ENV": "test",
        "INGEST_APP_TOKEN": APP_TOKEN,
        "CRON_SECRET": CRON_SECRET,
        "ABUSE_IP_SALT": "test-ip-salt",
        "ABUSE_UA_SALT": "test-ua-salt",
        "AUDIT_ENABLED": True,
        "LEADERBOARD_SCOPED_MIN_RULES": 1,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def memory_db():
    return MemoryDatabase()


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def sqlite_session_factory():
    """In-memory SQLite with every table created; one shared connection."""
    engine = build_engine("sqlite://")
    create_all_tables(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def container(test_settings, memory_db, clock):
    from ingest.deps import build_container

    built = build_container(test_settings, memory_db=memory_db, time_fn=clock)
    yield built
    built.shutdown()


@pytest.fixture
def client(container):
    from fastapi.testclient import TestClient

    from ingest.main import create_app

    app = create_app(container, start_background=False)
    return TestClient(app)


@pytest.fixture
def app_headers():
    return {
        "x-app-token": APP_TOKEN,
        "x-forwarded-for": "203.0.113.7, 10.0.0.1",
        "user-agent": "Mozilla/5.0 Chrome/120.0.6099.109",
    }


@pytest.fixture
def cron_headers():
    return {"x-cron-secret": CRON_SECRET}
