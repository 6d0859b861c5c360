"""
Pytest configuration and fixtures

Tests run against a throwaway SQLite file. The environment is set before
any application module is imported, since settings and the engine are
built at import time. Every table is emptied after each test, so nothing
leaks between tests even though API routes commit.
"""
import pytest
import sys
import os
import tempfile
from uuid import uuid4

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

_DB_DIR = tempfile.mkdtemp(prefix="running-days-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SENTRY_DSN"] = ""

from core.database import Base, SessionLocal, engine  # noqa: E402
from core.security import create_access_token, generate_secret, hash_token  # noqa: E402
import models  # noqa: E402,F401
from models import WebhookSubscriber, WebhookToken  # noqa: E402
from tests.workout_helpers import make_workout  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session():
    """
    Plain session on the test database.

    Commit before calling the API: SQLite lets only one writer in at a time.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_id():
    return f"user_{uuid4().hex[:12]}"


@pytest.fixture
def auth_headers(user_id):
    token = create_access_token({"sub": user_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def webhook_token(db_session, user_id):
    """Raw token string for an active webhook token owned by ``user_id``."""
    raw = generate_secret()
    db_session.add(WebhookToken(user_id=user_id, name="Health Auto Export", token_hash=hash_token(raw), is_active=True))
    db_session.commit()
    return raw


@pytest.fixture
def subscriber_factory(db_session, user_id):
    def _make(events=("goal.achieved", "milestone.reached"), max_retries=3, url="https://hooks.example.com/running", **overrides):
        subscriber = WebhookSubscriber(
            user_id=overrides.pop("owner", user_id),
            name=overrides.pop("name", "Test hook"),
            url=url,
            secret=overrides.pop("secret", "s3cret"),
            events=list(events),
            is_active=overrides.pop("is_active", True),
            max_retries=max_retries,
            timeout_ms=overrides.pop("timeout_ms", 5000),
            consecutive_failures=overrides.pop("consecutive_failures", 0),
        )
        db_session.add(subscriber)
        db_session.commit()
        return subscriber

    return _make


@pytest.fixture
def workout_factory():
    return make_workout
