import os

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT_REPORT_ENABLED", "false")
os.environ.setdefault("EMAIL_WEBHOOK_URL", "")

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import metering.db.models  # noqa: F401, E402
from metering.apikeys.service import create_api_key  # noqa: E402
from metering.auth.models import User  # noqa: E402
from metering.auth.security import create_access_token  # noqa: E402
from metering.db.base import Base  # noqa: E402
from metering.db.session import get_db  # noqa: E402
from metering.notify.circuit_breaker import BreakerRegistry  # noqa: E402
from metering.quota.service import ensure_default_tiers, set_user_tier  # noqa: E402
from metering.ratelimit.events import RateLimitEventLogger  # noqa: E402
from metering.ratelimit.limiter import FixedWindowRateLimiter  # noqa: E402
from metering.ratelimit.overrides import OverrideCache  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as session:
        ensure_default_tiers(session)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def day():
    return datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def clock():
    # Start exactly on a window boundary so a test controls rollover.
    return FakeClock(start=1_700_000_040.0)


@pytest.fixture
def app(session_factory, clock, monkeypatch):
    from metering.main import app as fastapi_app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    fastapi_app.dependency_overrides[get_db] = _get_db
    monkeypatch.setattr(fastapi_app.state, "rate_limiter", FixedWindowRateLimiter(clock=clock))
    monkeypatch.setattr(fastapi_app.state, "override_cache", OverrideCache(ttl_s=60, clock=clock))
    monkeypatch.setattr(
        fastapi_app.state,
        "event_logger",
        RateLimitEventLogger(session_factory, synchronous=True),
    )
    monkeypatch.setattr(fastapi_app.state, "breakers", BreakerRegistry(clock=clock))
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_user(session_factory):
    def _make(user_id: str, *, role: str = "user", tier: str | None = None) -> dict:
        with session_factory() as session:
            session.add(User(id=user_id, email=f"{user_id}@example.com", role=role))
            session.commit()
            if tier:
                set_user_tier(session, user_id, tier)
        token = create_access_token({"sub": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def make_api_key(session_factory):
    def _make(user_id: str, *, tier: str | None = None) -> tuple[str, str]:
        with session_factory() as session:
            if tier:
                set_user_tier(session, user_id, tier)
            row, key = create_api_key(session, user_id=user_id, name="test key")
            return row.id, key

    return _make
