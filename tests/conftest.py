"""Pytest fixtures for Account Guard tests."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.auth.tokens import TokenLifecycleManager
from src.persistence.models import Base, User
from src.persistence.token_store import SqlTokenStore
from src.ratelimit.controller import AdmissionController
from src.ratelimit.policy import EndpointClass, RatePolicy


# =============================================================================
# CLOCKS
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class WallClock:
    """Timezone-aware wall clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return WallClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture(scope="function")
def test_db():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def file_db(tmp_path):
    """Session factory over a file database, for tests needing two connections."""
    engine = create_engine(f"sqlite:///{tmp_path / 'tokens.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def user_factory(test_db):
    """
    Factory fixture to create test users.

    Usage:
        alice = user_factory("alice@test.com", "alice")
    """

    def _create_user(email: str, username: str, password_hash: str = "hashed_password"):
        user = User(email=email, username=username, password_hash=password_hash)
        test_db.add(user)
        test_db.commit()
        return user

    return _create_user


@pytest.fixture
def alice(user_factory):
    return user_factory("alice@test.com", "alice")


@pytest.fixture
def token_manager(test_db, wall_clock):
    return TokenLifecycleManager(SqlTokenStore(test_db), clock=wall_clock)


# =============================================================================
# RATE LIMIT FIXTURES
# =============================================================================


@pytest.fixture
def small_policies():
    """Small policies so tests can drain buckets quickly."""
    return {
        EndpointClass.LOGIN: RatePolicy(capacity=5, refill_tokens=5, refill_interval_seconds=60),
        EndpointClass.REGISTER: RatePolicy(capacity=3, refill_tokens=3, refill_interval_seconds=600),
        EndpointClass.VERIFY_EMAIL: RatePolicy(capacity=10, refill_tokens=10, refill_interval_seconds=60),
    }


@pytest.fixture
def controller(small_policies, fake_clock):
    return AdmissionController(small_policies, clock=fake_clock)
