import os
from datetime import datetime, timedelta

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key")

from pointsledger.core.config import Settings
from pointsledger.core.database import create_db_engine, init_db, make_session_factory
from pointsledger.services.gamification_service import GamificationService


class FakeClock:
    """Settable stand-in for utcnow so tests can move through days and rate windows."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 0, 0))


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def test_settings():
    return Settings(secret_key="test-secret-key", leaderboard_refresh_seconds=0, ledger_retry_backoff_seconds=0.01)


@pytest.fixture
def service(session_factory, test_settings, clock):
    service = GamificationService(session_factory, settings=test_settings, clock=clock)
    service.startup()
    return service


@pytest.fixture
def ledger(service):
    """The bare ledger: awards here never trigger badge evaluation."""
    return service.ledger
