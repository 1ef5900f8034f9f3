from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/app` is importable as top-level `app` for tests.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import app.models  # noqa: E402,F401
from app.core.base import Base  # noqa: E402
from app.core.db import create_db_engine, make_session_factory  # noqa: E402
from app.models.rater import Rater  # noqa: E402
from app.models.source import Source  # noqa: E402
from app.services.reputation_service import ReputationService  # noqa: E402
from reputation.core.config import EngineConfig, load_config  # noqa: E402


UTC = timezone.utc
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Deterministic clock; tests move it explicitly."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


def _db_url() -> Optional[str]:
    # Never point tests at DATABASE_URL: the schema is dropped afterwards.
    return os.environ.get("TEST_DATABASE_URL") or None


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    """Fresh schema per test (in-memory SQLite unless TEST_DATABASE_URL is set)."""
    eng = create_db_engine(_db_url() or "sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return make_session_factory(engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """DB session per test with rollback."""
    session = session_factory()
    trans = session.begin()
    try:
        yield session
    finally:
        if trans.is_active:
            trans.rollback()
        session.close()


@pytest.fixture()
def config() -> EngineConfig:
    # Shipped YAML defaults, no environment overrides, serial decay units.
    return load_config(environ={}).replace(decay_max_workers=1)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def service(session_factory, config: EngineConfig, clock: FrozenClock) -> ReputationService:
    return ReputationService(session_factory, config, clock=clock)


@pytest.fixture()
def make_source(db_session: Session) -> Callable[..., Source]:
    def _make(
        *,
        score: int = 50,
        created_at: datetime = T0,
        last_content_at: Optional[datetime] = None,
        cumulative_decay: int = 0,
        name: str = "wire-feed",
    ) -> Source:
        source = Source(
            id=uuid.uuid4(),
            name=name,
            reliability_score=score,
            created_at=created_at,
            last_content_at=last_content_at,
            cumulative_decay_applied=cumulative_decay,
        )
        db_session.add(source)
        db_session.flush()
        return source

    return _make


@pytest.fixture()
def make_rater(db_session: Session) -> Callable[..., Rater]:
    def _make(*, trust: float = 1.0) -> Rater:
        rater = Rater(id=uuid.uuid4(), trust_score=trust, total_ratings_given=0, accurate_ratings=0)
        db_session.add(rater)
        db_session.flush()
        return rater

    return _make
