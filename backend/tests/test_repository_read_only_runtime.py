from __future__ import annotations

import pytest
from sqlalchemy import delete, insert, select, text, update
from sqlalchemy.orm import Session

from app.models.source import Source
from app.repositories.base import BaseRepository, RepositoryReadOnlyViolation
from app.repositories.reputation_repo import ReputationRepository


def test_repository_rejects_dirty_session(db_session: Session, make_source):
    source = make_source()
    source.name = "renamed"

    repo = ReputationRepository(db_session)
    with pytest.raises(RepositoryReadOnlyViolation):
        repo.get_source(source.id)


def test_repository_rejects_pending_insert(db_session: Session):
    db_session.add(Source(name="pending", reliability_score=50, cumulative_decay_applied=0))

    repo: BaseRepository[Source] = BaseRepository(db_session)
    with pytest.raises(RepositoryReadOnlyViolation):
        repo._execute(select(Source))


@pytest.mark.parametrize(
    "stmt",
    [
        insert(Source),
        update(Source).values(reliability_score=100),
        delete(Source),
        text("UPDATE sources SET reliability_score = 100"),
    ],
)
def test_repository_rejects_non_select(db_session: Session, stmt):
    repo: BaseRepository[Source] = BaseRepository(db_session)
    with pytest.raises(RepositoryReadOnlyViolation):
        repo._execute(stmt)


def test_repository_returns_detached_snapshots(db_session: Session, make_source):
    source = make_source(score=72)

    dto = ReputationRepository(db_session).get_source(source.id)

    assert dto.reliability_score == 72
    with pytest.raises(AttributeError):
        dto.reliability_score = 10  # type: ignore[misc]
