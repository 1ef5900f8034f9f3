from __future__ import annotations

import threading
import uuid
from datetime import timedelta

from sqlalchemy import select

from app.core.db import session_scope
from app.models.reliability_history import ChangeReason, ReliabilityHistoryEntry
from app.models.source import Source
from reputation.core.decay import DecayScheduler, plan_decay, record_new_article

from conftest import T0


def _plan(config, *, now, last_content_at=None, created_at=T0, cumulative=0, last_applied=None):
    return plan_decay(
        last_content_at=last_content_at,
        created_at=created_at,
        cumulative_decay=cumulative,
        last_decay_applied_at=last_applied,
        now=now,
        config=config,
    )


def _seed(session_factory, *, score=80, last_content_at=None, cumulative=0):
    with session_scope(session_factory) as db:
        source = Source(
            id=uuid.uuid4(),
            name="quiet-blog",
            reliability_score=score,
            created_at=T0,
            last_content_at=last_content_at,
            cumulative_decay_applied=cumulative,
        )
        db.add(source)
    return source.id


def _load(session_factory, source_id):
    with session_scope(session_factory) as db:
        source = db.get(Source, source_id)
        history = db.execute(
            select(ReliabilityHistoryEntry).where(ReliabilityHistoryEntry.source_id == source_id)
        ).scalars().all()
        return source, history


# --- planning ---------------------------------------------------------------


def test_fresh_source_is_not_planned(config):
    assert _plan(config, now=T0 + timedelta(days=30), last_content_at=T0) is None


def test_first_pass_counts_started_weeks_since_threshold(config):
    plan = _plan(config, now=T0 + timedelta(days=45), last_content_at=T0)

    assert plan.anchor == T0 + timedelta(days=30)
    assert plan.weeks == 3
    assert plan.applied == 6


def test_later_passes_count_completed_weeks_since_last_application(config):
    applied_at = T0 + timedelta(days=45)

    assert _plan(config, now=applied_at, last_content_at=T0, cumulative=6, last_applied=applied_at) is None
    assert _plan(
        config, now=applied_at + timedelta(days=6), last_content_at=T0, cumulative=6, last_applied=applied_at
    ) is None

    plan = _plan(config, now=applied_at + timedelta(days=7), last_content_at=T0, cumulative=6, last_applied=applied_at)
    assert plan.weeks == 1
    assert plan.applied == 2


def test_decay_is_capped(config):
    plan = _plan(config, now=T0 + timedelta(days=400), last_content_at=T0, cumulative=16)
    assert plan.applied == 4
    assert _plan(config, now=T0 + timedelta(days=400), last_content_at=T0, cumulative=20) is None


def test_source_without_content_uses_creation_time(config):
    plan = _plan(config, now=T0 + timedelta(days=31), created_at=T0)
    assert plan.baseline == T0
    assert plan.weeks == 1


def test_application_before_new_stale_period_is_ignored(config):
    # Content arrived after the previous decay; the new stale period starts over.
    content_at = T0 + timedelta(days=60)
    plan = _plan(
        config,
        now=content_at + timedelta(days=38),
        last_content_at=content_at,
        cumulative=6,
        last_applied=T0 + timedelta(days=45),
    )
    assert plan.anchor == content_at + timedelta(days=30)
    assert plan.weeks == 2
    assert plan.applied == 4


# --- scheduler --------------------------------------------------------------


def test_pass_applies_decay_and_records_history(session_factory, config):
    source_id = _seed(session_factory, score=80, last_content_at=T0)
    scheduler = DecayScheduler(session_factory, config)

    result = scheduler.run_decay_pass(T0 + timedelta(days=45))

    assert (result.processed, result.decayed, result.errors) == (1, 1, 0)
    detail = result.details[0]
    assert (detail.old_score, detail.new_score, detail.decay_applied) == (80, 74, 6)

    source, history = _load(session_factory, source_id)
    assert source.reliability_score == 74
    assert source.cumulative_decay_applied == 6
    assert source.last_decay_applied_at == T0 + timedelta(days=45)
    assert [(h.reason, h.old_score, h.new_score) for h in history] == [(ChangeReason.DECAY, 80, 74)]
    assert history[0].change_metadata["decay_applied"] == 6


def test_rerun_at_same_instant_changes_nothing(session_factory, config):
    source_id = _seed(session_factory, score=80, last_content_at=T0)
    scheduler = DecayScheduler(session_factory, config)
    now = T0 + timedelta(days=45)

    scheduler.run_decay_pass(now)
    again = scheduler.run_decay_pass(now)

    assert (again.processed, again.decayed) == (1, 0)
    source, history = _load(session_factory, source_id)
    assert source.cumulative_decay_applied == 6
    assert len(history) == 1


def test_pass_skips_fresh_and_exhausted_sources(session_factory, config):
    _seed(session_factory, last_content_at=T0 + timedelta(days=40))
    _seed(session_factory, last_content_at=T0, cumulative=20)

    result = DecayScheduler(session_factory, config).run_decay_pass(T0 + timedelta(days=45))

    assert result.processed == 0
    assert result.details == []


def test_dry_run_writes_nothing(session_factory, config):
    source_id = _seed(session_factory, score=80, last_content_at=T0)

    result = DecayScheduler(session_factory, config).run_decay_pass(T0 + timedelta(days=45), dry_run=True)

    assert result.dry_run is True
    assert result.details[0].decay_applied == 6
    assert result.details[0].new_score == 80
    source, history = _load(session_factory, source_id)
    assert source.reliability_score == 80
    assert source.cumulative_decay_applied == 0
    assert history == []


def test_cancelled_pass_leaves_sources_untouched(session_factory, config):
    ids = [_seed(session_factory, last_content_at=T0) for _ in range(3)]
    cancel = threading.Event()
    cancel.set()

    result = DecayScheduler(session_factory, config).run_decay_pass(T0 + timedelta(days=45), cancel)

    assert result.cancelled == 3
    assert result.processed == 0
    for source_id in ids:
        source, history = _load(session_factory, source_id)
        assert source.cumulative_decay_applied == 0
        assert history == []


def test_new_article_stops_decay_but_does_not_restore(session_factory, config):
    source_id = _seed(session_factory, score=80, last_content_at=T0)
    scheduler = DecayScheduler(session_factory, config)
    scheduler.run_decay_pass(T0 + timedelta(days=45))

    with session_scope(session_factory) as db:
        record_new_article(db, source_id, now=T0 + timedelta(days=46))

    result = scheduler.run_decay_pass(T0 + timedelta(days=60))

    assert result.processed == 0
    source, _ = _load(session_factory, source_id)
    assert source.last_content_at == T0 + timedelta(days=46)
    assert source.reliability_score == 74
    assert source.cumulative_decay_applied == 6
