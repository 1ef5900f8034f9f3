"""Decay Scheduler.

Sources that stop publishing lose reputation slowly: after `stale_days` without
content, `decay_per_week` points per elapsed week, never more than `max_decay`
in total. Decay is never reversed explicitly; fresh ratings and verifications
pull the score back up through the aggregator.

Week counting:
- first application of a stale period is anchored at the threshold crossing
  and counts started weeks (ceil);
- later applications are anchored at the previous application and count
  completed weeks (floor), so re-running a pass at the same instant is a no-op.

Each source is one unit of work (lock, transaction, aggregator call, decay
bookkeeping). Units run in a thread pool; a cancel event is honoured between
units, never inside one. A failing source is logged and counted; the pass
continues.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.base import ensure_utc, utc_now
from app.core.db import SessionFactory, session_scope
from app.models.reliability_history import ChangeReason
from app.models.source import Source
from reputation.core.aggregator import ScoreAggregator
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError
from reputation.core.locks import KeyedLock

logger = logging.getLogger(__name__)

WEEK = timedelta(days=7)

Clock = Callable[[], datetime]


@dataclass(frozen=True, slots=True)
class DecayPlan:
    baseline: datetime
    anchor: datetime
    weeks: int
    applied: int


@dataclass(frozen=True, slots=True)
class DecayDetail:
    source_id: uuid.UUID
    decay_applied: int
    weeks: int
    old_score: int
    new_score: int
    cumulative_decay: int


@dataclass(slots=True)
class DecayPassResult:
    processed: int = 0
    decayed: int = 0
    cancelled: int = 0
    errors: int = 0
    dry_run: bool = False
    details: list[DecayDetail] = field(default_factory=list)
    failures: list[tuple[uuid.UUID, str]] = field(default_factory=list)


def plan_decay(
    *,
    last_content_at: Optional[datetime],
    created_at: datetime,
    cumulative_decay: int,
    last_decay_applied_at: Optional[datetime],
    now: datetime,
    config: EngineConfig,
) -> Optional[DecayPlan]:
    """Decay due for one source at `now`, or None when nothing applies."""
    baseline = last_content_at or created_at
    stale_for = timedelta(days=config.stale_days)
    if now - baseline <= stale_for or cumulative_decay >= config.max_decay:
        return None

    crossing = baseline + stale_for
    if last_decay_applied_at is not None and last_decay_applied_at >= crossing:
        anchor = last_decay_applied_at
        weeks = (now - anchor) // WEEK
    else:
        anchor = crossing
        weeks = math.ceil((now - anchor) / WEEK)

    applied = min(config.decay_per_week * weeks, config.max_decay - cumulative_decay)
    if applied <= 0:
        return None
    return DecayPlan(baseline=baseline, anchor=anchor, weeks=int(weeks), applied=int(applied))


def record_new_article(db: Session, source_id: uuid.UUID, *, now: Optional[datetime] = None) -> Source:
    """Mark fresh content; decay bookkeeping is left untouched."""
    now = ensure_utc(now) if now is not None else utc_now()
    source = db.get(Source, source_id)
    if source is None:
        raise NotFoundError("source", source_id)
    source.last_content_at = now
    db.flush()
    return source


class DecayScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        config: EngineConfig,
        *,
        locks: Optional[KeyedLock] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._locks = locks or KeyedLock(timeout_seconds=config.lock_timeout_seconds)
        self._clock = clock or utc_now

    def candidate_ids(self, now: datetime) -> list[uuid.UUID]:
        cutoff = now - timedelta(days=self._config.stale_days)
        baseline = func.coalesce(Source.last_content_at, Source.created_at)
        stmt = (
            select(Source.id)
            .where(baseline < cutoff)
            .where(Source.cumulative_decay_applied < self._config.max_decay)
            .order_by(Source.id)
        )
        with session_scope(self._session_factory) as db:
            return list(db.execute(stmt).scalars())

    def run_decay_pass(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
        *,
        dry_run: bool = False,
        max_workers: Optional[int] = None,
    ) -> DecayPassResult:
        now = ensure_utc(now) if now is not None else self._clock()
        cancel_event = cancel_event or threading.Event()
        result = DecayPassResult(dry_run=dry_run)

        ids = self.candidate_ids(now)
        workers = max(1, min(max_workers or self._config.decay_max_workers, len(ids) or 1))
        logger.info("decay pass started candidates=%d workers=%d dry_run=%s", len(ids), workers, dry_run)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="decay") as pool:
            futures = {pool.submit(self._run_unit, source_id, now, cancel_event, dry_run): source_id for source_id in ids}
            for future, source_id in futures.items():
                try:
                    outcome = future.result()
                except Exception as e:  # noqa: BLE001
                    logger.exception("decay failed for source_id=%s", source_id)
                    result.errors += 1
                    result.failures.append((source_id, f"{type(e).__name__}: {e}"))
                    continue
                if outcome is _CANCELLED:
                    result.cancelled += 1
                    continue
                result.processed += 1
                if outcome is not None:
                    result.decayed += 1
                    result.details.append(outcome)

        logger.info(
            "decay pass finished processed=%d decayed=%d cancelled=%d errors=%d",
            result.processed,
            result.decayed,
            result.cancelled,
            result.errors,
        )
        return result

    def _run_unit(
        self,
        source_id: uuid.UUID,
        now: datetime,
        cancel_event: threading.Event,
        dry_run: bool,
    ) -> Optional[DecayDetail] | object:
        if cancel_event.is_set():
            return _CANCELLED

        with self._locks.hold(source_id):
            with session_scope(self._session_factory) as db:
                source = db.execute(
                    select(Source).where(Source.id == source_id).with_for_update()
                ).scalar_one_or_none()
                if source is None:
                    return None

                plan = plan_decay(
                    last_content_at=source.last_content_at,
                    created_at=source.created_at,
                    cumulative_decay=source.cumulative_decay_applied,
                    last_decay_applied_at=source.last_decay_applied_at,
                    now=now,
                    config=self._config,
                )
                if plan is None:
                    return None

                old_score = int(source.reliability_score)
                if dry_run:
                    return DecayDetail(
                        source_id=source_id,
                        decay_applied=plan.applied,
                        weeks=plan.weeks,
                        old_score=old_score,
                        new_score=old_score,
                        cumulative_decay=source.cumulative_decay_applied,
                    )

                ScoreAggregator(db, self._config).recompute(
                    source_id, ChangeReason.DECAY, decay=plan.applied, now=now
                )
                source.cumulative_decay_applied += plan.applied
                source.last_decay_applied_at = now
                db.flush()

                logger.info(
                    "decay applied source_id=%s weeks=%d applied=%d cumulative=%d",
                    source_id,
                    plan.weeks,
                    plan.applied,
                    source.cumulative_decay_applied,
                )
                return DecayDetail(
                    source_id=source_id,
                    decay_applied=plan.applied,
                    weeks=plan.weeks,
                    old_score=old_score,
                    new_score=int(source.reliability_score),
                    cumulative_decay=source.cumulative_decay_applied,
                )


_CANCELLED = object()
