"""Reputation service (orchestration seam).

Each public operation is one unit of work: a session, a transaction, and for
score-changing operations the per-source lock held across the whole unit
(commit included). Engine components are constructed per unit on that
session; the service itself holds no database state.

Errors from the engine (ValidationError, RateLimitExceeded, NotFoundError)
roll the unit back untouched; persistence failures surface as StorageError.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Optional

from app.core.base import ensure_utc, utc_now
from app.core.db import SessionFactory, session_scope
from app.models.rating_anomaly import RatingAnomaly
from app.models.reliability_history import ChangeReason
from app.models.source import Source
from app.repositories.reputation_repo import (
    ReputationRepository,
    SourceDTO,
    to_anomaly_dto,
    to_rating_dto,
)
from app.schemas.reputation import (
    AnomalyResolutionView,
    AnomalyView,
    CrossReferenceView,
    DecayDetailView,
    DecayPassSummary,
    Pagination,
    RatingReceipt,
    RatingsPage,
    RatingStats,
    RatingView,
    RecentRating,
    ReliabilityHistoryItem,
    SourceReputation,
)
from reputation.core.aggregator import ScoreAggregator
from reputation.core.anomaly import AnomalyDetector
from reputation.core.config import EngineConfig, load_config
from reputation.core.cross_reference import CrossReferenceTracker
from reputation.core.decay import DecayScheduler, record_new_article
from reputation.core.errors import NotFoundError, ValidationError
from reputation.core.feedback import apply_verification_feedback
from reputation.core.intake import RatingIntake
from reputation.core.locks import KeyedLock
from reputation.core.trust_ledger import TrustLedger

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_RATINGS_PAGE = 20
DEFAULT_HISTORY_LIMIT = 50
RECENT_RATINGS = 5


class ReputationService:
    def __init__(
        self,
        session_factory: SessionFactory,
        config: Optional[EngineConfig] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config or load_config()
        self._clock = clock or utc_now
        self._locks = locks or KeyedLock(timeout_seconds=self._config.lock_timeout_seconds)

    @property
    def config(self) -> EngineConfig:
        return self._config

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # --- registration -----------------------------------------------------

    def register_source(self, name: str, *, source_id: Optional[uuid.UUID] = None) -> SourceDTO:
        if not name or not name.strip():
            raise ValidationError("source name must not be empty.")
        now = self._now()
        with session_scope(self._session_factory) as db:
            source = Source(
                id=source_id or uuid.uuid4(),
                name=name.strip(),
                reliability_score=self._config.score_default,
                cumulative_decay_applied=0,
                created_at=now,
            )
            db.add(source)
            db.flush()
            source_id = source.id
        logger.info("source registered source_id=%s", source_id)
        return self._get_source_dto(source_id)

    def register_rater(self, rater_id: Optional[uuid.UUID] = None) -> uuid.UUID:
        with session_scope(self._session_factory) as db:
            rater = TrustLedger(db, self._config).register_rater(rater_id)
            return rater.id

    def get_trust(self, rater_id: uuid.UUID) -> float:
        with session_scope(self._session_factory) as db:
            return TrustLedger(db, self._config).get_trust(rater_id)

    # --- events -----------------------------------------------------------

    def submit_rating(
        self,
        source_id: uuid.UUID,
        rater_id: uuid.UUID,
        value: int,
        comment: Optional[str] = None,
    ) -> RatingReceipt:
        """Insert or update a rating, then recompute with reason `user_rating`.

        The receipt reflects the stored rating, including a flag raised by the
        anomaly scan of this same recompute.
        """
        with self._locks.hold(source_id):
            now = self._now()
            with session_scope(self._session_factory) as db:
                submission = RatingIntake(db, self._config).submit_rating(
                    source_id, rater_id, value, comment, now=now
                )
                ScoreAggregator(db, self._config).recompute(source_id, ChangeReason.USER_RATING, now=now)
                receipt = RatingReceipt(
                    rating=RatingView.model_validate(to_rating_dto(submission.rating)),
                    is_update=submission.is_update,
                )
        return receipt

    def record_cross_reference(
        self,
        source_id: uuid.UUID,
        content_id: Optional[str],
        was_accurate: bool,
        note: Optional[str] = None,
        confidence: float = 0.5,
        claim_id: Optional[str] = None,
    ) -> CrossReferenceView:
        """Record a verification, feed it back to rater trust, recompute."""
        with self._locks.hold(source_id):
            now = self._now()
            with session_scope(self._session_factory) as db:
                recorded = CrossReferenceTracker(db, self._config).record(
                    source_id, content_id, was_accurate, note, confidence, claim_id, now=now
                )
                apply_verification_feedback(db, recorded.event, config=self._config)
                ScoreAggregator(db, self._config).recompute(source_id, ChangeReason.CROSS_REFERENCE, now=now)
                view = CrossReferenceView.model_validate(recorded.result)
        return view

    def record_new_article(self, source_id: uuid.UUID) -> datetime:
        with self._locks.hold(source_id):
            now = self._now()
            with session_scope(self._session_factory) as db:
                record_new_article(db, source_id, now=now)
        return now

    def recompute(self, source_id: uuid.UUID, trigger: ChangeReason | str = ChangeReason.MANUAL) -> int:
        with self._locks.hold(source_id):
            now = self._now()
            with session_scope(self._session_factory) as db:
                ScoreAggregator(db, self._config).recompute(source_id, trigger, now=now)
                score = db.get(Source, source_id).reliability_score
        return int(score)

    def trigger_decay(
        self,
        *,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ) -> DecayPassSummary:
        scheduler = DecayScheduler(self._session_factory, self._config, locks=self._locks, clock=self._clock)
        result = scheduler.run_decay_pass(
            self._now(), cancel_event, dry_run=dry_run, max_workers=max_workers
        )
        return DecayPassSummary(
            processed=result.processed,
            decayed=result.decayed,
            cancelled=result.cancelled,
            errors=result.errors,
            dry_run=result.dry_run,
            details=[DecayDetailView.model_validate(d) for d in result.details],
        )

    # --- anomalies --------------------------------------------------------

    def list_anomalies(self, source_id: uuid.UUID, *, include_resolved: bool = False) -> list[AnomalyView]:
        with session_scope(self._session_factory) as db:
            repo = ReputationRepository(db)
            if repo.get_source(source_id) is None:
                raise NotFoundError("source", source_id)
            rows = repo.list_anomalies(source_id, include_resolved=include_resolved)
            return [AnomalyView.model_validate(a) for a in rows]

    def resolve_anomaly(
        self,
        anomaly_id: uuid.UUID,
        action: str,
        rating_ids: Optional[Iterable[uuid.UUID]] = None,
        revised_weight: Optional[float] = None,
    ) -> AnomalyResolutionView:
        """Resolve an anomaly and recompute with reason `anomaly_correction`."""
        with session_scope(self._session_factory) as db:
            anomaly = db.get(RatingAnomaly, anomaly_id)
            if anomaly is None:
                raise NotFoundError("anomaly", anomaly_id)
            source_id = anomaly.source_id

        if rating_ids is not None:
            rating_ids = list(rating_ids)

        with self._locks.hold(source_id):
            now = self._now()
            with session_scope(self._session_factory) as db:
                outcome = AnomalyDetector(db, self._config).resolve(
                    anomaly_id, action, rating_ids, revised_weight, now=now
                )
                ScoreAggregator(db, self._config).recompute(source_id, ChangeReason.ANOMALY_CORRECTION, now=now)
                view = AnomalyResolutionView(
                    anomaly=AnomalyView.model_validate(to_anomaly_dto(outcome.anomaly)),
                    unflagged=sorted(outcome.unflagged, key=str),
                    still_flagged=sorted(outcome.still_flagged, key=str),
                    reweighted=sorted(outcome.reweighted, key=str),
                    reliability_score=db.get(Source, source_id).reliability_score,
                )
        return view

    # --- reads ------------------------------------------------------------

    def get_ratings(
        self,
        source_id: uuid.UUID,
        limit: int = DEFAULT_RATINGS_PAGE,
        offset: int = 0,
    ) -> RatingsPage:
        limit = _page_limit(limit)
        if offset < 0:
            raise ValidationError("offset must be >= 0.")
        with session_scope(self._session_factory) as db:
            repo = ReputationRepository(db)
            if repo.get_source(source_id) is None:
                raise NotFoundError("source", source_id)
            ratings = repo.list_ratings(source_id, limit=limit, offset=offset)
            total = repo.count_ratings(source_id)
            stats = repo.rating_stats(source_id)
        return RatingsPage(
            ratings=[RatingView.model_validate(r) for r in ratings],
            stats=RatingStats.model_validate(stats),
            pagination=Pagination(limit=limit, offset=offset, has_more=offset + len(ratings) < total),
        )

    def get_reputation(self, source_id: uuid.UUID) -> SourceReputation:
        now = self._now()
        with session_scope(self._session_factory) as db:
            repo = ReputationRepository(db)
            source = repo.get_source(source_id)
            if source is None:
                raise NotFoundError("source", source_id)
            stats = repo.rating_stats(source_id)
            accuracy = repo.accuracy_stats(source_id)
            recent = repo.list_ratings(source_id, limit=RECENT_RATINGS)
            open_anomalies = repo.count_open_anomalies(source_id)

        baseline = source.last_content_at or source.created_at
        return SourceReputation(
            source_id=source.id,
            name=source.name,
            reliability_score=source.reliability_score,
            total_ratings=stats.total_ratings,
            average_rating=stats.average_rating,
            weighted_average_rating=stats.weighted_average_rating,
            accurate_claims=accuracy.accurate_claims,
            total_claims_verified=accuracy.total_claims_verified,
            accuracy_rate=accuracy.accuracy_rate,
            is_stale=now - baseline > timedelta(days=self._config.stale_days),
            last_content_at=source.last_content_at,
            cumulative_decay_applied=source.cumulative_decay_applied,
            open_anomalies=open_anomalies,
            recent_ratings=[RecentRating.model_validate(r) for r in recent],
        )

    def get_reliability_history(
        self, source_id: uuid.UUID, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[ReliabilityHistoryItem]:
        """Newest first."""
        limit = _page_limit(limit)
        with session_scope(self._session_factory) as db:
            repo = ReputationRepository(db)
            if repo.get_source(source_id) is None:
                raise NotFoundError("source", source_id)
            rows = repo.list_history(source_id, limit=limit)
        return [ReliabilityHistoryItem.model_validate(h) for h in rows]

    def _get_source_dto(self, source_id: uuid.UUID) -> SourceDTO:
        with session_scope(self._session_factory) as db:
            source = ReputationRepository(db).get_source(source_id)
        if source is None:
            raise NotFoundError("source", source_id)
        return source


def _page_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValidationError("limit must be a positive integer.")
    return min(limit, MAX_PAGE_SIZE)
