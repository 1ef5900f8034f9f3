"""Rating Intake.

Validates, rate-limits and weights incoming ratings, then persists them
(insert or in-place update). It never recomputes the source score; the
orchestration layer invokes the aggregator after a successful submission.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.base import ensure_utc, utc_now
from app.models.rater import Rater
from app.models.rating import RATING_MAX, RATING_MIN, Rating
from app.models.source import Source
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError, ValidationError
from reputation.core.quota import DailyRatingQuota
from reputation.core.trust_ledger import TrustLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    rating: Rating
    is_update: bool


def validate_rating_value(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Rating must be an integer between {RATING_MIN} and {RATING_MAX}.")
    if not RATING_MIN <= value <= RATING_MAX:
        raise ValidationError(f"Rating must be an integer between {RATING_MIN} and {RATING_MAX} (got {value}).")
    return value


class RatingIntake:
    def __init__(
        self,
        db: Session,
        config: EngineConfig,
        *,
        ledger: Optional[TrustLedger] = None,
        quota: Optional[DailyRatingQuota] = None,
    ) -> None:
        self._db = db
        self._config = config
        self._ledger = ledger or TrustLedger(db, config)
        self._quota = quota or DailyRatingQuota(db, limit_per_day=config.max_ratings_per_day)

    def submit_rating(
        self,
        source_id: uuid.UUID,
        rater_id: uuid.UUID,
        value: int,
        comment: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SubmissionResult:
        """Insert or update the rater's rating for the source.

        Raises ValidationError, NotFoundError or RateLimitExceeded; on any of
        them nothing is persisted.
        """
        value = validate_rating_value(value)
        now = ensure_utc(now) if now is not None else utc_now()

        if self._db.get(Source, source_id) is None:
            raise NotFoundError("source", source_id)
        # Weight is the rater's trust at this submission (edits included).
        weight = self._ledger.get_trust(rater_id)

        existing = self._find(source_id, rater_id)
        if existing is not None:
            return SubmissionResult(self._update(existing, value, comment, weight, now), True)

        try:
            with self._db.begin_nested():
                rating = Rating(
                    source_id=source_id,
                    rater_id=rater_id,
                    value=value,
                    comment=comment,
                    weight=weight,
                    is_flagged=False,
                    created_at=now,
                    submitted_at=now,
                )
                self._db.add(rating)
                self._db.flush()
                self._quota.consume(rater_id, day=now.date())
                self._db.execute(
                    update(Rater)
                    .where(Rater.id == rater_id)
                    .values(total_ratings_given=Rater.total_ratings_given + 1)
                    .execution_options(synchronize_session="fetch")
                )
        except IntegrityError:
            # Lost a race with a concurrent first submission for the same pair.
            existing = self._find(source_id, rater_id)
            if existing is None:
                raise
            return SubmissionResult(self._update(existing, value, comment, weight, now), True)

        logger.debug("rating created source_id=%s rating_id=%s weight=%.3f", source_id, rating.id, weight)
        return SubmissionResult(rating, False)

    def _find(self, source_id: uuid.UUID, rater_id: uuid.UUID) -> Optional[Rating]:
        return self._db.execute(
            select(Rating).where(Rating.source_id == source_id, Rating.rater_id == rater_id)
        ).scalar_one_or_none()

    def _update(
        self, rating: Rating, value: int, comment: Optional[str], weight: float, now: datetime
    ) -> Rating:
        rating.value = value
        rating.comment = comment
        rating.weight = weight
        rating.submitted_at = now
        rating.updated_at = now
        self._db.flush()
        logger.debug("rating updated source_id=%s rating_id=%s weight=%.3f", rating.source_id, rating.id, weight)
        return rating
