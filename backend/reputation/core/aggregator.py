"""Score Aggregator.

Sole owner of `Source.reliability_score`. Everything else proposes input
(ratings, verifications, decay); this module turns it into a score and an
auditable history entry.

Formula (weights from config, default 0.3 / 0.5 / 0.2):

    C' = stored score - decay
    R  = weighted mean of non-flagged rating values, mapped 1 -> 0 .. 5 -> 100
         (no eligible ratings -> C')
    A  = accurate / total verifications x 100 (none -> C')
    S  = round_half_up(wR*R + wA*A + wC*C'), clamped to [floor, ceiling]

When neither the rating/verification signal nor decay changed since the last
recompute (see `ScoreComponents.fingerprint`), S is the stored score: repeated
recomputes are idempotent.

Callers must hold the per-source lock; the row itself is locked with
SELECT ... FOR UPDATE so the guarantee also holds across processes.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.core.base import ensure_utc, utc_now
from app.models.cross_reference import CrossReferenceResult
from app.models.rating import RATING_MAX, RATING_MIN, Rating
from app.models.reliability_history import ChangeReason, ReliabilityHistoryEntry
from app.models.source import Source
from reputation.core.anomaly import AnomalyDetector
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass(frozen=True, slots=True)
class ScoreComponents:
    rating: float
    accuracy: float
    base: int
    eligible_ratings: int
    verifications: int
    accurate_verifications: int

    def fingerprint(self) -> dict:
        """The scoring signal, independent of the prior score."""
        return {
            "eligible_ratings": self.eligible_ratings,
            "rating_signal": round(self.rating, 6) if self.eligible_ratings else None,
            "verifications": self.verifications,
            "accurate_verifications": self.accurate_verifications,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5 + _EPS))


def rating_to_percent(weighted_mean: float) -> float:
    return (weighted_mean - RATING_MIN) / (RATING_MAX - RATING_MIN) * 100.0


def combine(components: ScoreComponents, config: EngineConfig) -> int:
    raw = (
        config.weight_rating * components.rating
        + config.weight_accuracy * components.accuracy
        + config.weight_current * components.base
    )
    return max(config.score_floor, min(config.score_ceiling, round_half_up(raw)))


class ScoreAggregator:
    def __init__(self, db: Session, config: EngineConfig, *, detector: Optional[AnomalyDetector] = None) -> None:
        self._db = db
        self._config = config
        self._detector = detector or AnomalyDetector(db, config)

    def recompute(
        self,
        source_id: uuid.UUID,
        trigger: ChangeReason | str,
        *,
        decay: int = 0,
        now: Optional[datetime] = None,
    ) -> Optional[ReliabilityHistoryEntry]:
        """Recompute and persist the score; return the history entry written.

        Returns None only for a decay trigger that applied no decay and left
        the score unchanged.
        """
        trigger = ChangeReason(trigger)
        if isinstance(decay, bool) or not isinstance(decay, int) or decay < 0:
            raise ValidationError("decay must be a non-negative integer.")
        now = ensure_utc(now) if now is not None else utc_now()

        source = self._db.execute(
            select(Source)
            .where(Source.id == source_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if source is None:
            raise NotFoundError("source", source_id)

        stored = int(source.reliability_score)
        base = stored - decay

        new_anomalies = self._detector.scan_source(source_id, now=now)
        self._db.flush()

        components = self._components(source_id, base)
        inputs = components.fingerprint()
        # Blending in the prior score again without new signal would drift the
        # score on every call; unchanged inputs keep the stored score.
        unchanged = decay == 0 and source.score_inputs == inputs
        if unchanged:
            score = max(self._config.score_floor, min(self._config.score_ceiling, stored))
        else:
            score = combine(components, self._config)

        entry: Optional[ReliabilityHistoryEntry] = None
        if not (trigger is ChangeReason.DECAY and decay == 0 and score == stored):
            entry = ReliabilityHistoryEntry(
                source_id=source_id,
                old_score=stored,
                new_score=score,
                reason=trigger,
                change_metadata={
                    "rating_component": round(components.rating, 4),
                    "accuracy_component": round(components.accuracy, 4),
                    "base_score": components.base,
                    "decay_applied": decay,
                    "eligible_ratings": components.eligible_ratings,
                    "verifications": components.verifications,
                    "accurate_verifications": components.accurate_verifications,
                    "new_anomalies": len(new_anomalies),
                    "inputs_unchanged": unchanged,
                },
                changed_at=now,
            )
            self._db.add(entry)

        source.reliability_score = score
        source.score_inputs = inputs
        self._db.flush()

        logger.info(
            "source score recomputed source_id=%s trigger=%s old=%d new=%d decay=%d",
            source_id,
            trigger.value,
            stored,
            score,
            decay,
        )
        return entry

    def _components(self, source_id: uuid.UUID, base: int) -> ScoreComponents:
        weighted_sum, weight_total, eligible = self._db.execute(
            select(
                func.coalesce(func.sum(Rating.value * Rating.weight), 0.0),
                func.coalesce(func.sum(Rating.weight), 0.0),
                func.count(Rating.id),
            ).where(Rating.source_id == source_id, Rating.is_flagged.is_(False))
        ).one()

        if eligible and weight_total > 0:
            rating = rating_to_percent(float(weighted_sum) / float(weight_total))
        else:
            rating = float(base)

        total, accurate = self._db.execute(
            select(
                func.count(CrossReferenceResult.id),
                func.coalesce(func.sum(case((CrossReferenceResult.was_accurate.is_(True), 1), else_=0)), 0),
            ).where(CrossReferenceResult.source_id == source_id)
        ).one()

        accuracy = float(accurate) / float(total) * 100.0 if total else float(base)

        return ScoreComponents(
            rating=rating,
            accuracy=accuracy,
            base=base,
            eligible_ratings=int(eligible),
            verifications=int(total),
            accurate_verifications=int(accurate),
        )
