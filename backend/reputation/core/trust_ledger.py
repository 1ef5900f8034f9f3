"""Trust Ledger.

Owns per-rater trust scores. Trust is the weight given to a rater's ratings,
bounded to [trust_min, trust_max] (default [0.1, 3.0]) so that nobody is ever
silenced entirely and nobody dominates a source.

Adjustment is a single clamped UPDATE, so concurrent feedback for the same
rater cannot lose an increment. No retries here; storage failures propagate.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import case, literal, select, update
from sqlalchemy.orm import Session

from app.models.rater import Rater
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError

logger = logging.getLogger(__name__)


class TrustLedger:
    """Read and adjust rater trust within the configured bounds."""

    def __init__(self, db: Session, config: EngineConfig) -> None:
        self._db = db
        self._config = config

    def clamp(self, value: float) -> float:
        return max(self._config.trust_min, min(self._config.trust_max, value))

    def register_rater(self, rater_id: Optional[uuid.UUID] = None) -> Rater:
        """Create a trust profile at the default trust score (idempotent)."""
        if rater_id is not None:
            existing = self._db.get(Rater, rater_id)
            if existing is not None:
                return existing
        rater = Rater(
            id=rater_id or uuid.uuid4(),
            trust_score=self._config.trust_default,
            total_ratings_given=0,
            accurate_ratings=0,
        )
        self._db.add(rater)
        self._db.flush()
        return rater

    def get_trust(self, rater_id: uuid.UUID) -> float:
        """Current trust, clamped in case bounds were tightened since it was stored."""
        score = self._db.execute(
            select(Rater.trust_score).where(Rater.id == rater_id)
        ).scalar_one_or_none()
        if score is None:
            raise NotFoundError("rater", rater_id)
        return self.clamp(float(score))

    def adjust_trust(self, rater_id: uuid.UUID, delta: float) -> float:
        """Add delta, clamp to bounds, persist; return the new value."""
        lo, hi = self._config.trust_min, self._config.trust_max
        target = Rater.trust_score + delta
        stmt = (
            update(Rater)
            .where(Rater.id == rater_id)
            .values(
                trust_score=case(
                    (target < lo, literal(lo)),
                    (target > hi, literal(hi)),
                    else_=target,
                )
            )
            .execution_options(synchronize_session=False)
        )
        self._db.execute(stmt)

        # Reload so an instance already in the session sees the stored value.
        rater = self._db.get(Rater, rater_id, populate_existing=True)
        if rater is None:
            raise NotFoundError("rater", rater_id)

        logger.debug("rater trust adjusted rater_id=%s delta=%+.3f new=%.3f", rater_id, delta, rater.trust_score)
        return float(rater.trust_score)

    def record_accurate_rating(self, rater_id: uuid.UUID) -> None:
        self._db.execute(
            update(Rater)
            .where(Rater.id == rater_id)
            .values(accurate_ratings=Rater.accurate_ratings + 1)
            .execution_options(synchronize_session="fetch")
        )
