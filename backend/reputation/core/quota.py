"""Daily rating quota (anti-gaming).

Design:
- Fixed window per UTC day, per rater.
- Only new ratings consume quota; editing an existing rating is free.
- Check-and-increment is one conditional UPDATE (`rating_count < limit`), so
  concurrent submissions from the same rater cannot overshoot the ceiling.
"""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.rater import RaterDailyQuota
from reputation.core.errors import RateLimitExceeded


class DailyRatingQuota:
    """Persistent per-rater daily counter."""

    def __init__(self, db: Session, *, limit_per_day: int) -> None:
        self._db = db
        self._limit = limit_per_day

    @property
    def limit(self) -> int:
        return self._limit

    def used(self, rater_id: uuid.UUID, *, day: date) -> int:
        count = self._db.execute(
            select(RaterDailyQuota.rating_count).where(
                RaterDailyQuota.rater_id == rater_id,
                RaterDailyQuota.day == day,
            )
        ).scalar_one_or_none()
        return int(count or 0)

    def remaining(self, rater_id: uuid.UUID, *, day: date) -> int:
        return max(0, self._limit - self.used(rater_id, day=day))

    def _try_increment(self, rater_id: uuid.UUID, day: date) -> bool:
        stmt = (
            update(RaterDailyQuota)
            .where(
                RaterDailyQuota.rater_id == rater_id,
                RaterDailyQuota.day == day,
                RaterDailyQuota.rating_count < self._limit,
            )
            .values(rating_count=RaterDailyQuota.rating_count + 1)
            .execution_options(synchronize_session=False)
        )
        return self._db.execute(stmt).rowcount == 1

    def consume(self, rater_id: uuid.UUID, *, day: date) -> None:
        """Take one unit of today's quota or raise RateLimitExceeded."""
        if self._try_increment(rater_id, day):
            return

        exists = self._db.execute(
            select(RaterDailyQuota.id).where(
                RaterDailyQuota.rater_id == rater_id,
                RaterDailyQuota.day == day,
            )
        ).first()
        if exists is not None or self._limit <= 0:
            raise RateLimitExceeded(rater_id, self._limit)

        # First rating of the day. A concurrent first insert wins the unique
        # constraint; fall back to the conditional increment on its row.
        try:
            with self._db.begin_nested():
                self._db.add(RaterDailyQuota(rater_id=rater_id, day=day, rating_count=1))
        except IntegrityError:
            if not self._try_increment(rater_id, day):
                raise RateLimitExceeded(rater_id, self._limit) from None
