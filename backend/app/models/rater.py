"""Rater trust profile and daily rating quota.

One profile per user who rates sources. `trust_score` is the multiplier used
as the weight of that user's ratings; it moves only through the trust
ledger's bounded adjustment.

The daily counter lives in its own table keyed by (rater, UTC day) so that
"resets daily" is a new row rather than a scheduled reset, and the
check-and-increment can be one conditional UPDATE.
"""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import CheckConstraint, Date, Float, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.base import Base, CreatedAtMixin, UpdatedAtMixin, UUIDPrimaryKeyMixin


class Rater(UUIDPrimaryKeyMixin, CreatedAtMixin, UpdatedAtMixin, Base):
    __tablename__ = "raters"

    trust_score: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    total_ratings_given: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Ratings later confirmed by a cross-reference outcome.
    accurate_ratings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("trust_score > 0", name="ck_raters_trust_score_positive"),
    )


class RaterDailyQuota(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "rater_daily_quotas"

    rater_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("raters.id", name="fk_rater_daily_quotas_rater_id", ondelete="CASCADE"),
        nullable=False,
    )

    day: Mapped[date] = mapped_column(Date, nullable=False)

    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("rater_id", "day", name="uq_rater_daily_quotas_rater_day"),
        CheckConstraint("rating_count >= 0", name="ck_rater_daily_quotas_count_non_negative"),
    )
