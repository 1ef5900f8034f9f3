"""Rating model.

One active rating per (source, rater). A repeat submission edits the row in
place: value, comment, weight and `submitted_at` change, `created_at` keeps
the first submission time.

- `created_at` drives spike detection (new ratings per window).
- `submitted_at` drives coordination ordering and trust feedback.
- `weight` is the rater's trust at the latest submission; outside intake it
  changes only through an explicit anomaly resolution.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    SmallInteger,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, CreatedAtMixin, UpdatedAtMixin, UTCDateTime, UUIDPrimaryKeyMixin, utc_now, validate_utc


RATING_MIN = 1
RATING_MAX = 5


class Rating(UUIDPrimaryKeyMixin, CreatedAtMixin, UpdatedAtMixin, Base):
    __tablename__ = "source_ratings"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_source_ratings_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    rater_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("raters.id", name="fk_source_ratings_rater_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    value: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)

    is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("source_id", "rater_id", name="uq_source_ratings_source_rater"),
        CheckConstraint(
            f"value >= {RATING_MIN} AND value <= {RATING_MAX}",
            name="ck_source_ratings_value_range",
        ),
        CheckConstraint("weight > 0", name="ck_source_ratings_weight_positive"),
        Index("ix_source_ratings_source_created", "source_id", "created_at"),
        Index("ix_source_ratings_source_submitted", "source_id", "submitted_at"),
    )

    @validates("value")
    def _validate_value(self, key: str, value: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not RATING_MIN <= value <= RATING_MAX:
            raise ValueError(f"{key} must be an integer between {RATING_MIN} and {RATING_MAX}.")
        return value

    @validates("created_at", "submitted_at", "updated_at")
    def _validate_utc(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        return validate_utc(key, value)
