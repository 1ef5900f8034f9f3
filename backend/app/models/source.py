"""Source model.

A tracked information origin (feed, account, outlet) and its reliability
score. The score is owned by the score aggregator; the decay scheduler owns
the decay bookkeeping; content ingestion only touches `last_content_at`.

Deletion is forbidden once the source carries ratings, verifications or
history: the audit trail must stay resolvable.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, SmallInteger, Text, event, func, select
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, CreatedAtMixin, JSONType, UpdatedAtMixin, UTCDateTime, UUIDPrimaryKeyMixin, validate_utc


class SourceDeletionError(RuntimeError):
    """Raised when deleting a source that is still referenced."""


class Source(UUIDPrimaryKeyMixin, CreatedAtMixin, UpdatedAtMixin, Base):
    """Aggregation target with its current reliability score."""

    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(Text, nullable=False)

    reliability_score: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=50)

    last_content_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    cumulative_decay_applied: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)

    last_decay_applied_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Fingerprint of the scoring inputs seen by the last recompute.
    score_inputs: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Looser than score_floor (configurable); the aggregator clamps to the configured range.
    __table_args__ = (
        CheckConstraint(
            "reliability_score >= 0 AND reliability_score <= 100",
            name="ck_sources_reliability_score_range",
        ),
        CheckConstraint(
            "cumulative_decay_applied >= 0",
            name="ck_sources_cumulative_decay_non_negative",
        ),
    )

    @validates("last_content_at", "last_decay_applied_at", "created_at", "updated_at")
    def _validate_utc(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        return validate_utc(key, value)


@event.listens_for(Source, "before_delete", propagate=True)
def _source_prevent_referenced_delete(mapper, connection, target) -> None:
    from app.models.cross_reference import CrossReferenceResult
    from app.models.rating import Rating
    from app.models.reliability_history import ReliabilityHistoryEntry

    for model in (Rating, CrossReferenceResult, ReliabilityHistoryEntry):
        count = connection.execute(
            select(func.count()).select_from(model).where(model.source_id == target.id)
        ).scalar_one()
        if count:
            raise SourceDeletionError(
                f"Source {target.id} is still referenced by {model.__tablename__}; deletion is forbidden."
            )
