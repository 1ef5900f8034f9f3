"""CrossReferenceResult model.

An independent confirmation or refutation of a claim attributed to a source.
Append-only: a correction is a new row, so the accuracy component can always
be explained from the full verification history.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Index, Text, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.base import Base, UTCDateTime, UUIDPrimaryKeyMixin, utc_now, validate_utc


class CrossReferenceImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a CrossReferenceResult."""


class CrossReferenceResult(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "cross_reference_results"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_cross_reference_results_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Content and claim ids belong to the ingestion pipeline; stored as opaque references.
    content_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)

    claim_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    was_accurate: Mapped[bool] = mapped_column(Boolean, nullable=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)

    verification_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    verified_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_cross_reference_results_confidence_range",
        ),
        Index("ix_cross_reference_results_source_verified", "source_id", "verified_at"),
    )

    @validates("verified_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return validate_utc(key, value)


@event.listens_for(CrossReferenceResult, "before_update", propagate=True)
def _cross_reference_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise CrossReferenceImmutabilityError(
            "CrossReferenceResult is append-only; updates are forbidden (changed: "
            + ", ".join(sorted(changed))
            + "). Record a correction as a new result."
        )


@event.listens_for(CrossReferenceResult, "before_delete", propagate=True)
def _cross_reference_prevent_delete(mapper, connection, target) -> None:
    raise CrossReferenceImmutabilityError(
        "CrossReferenceResult deletion is forbidden. Verification history must remain complete."
    )
