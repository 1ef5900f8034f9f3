"""ReliabilityHistoryEntry model.

Append-only audit trail of score recomputations: one row per aggregator
invocation (a decay pass that applies no decay and leaves the score unchanged
is the only recompute that writes nothing). Entries are immutable and never
deleted.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Index, SmallInteger, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, JSONType, UTCDateTime, UUIDPrimaryKeyMixin, utc_now, validate_utc


class ReliabilityHistoryImmutabilityError(RuntimeError):
    """Raised when an attempt is made to mutate or delete a history entry."""


class ChangeReason(str, Enum):
    USER_RATING = "user_rating"
    DECAY = "decay"
    CROSS_REFERENCE = "cross_reference"
    MANUAL = "manual"
    ANOMALY_CORRECTION = "anomaly_correction"


class ReliabilityHistoryEntry(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "reliability_history"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_reliability_history_source_id", ondelete="RESTRICT"),
        nullable=False,
    )

    old_score: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    new_score: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    reason: Mapped[ChangeReason] = mapped_column(
        SAEnum(
            ChangeReason,
            name="reliability_change_reason",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    change_metadata: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    changed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_reliability_history_source_changed", "source_id", "changed_at"),
    )

    @validates("changed_at")
    def _validate_utc(self, key: str, value: datetime) -> datetime:
        return validate_utc(key, value)


@event.listens_for(ReliabilityHistoryEntry, "before_update", propagate=True)
def _reliability_history_prevent_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    changed = [a.key for a in state.attrs if a.history.has_changes()]
    if changed:
        raise ReliabilityHistoryImmutabilityError(
            "ReliabilityHistoryEntry is immutable; updates are forbidden (changed: "
            + ", ".join(sorted(changed))
            + ")."
        )


@event.listens_for(ReliabilityHistoryEntry, "before_delete", propagate=True)
def _reliability_history_prevent_delete(mapper, connection, target) -> None:
    raise ReliabilityHistoryImmutabilityError(
        "ReliabilityHistoryEntry deletion is forbidden. Score history must remain auditable."
    )
