"""RatingAnomaly model.

A detected manipulation pattern over one source's ratings. Anomalies are data,
not errors: the affected ratings are flagged and silently excluded from the
rating component until an administrator resolves the anomaly.

Allowed mutation: only the resolution fields (`resolved`, `resolution_action`,
`resolved_at`) may change, once. Detection facts are immutable.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Text, Uuid, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql.sqltypes import Enum as SAEnum

from app.core.base import Base, JSONType, UTCDateTime, UUIDPrimaryKeyMixin, utc_now, validate_utc


class RatingAnomalyImmutabilityError(RuntimeError):
    """Raised when detection fields of a RatingAnomaly are modified or it is deleted."""


class AnomalyType(str, Enum):
    SPIKE = "spike"
    COORDINATED = "coordinated"
    BOT_SUSPECTED = "bot_suspected"


class ResolutionAction(str, Enum):
    DISMISS = "dismiss"  # false positive: unflag every affected rating
    CONFIRM = "confirm"  # manipulation confirmed: ratings stay excluded
    UNFLAG = "unflag"  # unflag an explicit subset


class RatingAnomaly(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "rating_anomalies"

    source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sources.id", name="fk_rating_anomalies_source_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    anomaly_type: Mapped[AnomalyType] = mapped_column(
        SAEnum(
            AnomalyType,
            name="rating_anomaly_type",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )

    # Rating ids as strings (JSON has no UUID type).
    affected_rating_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    detected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    resolution_action: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_rating_anomalies_source_open", "source_id", "resolved"),
        Index("ix_rating_anomalies_detected_at", "detected_at"),
    )

    @validates("detected_at", "resolved_at")
    def _validate_utc(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        return validate_utc(key, value)

    def affected_ids(self) -> frozenset[uuid.UUID]:
        return frozenset(uuid.UUID(i) for i in self.affected_rating_ids)


_IMMUTABLE_FIELDS = (
    "source_id",
    "anomaly_type",
    "affected_rating_ids",
    "details",
    "detected_at",
)


@event.listens_for(RatingAnomaly, "before_update", propagate=True)
def _rating_anomaly_prevent_forbidden_updates(mapper, connection, target) -> None:
    state = inspect(target)
    if not state.persistent:
        return

    for attr_name in _IMMUTABLE_FIELDS:
        if state.attrs[attr_name].history.has_changes():
            raise RatingAnomalyImmutabilityError(
                f"RatingAnomaly is immutable: field '{attr_name}' cannot be updated. "
                "Only the resolution may be recorded."
            )

    resolved_hist = state.attrs["resolved"].history
    if resolved_hist.deleted and resolved_hist.deleted[0] is True:
        raise RatingAnomalyImmutabilityError("RatingAnomaly resolution is final; it cannot be reopened.")


@event.listens_for(RatingAnomaly, "before_delete", propagate=True)
def _rating_anomaly_prevent_delete(mapper, connection, target) -> None:
    raise RatingAnomalyImmutabilityError(
        "RatingAnomaly deletion is forbidden. Detection history must remain auditable."
    )
