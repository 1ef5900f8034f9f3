"""SQLAlchemy declarative base and shared mixins.

Reputation rationale:
- UUID primary keys so source, rater and rating ids can be referenced by the
  orchestration layer without leaking row counts.
- Explicit UTC-only, timezone-aware timestamps: every scoring rule (spike
  windows, staleness, decay weeks) is a comparison between timestamps.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


UTC = timezone.utc

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Reject naive datetimes; normalize aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime must be timezone-aware (UTC).")
    return value.astimezone(UTC)


class UTCDateTime(TypeDecorator):
    """timestamptz that always round-trips as an aware UTC datetime.

    SQLite drops the offset on storage; values read back naive are UTC by
    construction because binds are normalized before they are written.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value: Optional[Any], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class UUIDPrimaryKeyMixin:
    """UUID primary key mixin (application-generated)."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )


class CreatedAtMixin:
    """Created-at timestamp mixin (UTC, application-supplied).

    Engine operations pass their own `now` so that time-window rules are
    evaluated against the same clock that stamped the rows.
    """

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )


class UpdatedAtMixin:
    """Updated-at timestamp mixin (UTC).

    Only use for mutable tables. History, cross-references and anomalies are
    append-only and do not carry it.
    """

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        onupdate=utc_now,
    )


def validate_utc(key: str, value: Optional[datetime]) -> Optional[datetime]:
    """Shared `@validates` body: timezone-aware, offset 0."""
    if value is None:
        return None
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{key} must be timezone-aware (UTC).")
    if value.utcoffset() != timedelta(0):
        raise ValueError(f"{key} must be UTC (offset 0).")
    return value.astimezone(UTC)
