"""Reputation repository (read-only)."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import Select, case, func, select

from app.models.cross_reference import CrossReferenceResult
from app.models.rating import RATING_MAX, RATING_MIN, Rating
from app.models.rating_anomaly import RatingAnomaly
from app.models.reliability_history import ReliabilityHistoryEntry
from app.models.source import Source
from app.repositories.base import BaseRepository


@dataclass(frozen=True, slots=True)
class SourceDTO:
    id: uuid.UUID
    name: str
    reliability_score: int
    last_content_at: Optional[datetime]
    cumulative_decay_applied: int
    last_decay_applied_at: Optional[datetime]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class RatingDTO:
    id: uuid.UUID
    source_id: uuid.UUID
    rater_id: uuid.UUID
    value: int
    comment: Optional[str]
    weight: float
    is_flagged: bool
    flag_reason: Optional[str]
    created_at: datetime
    submitted_at: datetime


@dataclass(frozen=True, slots=True)
class RatingStatsDTO:
    total_ratings: int
    average_rating: float
    weighted_average_rating: float
    distribution: dict[int, int]


@dataclass(frozen=True, slots=True)
class AccuracyStatsDTO:
    total_claims_verified: int
    accurate_claims: int

    @property
    def accuracy_rate(self) -> float:
        if self.total_claims_verified == 0:
            return 0.0
        return self.accurate_claims / self.total_claims_verified


@dataclass(frozen=True, slots=True)
class HistoryDTO:
    id: uuid.UUID
    source_id: uuid.UUID
    old_score: int
    new_score: int
    reason: str
    change_metadata: dict
    changed_at: datetime


@dataclass(frozen=True, slots=True)
class AnomalyDTO:
    id: uuid.UUID
    source_id: uuid.UUID
    anomaly_type: str
    affected_rating_ids: list[str]
    details: dict
    detected_at: datetime
    resolved: bool
    resolution_action: Optional[str]
    resolved_at: Optional[datetime]


class ReputationRepository(BaseRepository[Source]):
    """Read-only access for sources, ratings, verifications and audit history."""

    def get_source(self, source_id: uuid.UUID) -> Optional[SourceDTO]:
        stmt: Select = select(Source).where(Source.id == source_id)
        row = self._execute(stmt).scalar_one_or_none()
        return _to_source_dto(row) if row is not None else None

    def list_ratings(self, source_id: uuid.UUID, *, limit: int, offset: int = 0) -> Sequence[RatingDTO]:
        """Newest first; flagged ratings are listed with their flag."""
        stmt: Select = (
            select(Rating)
            .where(Rating.source_id == source_id)
            .order_by(Rating.created_at.desc(), Rating.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [to_rating_dto(r) for r in self._execute(stmt).scalars().all()]

    def count_ratings(self, source_id: uuid.UUID) -> int:
        stmt: Select = select(func.count(Rating.id)).where(Rating.source_id == source_id)
        return int(self._execute(stmt).scalar_one())

    def rating_stats(self, source_id: uuid.UUID) -> RatingStatsDTO:
        """Aggregates over non-flagged ratings only."""
        eligible = (Rating.source_id == source_id, Rating.is_flagged.is_(False))
        total, avg_value, weighted_sum, weight_sum = self._execute(
            select(
                func.count(Rating.id),
                func.avg(Rating.value),
                func.sum(Rating.value * Rating.weight),
                func.sum(Rating.weight),
            ).where(*eligible)
        ).one()

        distribution = {v: 0 for v in range(RATING_MIN, RATING_MAX + 1)}
        for value, n in self._execute(
            select(Rating.value, func.count(Rating.id)).where(*eligible).group_by(Rating.value)
        ).all():
            distribution[int(value)] = int(n)

        weighted_avg = float(weighted_sum) / float(weight_sum) if weight_sum else 0.0
        return RatingStatsDTO(
            total_ratings=int(total or 0),
            average_rating=float(avg_value or 0.0),
            weighted_average_rating=weighted_avg,
            distribution=distribution,
        )

    def accuracy_stats(self, source_id: uuid.UUID) -> AccuracyStatsDTO:
        total, accurate = self._execute(
            select(
                func.count(CrossReferenceResult.id),
                func.sum(case((CrossReferenceResult.was_accurate.is_(True), 1), else_=0)),
            ).where(CrossReferenceResult.source_id == source_id)
        ).one()
        return AccuracyStatsDTO(total_claims_verified=int(total or 0), accurate_claims=int(accurate or 0))

    def list_history(self, source_id: uuid.UUID, *, limit: int) -> Sequence[HistoryDTO]:
        stmt: Select = (
            select(ReliabilityHistoryEntry)
            .where(ReliabilityHistoryEntry.source_id == source_id)
            .order_by(ReliabilityHistoryEntry.changed_at.desc(), ReliabilityHistoryEntry.id.desc())
            .limit(limit)
        )
        return [_to_history_dto(r) for r in self._execute(stmt).scalars().all()]

    def count_open_anomalies(self, source_id: uuid.UUID) -> int:
        stmt: Select = select(func.count(RatingAnomaly.id)).where(
            RatingAnomaly.source_id == source_id,
            RatingAnomaly.resolved.is_(False),
        )
        return int(self._execute(stmt).scalar_one())

    def list_anomalies(self, source_id: uuid.UUID, *, include_resolved: bool = False) -> Sequence[AnomalyDTO]:
        stmt: Select = select(RatingAnomaly).where(RatingAnomaly.source_id == source_id)
        if not include_resolved:
            stmt = stmt.where(RatingAnomaly.resolved.is_(False))
        stmt = stmt.order_by(RatingAnomaly.detected_at.desc(), RatingAnomaly.id.asc())
        return [to_anomaly_dto(r) for r in self._execute(stmt).scalars().all()]


def _to_source_dto(s: Source) -> SourceDTO:
    return SourceDTO(
        id=s.id,
        name=s.name,
        reliability_score=int(s.reliability_score),
        last_content_at=s.last_content_at,
        cumulative_decay_applied=int(s.cumulative_decay_applied),
        last_decay_applied_at=s.last_decay_applied_at,
        created_at=s.created_at,
    )


def to_rating_dto(r: Rating) -> RatingDTO:
    return RatingDTO(
        id=r.id,
        source_id=r.source_id,
        rater_id=r.rater_id,
        value=int(r.value),
        comment=r.comment,
        weight=float(r.weight),
        is_flagged=bool(r.is_flagged),
        flag_reason=r.flag_reason,
        created_at=r.created_at,
        submitted_at=r.submitted_at,
    )


def _to_history_dto(h: ReliabilityHistoryEntry) -> HistoryDTO:
    return HistoryDTO(
        id=h.id,
        source_id=h.source_id,
        old_score=int(h.old_score),
        new_score=int(h.new_score),
        reason=h.reason.value,
        change_metadata=dict(h.change_metadata or {}),
        changed_at=h.changed_at,
    )


def to_anomaly_dto(a: RatingAnomaly) -> AnomalyDTO:
    return AnomalyDTO(
        id=a.id,
        source_id=a.source_id,
        anomaly_type=a.anomaly_type.value,
        affected_rating_ids=list(a.affected_rating_ids),
        details=dict(a.details or {}),
        detected_at=a.detected_at,
        resolved=bool(a.resolved),
        resolution_action=a.resolution_action,
        resolved_at=a.resolved_at,
    )
