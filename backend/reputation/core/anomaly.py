"""Anomaly Detector.

Stateless scans over one source's persisted ratings. Two rules:

1. Spike: >= spike_threshold new ratings (by created_at) inside any rolling
   window of spike_window_minutes. Every rating of a qualifying window is
   flagged; overlapping qualifying windows merge into a single anomaly.
2. Coordination: among the latest coordination_window ratings (by
   submitted_at), one value holds >= coordination_threshold of the window.
   The ratings carrying that value are flagged.

Scans are idempotent: ratings already covered by an anomaly of the same type
(open or resolved) are never recorded again, so a dismissed false positive is
not re-flagged by the next recompute.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.base import ensure_utc, utc_now
from app.models.rating import Rating
from app.models.rating_anomaly import AnomalyType, RatingAnomaly, ResolutionAction
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_EPS = 1e-9


@dataclass(frozen=True, slots=True)
class RatingPoint:
    id: uuid.UUID
    value: int
    created_at: datetime
    submitted_at: datetime


@dataclass(frozen=True, slots=True)
class CoordinatedCluster:
    value: int
    share: float
    window_size: int
    rating_ids: frozenset[uuid.UUID]


@dataclass(frozen=True, slots=True)
class AnomalyResolution:
    anomaly: RatingAnomaly
    unflagged: frozenset[uuid.UUID]
    still_flagged: frozenset[uuid.UUID]
    reweighted: frozenset[uuid.UUID]


def find_spike_clusters(
    points: Sequence[RatingPoint],
    *,
    threshold: int,
    window: timedelta,
) -> list[list[RatingPoint]]:
    """Merged qualifying windows, oldest first. Window bounds are inclusive."""
    ordered = sorted(points, key=lambda p: (p.created_at, p.id))
    clusters: list[list[RatingPoint]] = []
    cluster_start: Optional[int] = None
    cluster_end = -1

    left = 0
    for right, point in enumerate(ordered):
        while point.created_at - ordered[left].created_at > window:
            left += 1
        if right - left + 1 < threshold:
            continue
        if cluster_start is not None and left <= cluster_end:
            cluster_end = right
            continue
        if cluster_start is not None:
            clusters.append(ordered[cluster_start : cluster_end + 1])
        cluster_start, cluster_end = left, right

    if cluster_start is not None:
        clusters.append(ordered[cluster_start : cluster_end + 1])
    return clusters


def find_coordinated(
    points: Sequence[RatingPoint],
    *,
    window_size: int,
    threshold: float,
    min_ratings: int,
) -> Optional[CoordinatedCluster]:
    latest = sorted(points, key=lambda p: (p.submitted_at, p.id), reverse=True)[:window_size]
    if len(latest) < min_ratings:
        return None

    counts = Counter(p.value for p in latest)
    # Ties cannot both clear a threshold above one half.
    value, count = max(counts.items(), key=lambda kv: (kv[1], kv[0]))
    share = count / len(latest)
    if share + _EPS < threshold:
        return None
    return CoordinatedCluster(
        value=value,
        share=share,
        window_size=len(latest),
        rating_ids=frozenset(p.id for p in latest if p.value == value),
    )


class AnomalyDetector:
    def __init__(self, db: Session, config: EngineConfig) -> None:
        self._db = db
        self._config = config

    def scan_source(self, source_id: uuid.UUID, *, now: Optional[datetime] = None) -> set[RatingAnomaly]:
        """Run every rule over the source; return the anomalies created by this scan."""
        now = ensure_utc(now) if now is not None else utc_now()
        ratings = {
            r.id: r
            for r in self._db.execute(select(Rating).where(Rating.source_id == source_id)).scalars()
        }
        if not ratings:
            return set()

        points = [RatingPoint(r.id, r.value, r.created_at, r.submitted_at) for r in ratings.values()]
        covered = self._covered_ids(source_id)
        cfg = self._config
        created: set[RatingAnomaly] = set()

        for cluster in find_spike_clusters(
            points,
            threshold=cfg.spike_threshold,
            window=timedelta(minutes=cfg.spike_window_minutes),
        ):
            ids = {p.id for p in cluster}
            details = {
                "window_minutes": cfg.spike_window_minutes,
                "threshold": cfg.spike_threshold,
                "cluster_size": len(cluster),
                "first_created_at": cluster[0].created_at.isoformat(),
                "last_created_at": cluster[-1].created_at.isoformat(),
            }
            anomaly = self._record(source_id, AnomalyType.SPIKE, ids, covered, details, ratings, now)
            if anomaly is not None:
                created.add(anomaly)

        coordinated = find_coordinated(
            points,
            window_size=cfg.coordination_window,
            threshold=cfg.coordination_threshold,
            min_ratings=cfg.coordination_min_ratings,
        )
        if coordinated is not None:
            details = {
                "value": coordinated.value,
                "share": round(coordinated.share, 4),
                "window_size": coordinated.window_size,
                "threshold": cfg.coordination_threshold,
            }
            anomaly = self._record(
                source_id, AnomalyType.COORDINATED, set(coordinated.rating_ids), covered, details, ratings, now
            )
            if anomaly is not None:
                created.add(anomaly)

        if created:
            self._db.flush()
        return created

    def _covered_ids(self, source_id: uuid.UUID) -> dict[AnomalyType, set[uuid.UUID]]:
        covered: dict[AnomalyType, set[uuid.UUID]] = {t: set() for t in AnomalyType}
        rows = self._db.execute(select(RatingAnomaly).where(RatingAnomaly.source_id == source_id)).scalars()
        for anomaly in rows:
            covered[anomaly.anomaly_type].update(anomaly.affected_ids())
        return covered

    def _record(
        self,
        source_id: uuid.UUID,
        anomaly_type: AnomalyType,
        candidate: set[uuid.UUID],
        covered: dict[AnomalyType, set[uuid.UUID]],
        details: dict,
        ratings: dict[uuid.UUID, Rating],
        now: datetime,
    ) -> Optional[RatingAnomaly]:
        new_ids = candidate - covered[anomaly_type]
        if not new_ids:
            return None

        ordered_ids = sorted(new_ids, key=str)
        anomaly = RatingAnomaly(
            source_id=source_id,
            anomaly_type=anomaly_type,
            affected_rating_ids=[str(i) for i in ordered_ids],
            details=details,
            detected_at=now,
            resolved=False,
        )
        self._db.add(anomaly)
        covered[anomaly_type].update(new_ids)

        for rating_id in ordered_ids:
            rating = ratings[rating_id]
            if not rating.is_flagged:
                rating.is_flagged = True
                rating.flag_reason = f"{anomaly_type.value} pattern"

        logger.warning(
            "rating anomaly detected source_id=%s type=%s ratings=%d",
            source_id,
            anomaly_type.value,
            len(ordered_ids),
        )
        return anomaly

    def list_anomalies(self, source_id: uuid.UUID, *, include_resolved: bool = False) -> list[RatingAnomaly]:
        stmt = select(RatingAnomaly).where(RatingAnomaly.source_id == source_id)
        if not include_resolved:
            stmt = stmt.where(RatingAnomaly.resolved.is_(False))
        stmt = stmt.order_by(RatingAnomaly.detected_at.desc(), RatingAnomaly.id.asc())
        return list(self._db.execute(stmt).scalars())

    def resolve(
        self,
        anomaly_id: uuid.UUID,
        action: str | ResolutionAction,
        rating_ids: Optional[Iterable[uuid.UUID]] = None,
        revised_weight: Optional[float] = None,
        *,
        now: Optional[datetime] = None,
    ) -> AnomalyResolution:
        """Record an administrative resolution.

        - dismiss: unflag every affected rating not held by another open anomaly.
        - unflag: same, restricted to `rating_ids` (must be affected ratings).
        - confirm: ratings stay excluded.

        `revised_weight` rewrites the stored weight of the unflagged ratings
        (of all affected ratings on confirm). It is the only path besides
        intake that changes a stored weight.
        """
        now = ensure_utc(now) if now is not None else utc_now()
        try:
            action = ResolutionAction(action)
        except ValueError as e:
            raise ValidationError(f"Unknown resolution action: {action!r}") from e

        anomaly = self._db.get(RatingAnomaly, anomaly_id)
        if anomaly is None:
            raise NotFoundError("anomaly", anomaly_id)
        if anomaly.resolved:
            raise ValidationError(f"Anomaly {anomaly_id} is already resolved.")

        affected = anomaly.affected_ids()
        if action is ResolutionAction.UNFLAG:
            targets = frozenset(rating_ids or ())
            if not targets:
                raise ValidationError("unflag requires rating_ids.")
            stray = targets - affected
            if stray:
                raise ValidationError(f"Ratings not covered by anomaly {anomaly_id}: {sorted(map(str, stray))}")
        elif rating_ids is not None:
            raise ValidationError(f"rating_ids is only accepted for '{ResolutionAction.UNFLAG.value}'.")
        elif action is ResolutionAction.DISMISS:
            targets = affected
        else:
            targets = frozenset()

        if revised_weight is not None:
            revised_weight = self._validate_weight(revised_weight)

        held = self._held_by_other_open(anomaly)
        ratings = {
            r.id: r
            for r in self._db.execute(
                select(Rating).where(Rating.source_id == anomaly.source_id, Rating.id.in_(affected))
            ).scalars()
        }

        unflagged: set[uuid.UUID] = set()
        for rating_id in targets:
            rating = ratings.get(rating_id)
            if rating is None or rating_id in held:
                continue
            rating.is_flagged = False
            rating.flag_reason = None
            unflagged.add(rating_id)

        reweighted: set[uuid.UUID] = set()
        if revised_weight is not None:
            scope = affected if action is ResolutionAction.CONFIRM else unflagged
            for rating_id in scope:
                rating = ratings.get(rating_id)
                if rating is not None:
                    rating.weight = revised_weight
                    reweighted.add(rating_id)

        anomaly.resolved = True
        anomaly.resolution_action = action.value
        anomaly.resolved_at = now
        self._db.flush()

        logger.info(
            "rating anomaly resolved anomaly_id=%s action=%s unflagged=%d reweighted=%d",
            anomaly_id,
            action.value,
            len(unflagged),
            len(reweighted),
        )
        return AnomalyResolution(
            anomaly=anomaly,
            unflagged=frozenset(unflagged),
            still_flagged=frozenset(affected - unflagged),
            reweighted=frozenset(reweighted),
        )

    def _validate_weight(self, weight: object) -> float:
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ValidationError("revised_weight must be a number.")
        value = float(weight)
        if not self._config.trust_min <= value <= self._config.trust_max:
            raise ValidationError(
                f"revised_weight must lie within [{self._config.trust_min}, {self._config.trust_max}]."
            )
        return value

    def _held_by_other_open(self, anomaly: RatingAnomaly) -> set[uuid.UUID]:
        held: set[uuid.UUID] = set()
        rows = self._db.execute(
            select(RatingAnomaly).where(
                RatingAnomaly.source_id == anomaly.source_id,
                RatingAnomaly.resolved.is_(False),
                RatingAnomaly.id != anomaly.id,
            )
        ).scalars()
        for other in rows:
            held.update(other.affected_ids())
        return held
