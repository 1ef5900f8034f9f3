"""Read models returned by the reputation service."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ChangeReasonName = Literal["user_rating", "decay", "cross_reference", "manual", "anomaly_correction"]
AnomalyTypeName = Literal["spike", "coordinated", "bot_suspected"]


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)


class RatingView(_ReadModel):
    id: uuid.UUID
    source_id: uuid.UUID
    rater_id: uuid.UUID
    value: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    weight: float
    is_flagged: bool
    flag_reason: Optional[str] = None
    created_at: datetime
    submitted_at: datetime


class RatingReceipt(_ReadModel):
    rating: RatingView
    is_update: bool


class RatingStats(_ReadModel):
    total_ratings: int
    average_rating: float
    weighted_average_rating: float
    distribution: dict[int, int]


class Pagination(_ReadModel):
    limit: int
    offset: int
    has_more: bool


class RatingsPage(_ReadModel):
    ratings: list[RatingView] = Field(default_factory=list)
    stats: RatingStats
    pagination: Pagination


class RecentRating(_ReadModel):
    id: uuid.UUID
    value: int
    comment: Optional[str] = None
    created_at: datetime


class SourceReputation(_ReadModel):
    source_id: uuid.UUID
    name: str
    reliability_score: int = Field(ge=0, le=100)
    total_ratings: int
    average_rating: float
    weighted_average_rating: float
    accurate_claims: int
    total_claims_verified: int
    accuracy_rate: float = Field(ge=0.0, le=1.0)
    is_stale: bool
    last_content_at: Optional[datetime] = None
    cumulative_decay_applied: int
    open_anomalies: int
    recent_ratings: list[RecentRating] = Field(default_factory=list)


class ReliabilityHistoryItem(_ReadModel):
    id: uuid.UUID
    old_score: int
    new_score: int
    reason: ChangeReasonName
    change_metadata: dict = Field(default_factory=dict)
    changed_at: datetime


class CrossReferenceView(_ReadModel):
    id: uuid.UUID
    source_id: uuid.UUID
    content_id: Optional[str] = None
    claim_id: Optional[str] = None
    was_accurate: bool
    confidence: float = Field(ge=0.0, le=1.0)
    verification_note: Optional[str] = None
    verified_at: datetime


class AnomalyView(_ReadModel):
    id: uuid.UUID
    source_id: uuid.UUID
    anomaly_type: AnomalyTypeName
    affected_rating_ids: list[uuid.UUID]
    details: dict = Field(default_factory=dict)
    detected_at: datetime
    resolved: bool
    resolution_action: Optional[str] = None
    resolved_at: Optional[datetime] = None


class AnomalyResolutionView(_ReadModel):
    anomaly: AnomalyView
    unflagged: list[uuid.UUID] = Field(default_factory=list)
    still_flagged: list[uuid.UUID] = Field(default_factory=list)
    reweighted: list[uuid.UUID] = Field(default_factory=list)
    reliability_score: int


class DecayDetailView(_ReadModel):
    source_id: uuid.UUID
    decay_applied: int
    weeks: int
    old_score: int
    new_score: int
    cumulative_decay: int


class DecayPassSummary(_ReadModel):
    processed: int
    decayed: int
    cancelled: int = 0
    errors: int = 0
    dry_run: bool = False
    details: list[DecayDetailView] = Field(default_factory=list)
