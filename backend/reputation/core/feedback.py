"""Verification feedback (rater trust <- verification outcome).

The cross-reference tracker does not touch rater trust itself. It emits a
`VerificationResolved` event and this module consumes it, which keeps the
dependency graph one-directional: tracker -> feedback -> trust ledger.

Scoring of a rating against an outcome:
- value >= 4 endorses accuracy, value <= 2 endorses inaccuracy, 3 is neutral.
- Only ratings submitted before the verification are scored.
- Ratings currently flagged by an anomaly are not scored; their authenticity
  is in question until resolved.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.rating import Rating
from reputation.core.config import EngineConfig
from reputation.core.trust_ledger import TrustLedger

logger = logging.getLogger(__name__)

ENDORSE_ACCURATE_MIN = 4
ENDORSE_INACCURATE_MAX = 2


@dataclass(frozen=True, slots=True)
class VerificationResolved:
    """Verification of a claim by `source_id` resolved at `verified_at`."""

    source_id: uuid.UUID
    cross_reference_id: uuid.UUID
    was_accurate: bool
    verified_at: datetime


@dataclass(slots=True)
class FeedbackSummary:
    aligned: list[uuid.UUID] = field(default_factory=list)
    misaligned: list[uuid.UUID] = field(default_factory=list)
    neutral: int = 0


def rating_endorsement(value: int) -> Optional[bool]:
    """True: endorses accuracy; False: endorses inaccuracy; None: neutral."""
    if value >= ENDORSE_ACCURATE_MIN:
        return True
    if value <= ENDORSE_INACCURATE_MAX:
        return False
    return None


def apply_verification_feedback(
    db: Session,
    event: VerificationResolved,
    *,
    config: EngineConfig,
    ledger: Optional[TrustLedger] = None,
) -> FeedbackSummary:
    """Move trust of every eligible rater of the source by +/- trust_step."""
    ledger = ledger or TrustLedger(db, config)
    stmt = (
        select(Rating.rater_id, Rating.value)
        .where(Rating.source_id == event.source_id)
        .where(Rating.submitted_at < event.verified_at)
        .where(Rating.is_flagged.is_(False))
        .order_by(Rating.submitted_at.asc(), Rating.id.asc())
    )

    summary = FeedbackSummary()
    for rater_id, value in db.execute(stmt).all():
        endorsed = rating_endorsement(int(value))
        if endorsed is None:
            summary.neutral += 1
            continue
        if endorsed == event.was_accurate:
            ledger.adjust_trust(rater_id, config.trust_step)
            ledger.record_accurate_rating(rater_id)
            summary.aligned.append(rater_id)
        else:
            ledger.adjust_trust(rater_id, -config.trust_step)
            summary.misaligned.append(rater_id)

    logger.info(
        "verification feedback applied source_id=%s cross_reference_id=%s aligned=%d misaligned=%d neutral=%d",
        event.source_id,
        event.cross_reference_id,
        len(summary.aligned),
        len(summary.misaligned),
        summary.neutral,
    )
    return summary
