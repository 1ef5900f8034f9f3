"""Cross-Reference Tracker.

Records verification outcomes of claims made by a source. Results are
append-only; a correction is simply a newer result. Recording does not adjust
rater trust: it returns a `VerificationResolved` event for the feedback step.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.base import ensure_utc, utc_now
from app.models.cross_reference import CrossReferenceResult
from app.models.source import Source
from reputation.core.config import EngineConfig
from reputation.core.errors import NotFoundError, ValidationError
from reputation.core.feedback import VerificationResolved

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RecordedVerification:
    result: CrossReferenceResult
    event: VerificationResolved


def clamp_confidence(confidence: object) -> float:
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValidationError("confidence must be a number.")
    value = float(confidence)
    if math.isnan(value):
        raise ValidationError("confidence must be a number.")
    return max(0.0, min(1.0, value))


class CrossReferenceTracker:
    def __init__(self, db: Session, config: EngineConfig) -> None:
        self._db = db
        self._config = config

    def record(
        self,
        source_id: uuid.UUID,
        content_id: Optional[str],
        was_accurate: bool,
        note: Optional[str] = None,
        confidence: float = 0.5,
        claim_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> RecordedVerification:
        if not isinstance(was_accurate, bool):
            raise ValidationError("was_accurate must be a boolean.")
        confidence = clamp_confidence(confidence)
        now = ensure_utc(now) if now is not None else utc_now()

        if self._db.get(Source, source_id) is None:
            raise NotFoundError("source", source_id)

        result = CrossReferenceResult(
            source_id=source_id,
            content_id=content_id,
            claim_id=claim_id,
            was_accurate=was_accurate,
            confidence=confidence,
            verification_note=note,
            verified_at=now,
        )
        self._db.add(result)
        self._db.flush()

        logger.info(
            "cross reference recorded source_id=%s result_id=%s was_accurate=%s confidence=%.2f",
            source_id,
            result.id,
            was_accurate,
            confidence,
        )
        event = VerificationResolved(
            source_id=source_id,
            cross_reference_id=result.id,
            was_accurate=was_accurate,
            verified_at=now,
        )
        return RecordedVerification(result=result, event=event)
