"""Error taxonomy for the reputation engine.

- ValidationError / RateLimitExceeded / NotFoundError: the request is rejected
  and nothing is persisted.
- StorageError: any persistence failure. The unit of work is rolled back as a
  whole (never a score without its history entry); retry belongs to the caller.

Anomalies are not errors. A rating caught by a manipulation rule still
succeeds for its submitter and is silently excluded from scoring.
"""

from __future__ import annotations

from typing import Any


class ReputationError(RuntimeError):
    """Base error for the reputation engine."""


class ValidationError(ReputationError):
    """Malformed input (rating value, confidence, resolution action)."""


class RateLimitExceeded(ReputationError):
    """The rater has used up today's allowance of new ratings."""

    def __init__(self, rater_id: Any, limit: int) -> None:
        super().__init__(f"Daily rating limit reached ({limit} per day).")
        self.rater_id = rater_id
        self.limit = limit
        self.remaining = 0


class NotFoundError(ReputationError):
    """Unknown source, rater or anomaly."""

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class StorageError(ReputationError):
    """Persistence failure (including lock and statement timeouts)."""
