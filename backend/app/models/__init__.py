"""SQLAlchemy models package.

All ORM classes must be registered deterministically so mapper configuration
and `Base.metadata` do not depend on import order.
"""

from app.models import (  # noqa: F401
    cross_reference,
    rater,
    rating,
    rating_anomaly,
    reliability_history,
    source,
)
