from __future__ import annotations

import uuid

import pytest

from reputation.core.errors import NotFoundError
from reputation.core.trust_ledger import TrustLedger


def test_register_rater_starts_at_default_and_is_idempotent(db_session, config):
    ledger = TrustLedger(db_session, config)
    rater_id = uuid.uuid4()

    first = ledger.register_rater(rater_id)
    again = ledger.register_rater(rater_id)

    assert first is again
    assert ledger.get_trust(rater_id) == pytest.approx(1.0)


def test_unknown_rater_is_not_found(db_session, config):
    ledger = TrustLedger(db_session, config)
    with pytest.raises(NotFoundError):
        ledger.get_trust(uuid.uuid4())
    with pytest.raises(NotFoundError):
        ledger.adjust_trust(uuid.uuid4(), 0.05)


def test_adjust_trust_clamps_to_bounds(db_session, config, make_rater):
    ledger = TrustLedger(db_session, config)
    high = make_rater(trust=2.98)
    low = make_rater(trust=0.12)

    assert ledger.adjust_trust(high.id, 0.05) == pytest.approx(3.0)
    assert ledger.adjust_trust(low.id, -0.05) == pytest.approx(0.1)
    assert ledger.adjust_trust(low.id, -1.0) == pytest.approx(0.1)


def test_adjust_trust_refreshes_loaded_instance(db_session, config, make_rater):
    ledger = TrustLedger(db_session, config)
    rater = make_rater(trust=1.0)

    ledger.adjust_trust(rater.id, 0.05)
    ledger.adjust_trust(rater.id, 0.05)

    assert rater.trust_score == pytest.approx(1.1)
    assert ledger.get_trust(rater.id) == pytest.approx(1.1)


def test_get_trust_clamps_when_bounds_tightened(db_session, config, make_rater):
    rater = make_rater(trust=2.5)
    tightened = TrustLedger(db_session, config.replace(trust_max=2.0))
    assert tightened.get_trust(rater.id) == pytest.approx(2.0)
