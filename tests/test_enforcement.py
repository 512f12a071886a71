from datetime import datetime, timezone

import pytest

from tq.domain import Tier
from tq.enforcement import (
    EnforcementRecord,
    EnforcementStatus,
    SignalAction,
    apply_usage,
    release,
    transition,
)
from tq.pacing import LedgerEntry

NOW = datetime(2025, 5, 3, 12, 0, tzinfo=timezone.utc)


def _entry(bank):
    return LedgerEntry(user_id="u", tier=Tier.P2, base_quota_bytes=300, bank_bytes=bank)


def test_usage_within_bank_is_spent():
    entry, record = _entry(100), EnforcementRecord("u")
    assert apply_usage(entry, record, 40, "n1", NOW) is None
    assert entry.bank_bytes == 60
    assert record.status == EnforcementStatus.ACTIVE


def test_spending_exactly_the_bank_keeps_user_active():
    entry, record = _entry(100), EnforcementRecord("u")
    assert apply_usage(entry, record, 100, "n1", NOW) is None
    assert entry.bank_bytes == 0
    assert not record.suspended


def test_overdraw_suspends_and_clamps():
    entry, record = _entry(100), EnforcementRecord("u")
    signal = apply_usage(entry, record, 101, "n1", NOW)
    assert entry.bank_bytes == 0
    assert record.suspended
    assert record.suspended_since == NOW.isoformat()
    assert signal.action == SignalAction.SUSPEND
    assert signal.to_dict() == {
        "node_id": "n1",
        "user_id": "u",
        "action": "suspend",
        "reason": "balance_exhausted",
        "bank_bytes": 0,
        "ts_utc": NOW.isoformat(),
    }


def test_suspended_user_reinstated_on_positive_bank():
    entry, record = _entry(0), EnforcementRecord("u", EnforcementStatus.SUSPENDED, "x")
    assert apply_usage(entry, record, 0, "n1", NOW) is None
    entry.bank_bytes = 10
    signal = apply_usage(entry, record, 0, "n1", NOW)
    assert signal.action == SignalAction.REINSTATE
    assert signal.bank_bytes == 10
    assert record.status == EnforcementStatus.ACTIVE
    assert record.suspended_since is None


def test_usage_while_suspended_is_charged():
    entry, record = _entry(30), EnforcementRecord("u", EnforcementStatus.SUSPENDED, "x")
    assert apply_usage(entry, record, 50, "n1", NOW) is None
    assert entry.bank_bytes == 0
    assert record.suspended


def test_negative_delta_treated_as_zero():
    entry, record = _entry(30), EnforcementRecord("u")
    assert apply_usage(entry, record, -5, "n1", NOW) is None
    assert entry.bank_bytes == 30


def test_invalid_transition_raises():
    with pytest.raises(ValueError):
        transition(EnforcementRecord("u"), SignalAction.REINSTATE, "n1", 0, "x", NOW)


def test_release_only_acts_on_suspended():
    assert release(EnforcementRecord("u"), "n1", "unlimited", NOW) is None
    record = EnforcementRecord("u", EnforcementStatus.SUSPENDED, "x")
    signal = release(record, "n1", "unlimited", NOW)
    assert signal.action == SignalAction.REINSTATE
    assert signal.reason == "unlimited"
    assert not record.suspended
