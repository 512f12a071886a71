"""
Enforcement decision: per (user, node) state machine active <-> suspended, driven only by
ledger balance versus observed usage. Transitions produce signals for the data-plane controller.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from tq.pacing import LedgerEntry


class EnforcementStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class SignalAction(str, Enum):
    SUSPEND = "suspend"
    REINSTATE = "reinstate"


TRANSITIONS: dict[EnforcementStatus, dict[SignalAction, EnforcementStatus]] = {
    EnforcementStatus.ACTIVE: {SignalAction.SUSPEND: EnforcementStatus.SUSPENDED},
    EnforcementStatus.SUSPENDED: {SignalAction.REINSTATE: EnforcementStatus.ACTIVE},
}


@dataclass
class EnforcementRecord:
    user_id: str
    status: EnforcementStatus = EnforcementStatus.ACTIVE
    suspended_since: str | None = None

    @property
    def suspended(self) -> bool:
        return self.status == EnforcementStatus.SUSPENDED


@dataclass(frozen=True)
class EnforcementSignal:
    node_id: str
    user_id: str
    action: SignalAction
    reason: str
    bank_bytes: int
    ts_utc: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "user_id": self.user_id,
            "action": self.action.value,
            "reason": self.reason,
            "bank_bytes": self.bank_bytes,
            "ts_utc": self.ts_utc,
        }


def transition(
    record: EnforcementRecord,
    action: SignalAction,
    node_id: str,
    bank_bytes: int,
    reason: str,
    now: datetime,
) -> EnforcementSignal:
    allowed = TRANSITIONS[record.status]
    if action not in allowed:
        raise ValueError(f"invalid transition: {record.status.value} --{action.value}-->")
    record.status = allowed[action]
    ts = now.isoformat()
    record.suspended_since = ts if record.status == EnforcementStatus.SUSPENDED else None
    return EnforcementSignal(
        node_id=node_id,
        user_id=record.user_id,
        action=action,
        reason=reason,
        bank_bytes=bank_bytes,
        ts_utc=ts,
    )


def apply_usage(
    entry: LedgerEntry,
    record: EnforcementRecord,
    delta_bytes: int,
    node_id: str,
    now: datetime,
) -> EnforcementSignal | None:
    """
    Spend delta_bytes from the bank, then decide. Active users whose usage exceeds the bank
    are suspended with the bank clamped to 0. Suspended users are reinstated as soon as the
    bank is positive (no hysteresis).
    """
    delta = max(0, int(delta_bytes))
    if not record.suspended and delta > entry.bank_bytes:
        entry.bank_bytes = 0
        return transition(record, SignalAction.SUSPEND, node_id, 0, "balance_exhausted", now)

    entry.bank_bytes = max(0, entry.bank_bytes - delta)
    if record.suspended and entry.bank_bytes > 0:
        return transition(record, SignalAction.REINSTATE, node_id, entry.bank_bytes, "balance_restored", now)
    return None


def release(record: EnforcementRecord, node_id: str, reason: str, now: datetime) -> EnforcementSignal | None:
    """Lift a suspension unconditionally (node no longer enforced)."""
    if not record.suspended:
        return None
    return transition(record, SignalAction.REINSTATE, node_id, 0, reason, now)
