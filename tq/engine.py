"""
Node tick engine: one full, idempotent pass for one node.

cycle window -> allocation (on rollover or input change) -> daily credit + cascade
(watermark-gated, once per day) -> usage consumption + enforcement.

Operates on in-memory NodeState; persistence and signal dispatch belong to the worker.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tq.allocation import Allocation, allocation_fingerprint, compute_allocation
from tq.cascade import CascadeResult, run_cascade
from tq.cycle import CycleWindow, cycle_window_at
from tq.domain import ALLOCATED_TIERS, DEFAULT_WEIGHT, Node, Tier, UsageSample, User
from tq.enforcement import EnforcementRecord, EnforcementSignal, apply_usage, release
from tq.errors import AllocationUnderflow, QuotaAnomaly
from tq.pacing import LedgerEntry, fresh_entry
from tq.usage import UsageCursor, advance_cursor

logger = logging.getLogger(__name__)


@dataclass
class NodePacing:
    """Node-scoped cycle identity and day watermarks (-1 = nothing credited yet)."""
    node_id: str
    cycle_start: str
    cycle_end: str
    cycle_days: int
    last_credited_day: int = -1
    last_cascaded_day: int = -1
    alloc_fingerprint: str | None = None


@dataclass
class NodeState:
    node_id: str
    pacing: NodePacing | None = None
    ledgers: dict[str, LedgerEntry] = field(default_factory=dict)
    enforcement: dict[str, EnforcementRecord] = field(default_factory=dict)
    cursors: dict[str, UsageCursor] = field(default_factory=dict)


@dataclass
class NodeTickResult:
    node_id: str
    window: CycleWindow | None = None
    allocation: Allocation | None = None
    cascade: CascadeResult | None = None
    signals: list[EnforcementSignal] = field(default_factory=list)
    anomalies: list[QuotaAnomaly] = field(default_factory=list)
    deltas: dict[str, int] = field(default_factory=dict)
    bypass_reason: str | None = None
    rolled_over: bool = False
    reallocated: bool = False

    @property
    def credited(self) -> bool:
        return self.cascade is not None

    def summary(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "day_index": self.window.day_index if self.window else None,
            "cycle_days": self.window.days if self.window else None,
            "bypass_reason": self.bypass_reason,
            "rolled_over": self.rolled_over,
            "reallocated": self.reallocated,
            "credited": self.credited,
            "p1_pool_bytes": self.cascade.pools.p1_pool_bytes if self.cascade else 0,
            "p3_pool_bytes": self.cascade.pools.p3_pool_bytes if self.cascade else 0,
            "signals": [s.to_dict() for s in self.signals],
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


def _record_anomaly(result: NodeTickResult, anomaly: QuotaAnomaly) -> None:
    result.anomalies.append(anomaly)
    logger.warning("%s node=%s user=%s: %s", anomaly.kind, anomaly.node_id, anomaly.user_id, anomaly)


def _ingest_usage(state: NodeState, samples: list[UsageSample], result: NodeTickResult) -> None:
    for sample in samples:
        cursor, delta, anomaly = advance_cursor(state.cursors.get(sample.user_id), sample)
        state.cursors[sample.user_id] = cursor
        if anomaly is not None:
            _record_anomaly(result, anomaly)
        if delta:
            result.deltas[sample.user_id] = result.deltas.get(sample.user_id, 0) + delta


def _bypass(state: NodeState, reason: str, now: datetime, result: NodeTickResult) -> NodeTickResult:
    """Node is not enforced: drop pacing state and lift every suspension."""
    result.bypass_reason = reason
    for user_id in sorted(state.enforcement):
        signal = release(state.enforcement[user_id], state.node_id, reason, now)
        if signal is not None:
            result.signals.append(signal)
    state.pacing = None
    state.ledgers = {}
    return result


def _empty_entry(user: User, base: int) -> LedgerEntry:
    return LedgerEntry(
        user_id=user.user_id,
        tier=user.tier,
        base_quota_bytes=0 if user.tier == Tier.P3 else base,
    )


def _reconcile_ledgers(
    state: NodeState,
    members: dict[str, User],
    allocation: Allocation,
    window: CycleWindow,
) -> None:
    """
    Mid-cycle input change: reset ledgers whose tier or base quota changed (or that are new),
    so old and new bases never mix. Unaffected ledgers keep their balance.
    """
    pacing = state.pacing
    credited_today = pacing.last_credited_day >= window.day_index
    for user_id, user in sorted(members.items()):
        base = allocation.base_quota.get(user_id, 0)
        target_base = 0 if user.tier == Tier.P3 else base
        entry = state.ledgers.get(user_id)
        if entry is not None and entry.tier == user.tier and entry.base_quota_bytes == target_base:
            continue
        if credited_today:
            state.ledgers[user_id] = fresh_entry(user_id, user.tier, base, window.days, window.day_index)
        else:
            state.ledgers[user_id] = _empty_entry(user, base)
        logger.info(
            "ledger reset node=%s user=%s tier=%s base=%d",
            state.node_id, user_id, user.tier.value, target_base,
        )
    for user_id in sorted(set(state.ledgers) - set(members)):
        del state.ledgers[user_id]


def _release_departed(state: NodeState, members: dict[str, User], now: datetime, result: NodeTickResult) -> None:
    """Users whose grant went away: lift a standing suspension before forgetting them."""
    for user_id in sorted(set(state.enforcement) - set(members)):
        signal = release(state.enforcement.pop(user_id), state.node_id, "membership_removed", now)
        if signal is not None:
            result.signals.append(signal)


def run_node_tick(
    node: Node,
    members: dict[str, User],
    weights: dict[str, int],
    state: NodeState,
    samples: list[UsageSample],
    now: datetime,
) -> NodeTickResult:
    """
    Advance one node to `now`. members: users with an enabled grant on the node.
    weights: user_id -> weight for this node (absent = 100). samples: cumulative counters
    observed since the last tick. Replaying with the same watermark credits nothing twice.
    """
    result = NodeTickResult(node_id=node.node_id)
    _ingest_usage(state, samples, result)

    if not node.enforced:
        return _bypass(state, "unlimited", now, result)

    window = cycle_window_at(node.reset_rule, now)
    result.window = window

    node_weights = {u: weights.get(u, DEFAULT_WEIGHT) for u in members}
    participants = {u: node_weights[u] for u, user in members.items() if user.tier in ALLOCATED_TIERS}
    if not participants:
        return _bypass(state, "no_participants", now, result)

    allocation = compute_allocation(node.quota_limit_bytes, participants)
    result.allocation = allocation
    if allocation.distributable_bytes == 0:
        _record_anomaly(result, AllocationUnderflow(
            f"buffer {allocation.buffer_bytes} >= quota_limit {node.quota_limit_bytes}",
            node_id=node.node_id,
        ))
        return _bypass(state, "allocation_underflow", now, result)

    _release_departed(state, members, now, result)

    fingerprint = allocation_fingerprint(
        node.quota_limit_bytes,
        [(u, members[u].tier.value, node_weights[u]) for u in members],
    )
    start, end = window.key
    pacing = state.pacing
    if pacing is None or (pacing.cycle_start, pacing.cycle_end) != (start, end):
        result.rolled_over = pacing is not None
        state.pacing = NodePacing(
            node_id=node.node_id,
            cycle_start=start,
            cycle_end=end,
            cycle_days=window.days,
            alloc_fingerprint=fingerprint,
        )
        state.ledgers = {
            u: _empty_entry(user, allocation.base_quota.get(u, 0)) for u, user in sorted(members.items())
        }
        result.reallocated = True
        if result.rolled_over:
            logger.info("cycle rollover node=%s start=%s days=%d", node.node_id, start, window.days)
    elif pacing.alloc_fingerprint != fingerprint or set(state.ledgers) != set(members):
        _reconcile_ledgers(state, members, allocation, window)
        pacing.alloc_fingerprint = fingerprint
        result.reallocated = True

    pacing = state.pacing
    if pacing.last_credited_day < window.day_index:
        # credit and cascade share one gate; missed days are skipped, not replayed
        result.cascade = run_cascade(state.ledgers, window.days, window.day_index, node_weights)
        pacing.last_credited_day = window.day_index
        pacing.last_cascaded_day = window.day_index

    for user_id in sorted(members):
        entry = state.ledgers[user_id]
        record = state.enforcement.setdefault(user_id, EnforcementRecord(user_id))
        signal = apply_usage(entry, record, result.deltas.get(user_id, 0), node.node_id, now)
        if signal is not None:
            result.signals.append(signal)
    return result


def retire_node(state: NodeState, now: datetime, reason: str = "node_removed") -> NodeTickResult:
    """Node left the cluster snapshot: lift suspensions and forget everything stored for it."""
    result = _bypass(state, reason, now, NodeTickResult(node_id=state.node_id))
    state.enforcement = {}
    state.cursors = {}
    return result
