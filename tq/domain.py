"""
Domain records consumed by the quota engine: nodes, users, weights, grants, usage samples.
All of these are read-only inputs owned by the configuration layer.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Tier(str, Enum):
    P1 = "p1"
    P2 = "p2"
    P3 = "p3"


# Width of the trailing cap window per tier (days of credit that may be banked).
CARRY_DAYS: dict[Tier, int] = {
    Tier.P1: 7,
    Tier.P2: 2,
    Tier.P3: 0,
}

# Where capped-out credit of a tier goes. P2 -> P1 -> P3; P3 never overflows.
OVERFLOW_TARGET: dict[Tier, Tier | None] = {
    Tier.P2: Tier.P1,
    Tier.P1: Tier.P3,
    Tier.P3: None,
}

# Tiers that receive a base allocation from the node budget.
ALLOCATED_TIERS = frozenset({Tier.P1, Tier.P2})

DEFAULT_WEIGHT = 100
MAX_WEIGHT = 2**32 - 1


def parse_tier(s: str | None) -> Tier | None:
    if not s:
        return None
    try:
        return Tier((s or "").strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class ResetRule:
    """Monthly reset at local midnight of day_of_month in a fixed UTC offset."""
    day_of_month: int = 1
    tz_offset_minutes: int = 0
    policy: str = "monthly"  # monthly | unlimited

    @property
    def unlimited(self) -> bool:
        return self.policy == "unlimited"


@dataclass(frozen=True)
class Node:
    node_id: str
    quota_limit_bytes: int = 0
    reset_rule: ResetRule = field(default_factory=ResetRule)

    @property
    def enforced(self) -> bool:
        """False when the node has no finite budget (limit 0 or unlimited reset policy)."""
        return self.quota_limit_bytes > 0 and not self.reset_rule.unlimited


@dataclass(frozen=True)
class User:
    user_id: str
    tier: Tier = Tier.P2


@dataclass(frozen=True)
class WeightRow:
    user_id: str
    node_id: str
    weight: int = DEFAULT_WEIGHT


@dataclass(frozen=True)
class Grant:
    user_id: str
    node_id: str
    enabled: bool = True


@dataclass(frozen=True)
class UsageSample:
    """Cumulative byte counter for one (user, node) pair; ts in epoch seconds when known."""
    user_id: str
    node_id: str
    total_bytes: int
    ts: float | None = None


@dataclass
class ClusterSnapshot:
    """Replicated configuration as seen by this replica at the start of a tick."""
    nodes: dict[str, Node] = field(default_factory=dict)
    users: dict[str, User] = field(default_factory=dict)
    # (user_id, node_id) -> weight
    weights: dict[tuple[str, str], int] = field(default_factory=dict)
    grants: list[Grant] = field(default_factory=list)

    def weight_for(self, user_id: str, node_id: str) -> int:
        return self.weights.get((user_id, node_id), DEFAULT_WEIGHT)

    def members(self, node_id: str) -> dict[str, User]:
        """Users holding an enabled grant on node_id, keyed by user_id."""
        out = {}
        for g in self.grants:
            if g.node_id != node_id or not g.enabled:
                continue
            user = self.users.get(g.user_id)
            if user is not None:
                out[user.user_id] = user
        return out

    def node_weights(self, node_id: str) -> dict[str, int]:
        return {u: w for (u, n), w in self.weights.items() if n == node_id}

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {
                    "node_id": n.node_id,
                    "quota_limit_bytes": n.quota_limit_bytes,
                    "reset_rule": {
                        "day_of_month": n.reset_rule.day_of_month,
                        "tz_offset_minutes": n.reset_rule.tz_offset_minutes,
                        "policy": n.reset_rule.policy,
                    },
                }
                for n in self.nodes.values()
            ],
            "users": [{"user_id": u.user_id, "priority_tier": u.tier.value} for u in self.users.values()],
            "weights": [{"user_id": u, "node_id": n, "weight": w} for (u, n), w in sorted(self.weights.items())],
            "grants": [{"user_id": g.user_id, "node_id": g.node_id, "enabled": g.enabled} for g in self.grants],
        }
