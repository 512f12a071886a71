"""
Allocation function: split a node's distributable budget across P1/P2 participants by weight.
Exact conservation: the shares always sum to the distributable total.
"""
import hashlib
import json
from dataclasses import dataclass, field

from tq.domain import DEFAULT_WEIGHT

MIB = 1024 * 1024
MIN_BUFFER_BYTES = 256 * MIB


def buffer_bytes(quota_limit_bytes: int) -> int:
    """Safety buffer kept out of distribution: max(256 MiB, 0.5% of the limit)."""
    return max(MIN_BUFFER_BYTES, quota_limit_bytes // 200)


def distributable_bytes(quota_limit_bytes: int) -> int:
    if quota_limit_bytes <= 0:
        return 0
    return max(0, quota_limit_bytes - buffer_bytes(quota_limit_bytes))


def allocate_by_weight(total: int, weights: dict[str, int]) -> dict[str, int]:
    """
    Floor-proportional split of total over weights, remainder handed out one unit at a
    time in ascending user_id order. Zero-weight users get no remainder units unless all
    weights are zero, in which case everyone is weighted equally.
    """
    if not weights or total <= 0:
        return {user_id: 0 for user_id in weights}
    ordered = sorted(weights)
    w = {u: max(0, int(weights[u])) for u in ordered}
    if sum(w.values()) == 0:
        w = {u: DEFAULT_WEIGHT for u in ordered}
    sum_w = sum(w.values())

    out = {u: (total * w[u]) // sum_w for u in ordered}
    rem = total - sum(out.values())
    eligible = [u for u in ordered if w[u] > 0]
    if rem > 0 and eligible:
        per, extra = divmod(rem, len(eligible))
        for i, u in enumerate(eligible):
            out[u] += per + (1 if i < extra else 0)
    return out


@dataclass
class Allocation:
    quota_limit_bytes: int
    buffer_bytes: int
    distributable_bytes: int
    base_quota: dict[str, int] = field(default_factory=dict)

    @property
    def allocated_bytes(self) -> int:
        return sum(self.base_quota.values())


def compute_allocation(quota_limit_bytes: int, participant_weights: dict[str, int]) -> Allocation:
    """Base quota per participant (U12 = enabled P1 and P2 users on the node)."""
    buf = buffer_bytes(quota_limit_bytes) if quota_limit_bytes > 0 else 0
    dist = distributable_bytes(quota_limit_bytes)
    base = allocate_by_weight(dist, participant_weights) if participant_weights else {}
    return Allocation(
        quota_limit_bytes=quota_limit_bytes,
        buffer_bytes=buf,
        distributable_bytes=dist,
        base_quota=base,
    )


def allocation_fingerprint(quota_limit_bytes: int, members: list[tuple[str, str, int]]) -> str:
    """Hash of allocation inputs: limit and sorted (user_id, tier, weight) rows."""
    payload = {"quota_limit_bytes": int(quota_limit_bytes), "members": sorted(list(m) for m in members)}
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()[:16]
