"""
Overflow cascade: once per node per day, credit every ledger, collect capped-out credit
into per-day pools, and redistribute P2 overflow to P1 and P1 overflow to P3.

Pools are values owned by one pass; nothing here is stored between days.
"""
import logging
from dataclasses import dataclass, field

from tq.allocation import allocate_by_weight
from tq.domain import DEFAULT_WEIGHT, OVERFLOW_TARGET, Tier
from tq.pacing import LedgerEntry, apply_daily_credit, carry_days

logger = logging.getLogger(__name__)


@dataclass
class OverflowPools:
    p1_pool_bytes: int = 0
    p3_pool_bytes: int = 0

    def add(self, target: Tier | None, amount: int) -> None:
        if amount <= 0 or target is None:
            return
        if target == Tier.P1:
            self.p1_pool_bytes += amount
        elif target == Tier.P3:
            self.p3_pool_bytes += amount
        else:
            raise ValueError(f"tier {target.value} is not an overflow destination")


@dataclass
class CascadeResult:
    pools: OverflowPools
    p1_bonus: dict[str, int] = field(default_factory=dict)
    p3_bonus: dict[str, int] = field(default_factory=dict)
    forwarded_bytes: int = 0  # P1 pool passed on to P3 for lack of P1 recipients
    discarded_bytes: int = 0  # pool left with no recipients at all


def credit_day(entries: dict[str, LedgerEntry], cycle_days: int, day_index: int) -> OverflowPools:
    """
    Credit-then-cap for every P1/P2 ledger not yet credited for day_index; expire P3 balances.
    Mutates entries and returns the day's overflow pools.
    """
    pools = OverflowPools()
    for user_id in sorted(entries):
        entry = entries[user_id]
        if entry.tier == Tier.P3:
            # same-day balance only
            entry.bank_bytes = 0
            entry.last_credited_day = day_index
            continue
        if entry.last_credited_day >= day_index:
            continue
        bank, overflow = apply_daily_credit(
            entry.bank_bytes,
            entry.base_quota_bytes,
            cycle_days,
            day_index,
            carry_days(entry.tier),
        )
        entry.bank_bytes = bank
        entry.last_credited_day = day_index
        pools.add(OVERFLOW_TARGET[entry.tier], overflow)
    return pools


def distribute_pools(
    entries: dict[str, LedgerEntry],
    pools: OverflowPools,
    weights: dict[str, int],
) -> CascadeResult:
    """
    Inject the P1 pool into P1 banks and the P3 pool into P3 banks, proportional to node
    weight. Bonus injections are not re-clamped against the cap and never overflow further.
    """
    result = CascadeResult(pools=pools)
    p1 = {u: weights.get(u, DEFAULT_WEIGHT) for u, e in entries.items() if e.tier == Tier.P1}
    p3 = {u: weights.get(u, DEFAULT_WEIGHT) for u, e in entries.items() if e.tier == Tier.P3}

    p3_pool = pools.p3_pool_bytes
    if pools.p1_pool_bytes > 0:
        if p1:
            result.p1_bonus = allocate_by_weight(pools.p1_pool_bytes, p1)
            for user_id, bonus in result.p1_bonus.items():
                entries[user_id].bank_bytes += bonus
        else:
            result.forwarded_bytes = pools.p1_pool_bytes
            p3_pool += pools.p1_pool_bytes

    if p3_pool > 0:
        if p3:
            result.p3_bonus = allocate_by_weight(p3_pool, p3)
            for user_id, bonus in result.p3_bonus.items():
                entries[user_id].bank_bytes += bonus
        else:
            result.discarded_bytes = p3_pool
            logger.debug("overflow discarded: %d bytes, no P3 recipients", p3_pool)
    return result


def run_cascade(
    entries: dict[str, LedgerEntry],
    cycle_days: int,
    day_index: int,
    weights: dict[str, int],
) -> CascadeResult:
    """Full daily pass: credit every ledger, then drain both pools."""
    pools = credit_day(entries, cycle_days, day_index)
    return distribute_pools(entries, pools, weights)
