"""
Pacing ledger: per (user, node) token bank with daily credit and a trailing-window cap.
Crediting is capped; spending and cascade bonuses are not.
"""
from dataclasses import dataclass

from tq.domain import CARRY_DAYS, Tier


@dataclass
class LedgerEntry:
    user_id: str
    tier: Tier
    base_quota_bytes: int = 0
    bank_bytes: int = 0
    last_credited_day: int = -1

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "tier": self.tier.value,
            "base_quota_bytes": self.base_quota_bytes,
            "bank_bytes": self.bank_bytes,
            "last_credited_day": self.last_credited_day,
        }


def carry_days(tier: Tier) -> int:
    return CARRY_DAYS[tier]


def daily_credit(base_quota_bytes: int, cycle_days: int, day_index: int) -> int:
    """floor(base/D), plus one byte on the first base % D days so the cycle sums to base."""
    if cycle_days <= 0 or base_quota_bytes <= 0:
        return 0
    per_day, rem = divmod(base_quota_bytes, cycle_days)
    return per_day + (1 if day_index < rem else 0)


def cap_for_day(base_quota_bytes: int, cycle_days: int, day_index: int, carry: int) -> int:
    """Sum of credit over the trailing carry-day window ending at day_index."""
    if carry <= 0 or cycle_days <= 0:
        return 0
    start = max(0, day_index - carry + 1)
    return sum(daily_credit(base_quota_bytes, cycle_days, k) for k in range(start, day_index + 1))


def apply_daily_credit(
    bank_bytes: int,
    base_quota_bytes: int,
    cycle_days: int,
    day_index: int,
    carry: int,
) -> tuple[int, int]:
    """Add today's credit and clamp to today's cap. Returns (bank, overflow)."""
    credit = daily_credit(base_quota_bytes, cycle_days, day_index)
    cap = cap_for_day(base_quota_bytes, cycle_days, day_index, carry)
    bank = bank_bytes + credit
    if bank > cap:
        return cap, bank - cap
    return bank, 0


def fresh_entry(user_id: str, tier: Tier, base_quota_bytes: int, cycle_days: int, day_index: int) -> LedgerEntry:
    """Ledger started mid-cycle (join or re-allocation): today's credit only, already credited."""
    bank = 0 if tier == Tier.P3 else daily_credit(base_quota_bytes, cycle_days, day_index)
    return LedgerEntry(
        user_id=user_id,
        tier=tier,
        base_quota_bytes=0 if tier == Tier.P3 else base_quota_bytes,
        bank_bytes=bank,
        last_credited_day=day_index,
    )
