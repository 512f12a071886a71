"""
Usage cursors: turn cumulative per-(user, node) byte counters into deltas.
Tolerates counter resets (new epoch) and samples timestamped before the cursor.
"""
from dataclasses import dataclass

from tq.domain import UsageSample
from tq.errors import ClockSkew, CounterRegression, QuotaAnomaly


@dataclass
class UsageCursor:
    user_id: str
    last_total_bytes: int = 0
    last_seen_ts: float | None = None
    epoch: int = 0


def advance_cursor(
    cursor: UsageCursor | None,
    sample: UsageSample,
) -> tuple[UsageCursor, int, QuotaAnomaly | None]:
    """
    Returns (cursor, delta_bytes, anomaly). A pair seen for the first time starts from a zero
    counter, so its whole first total is charged. A decreasing counter starts a new epoch with
    delta = new value. A sample older than the cursor yields delta 0 and leaves the cursor
    untouched.
    """
    total = max(0, int(sample.total_bytes))
    if cursor is None:
        cursor = UsageCursor(sample.user_id)

    if sample.ts is not None and cursor.last_seen_ts is not None and sample.ts < cursor.last_seen_ts:
        anomaly = ClockSkew(
            f"usage sample ts={sample.ts} precedes cursor ts={cursor.last_seen_ts}",
            node_id=sample.node_id,
            user_id=sample.user_id,
        )
        return cursor, 0, anomaly

    seen = sample.ts if sample.ts is not None else cursor.last_seen_ts
    if total < cursor.last_total_bytes:
        anomaly = CounterRegression(
            f"counter decreased {cursor.last_total_bytes} -> {total}; new epoch",
            node_id=sample.node_id,
            user_id=sample.user_id,
        )
        return UsageCursor(cursor.user_id, total, seen, cursor.epoch + 1), total, anomaly

    delta = total - cursor.last_total_bytes
    return UsageCursor(cursor.user_id, total, seen, cursor.epoch), delta, None
