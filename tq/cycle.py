"""
Cycle clock: billing window and day index for a node's reset rule.
Pure functions of (rule, now); no hidden state.
"""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from tq.domain import ResetRule


@dataclass(frozen=True)
class CycleWindow:
    start: datetime
    end: datetime
    days: int  # D
    day_index: int  # d, zero-based, clamped to [0, D-1]

    @property
    def key(self) -> tuple[str, str]:
        """Stable identity of the window; changes exactly when the cycle rolls over."""
        return self.start.isoformat(), self.end.isoformat()


def _prev_month(year: int, month: int) -> tuple[int, int]:
    if month == 1:
        return year - 1, 12
    return year, month - 1


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def cycle_anchor_date(year: int, month: int, day_of_month: int) -> date:
    """The configured day in (year, month), or the last day of the month if it is shorter."""
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last))


def validate_reset_rule(rule: ResetRule) -> None:
    if not 1 <= int(rule.day_of_month) <= 31:
        raise ValueError(f"invalid day_of_month: {rule.day_of_month}")
    if not -1440 < int(rule.tz_offset_minutes) < 1440:
        raise ValueError(f"invalid tz_offset_minutes: {rule.tz_offset_minutes}")
    if rule.policy not in ("monthly", "unlimited"):
        raise ValueError(f"invalid reset policy: {rule.policy}")


def _local_midnight(d: date, tz: timezone) -> datetime:
    return datetime.combine(d, time(0, 0), tzinfo=tz)


def cycle_window_at(rule: ResetRule, now_utc: datetime) -> CycleWindow:
    """
    Resolve the cycle containing now_utc. The boundary is local midnight of the
    configured day (month end when missing) in the rule's fixed UTC offset.
    """
    if now_utc.tzinfo is None:
        raise ValueError("now_utc must be timezone-aware")
    validate_reset_rule(rule)
    tz = timezone(timedelta(minutes=int(rule.tz_offset_minutes)))
    day = int(rule.day_of_month)
    now = now_utc.astimezone(tz)

    start = _local_midnight(cycle_anchor_date(now.year, now.month, day), tz)
    if now < start:
        py, pm = _prev_month(now.year, now.month)
        start = _local_midnight(cycle_anchor_date(py, pm, day), tz)
    ny, nm = _next_month(start.year, start.month)
    end = _local_midnight(cycle_anchor_date(ny, nm, day), tz)

    days = (end.date() - start.date()).days
    if days <= 0:
        raise ValueError(f"invalid cycle length: {days}")
    day_index = (now.date() - start.date()).days
    day_index = max(0, min(day_index, days - 1))
    return CycleWindow(start=start, end=end, days=days, day_index=day_index)
