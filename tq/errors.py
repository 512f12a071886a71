"""
Error kinds. QuotaAnomaly subclasses are recovered inside a tick (logged, counted);
StateCorruptionError is fatal and stops the worker at startup.
"""


class QuotaAnomaly(Exception):
    kind = "anomaly"

    def __init__(self, message, node_id=None, user_id=None):
        super().__init__(message)
        self.node_id = node_id
        self.user_id = user_id

    def to_dict(self):
        return {
            "kind": self.kind,
            "message": str(self),
            "node_id": self.node_id,
            "user_id": self.user_id,
        }


class ConfigInconsistency(QuotaAnomaly):
    """A config row references a user or node that does not exist, or is malformed."""
    kind = "config_inconsistency"


class ClockSkew(QuotaAnomaly):
    """A usage sample is timestamped before the last observed cursor."""
    kind = "clock_skew"


class CounterRegression(QuotaAnomaly):
    """A cumulative usage counter went backwards (counter reset)."""
    kind = "counter_regression"


class AllocationUnderflow(QuotaAnomaly):
    """The safety buffer consumes the whole node budget; nothing is distributable."""
    kind = "allocation_underflow"


class StateCorruptionError(Exception):
    """Local persisted state cannot be read. Requires operator intervention."""
