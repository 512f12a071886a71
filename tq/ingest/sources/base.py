"""
Base class for usage feed sources.
Sources produce UsageSample records: cumulative bytes per (user, node), optional ts.
"""
import abc

from tq.domain import UsageSample


class BaseUsageSource(abc.ABC):
    """connect() then read(); close() when done. Sources keep their own read position."""

    @abc.abstractmethod
    def connect(self, **kwargs) -> None:
        pass

    @abc.abstractmethod
    def read(self, limit: int | None = None) -> list[UsageSample]:
        """Read up to `limit` samples observed since the last read."""
        pass

    @abc.abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
        return False
