from abc import ABC, abstractmethod
from typing import Any


class SignalSink(ABC):
    name = "sink"

    @abstractmethod
    def emit(self, signal: dict[str, Any]) -> None:
        """Deliver one signal: node_id, user_id, action (suspend|reinstate), reason, bank_bytes, ts_utc."""
        pass
