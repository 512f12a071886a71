"""
Keeping the worker going when its surroundings misbehave.

A per-sink circuit breaker stops hammering a controller endpoint that keeps failing, and
the worker checkpoint (usage offset, last tick) is written atomically with a bounded
history of earlier ticks next to it.
"""
import json
import logging
import os
import time
from collections import deque
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "worker_checkpoint.json"
HISTORY_FILENAME = "checkpoint_history.jsonl"


class CircuitOpenError(RuntimeError):
    pass


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Trips after `failure_threshold` failures inside a sliding `window_sec`. While open every
    call is refused; after `open_sec` one trial call is let through (half open) and its
    outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_sec: float = 60.0,
        open_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "",
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.window_sec = window_sec
        self.open_sec = open_sec
        self._clock = clock
        self._recent = deque()
        self._tripped_at = None
        self.state = BreakerState.CLOSED

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0] >= self.window_sec:
            self._recent.popleft()

    def record_success(self) -> None:
        if self.state != BreakerState.CLOSED:
            logger.info("circuit closed sink=%s", self.name)
        self.state = BreakerState.CLOSED
        self._tripped_at = None
        self._prune(self._clock())

    def record_failure(self) -> None:
        now = self._clock()
        self._recent.append(now)
        self._prune(now)
        if self.state == BreakerState.HALF_OPEN or len(self._recent) >= self.failure_threshold:
            if self.state != BreakerState.OPEN:
                logger.warning("circuit opened sink=%s failures=%d", self.name, len(self._recent))
            self.state = BreakerState.OPEN
            self._tripped_at = now

    def is_open(self) -> bool:
        if self.state == BreakerState.OPEN and self._clock() - self._tripped_at >= self.open_sec:
            self.state = BreakerState.HALF_OPEN
            self._recent.clear()
        return self.state == BreakerState.OPEN

    def call(self, fn: Callable[[], Any]) -> Any:
        if self.is_open():
            raise CircuitOpenError(f"circuit open for sink {self.name or '?'}")
        try:
            result = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


def _atomic_write(path: str, text: str) -> None:
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        f.write(text)
    os.replace(tmp, path)


def load_checkpoint(output_dir: str) -> dict:
    """Last written checkpoint, or {} when there is none (or it cannot be read)."""
    path = os.path.join(output_dir, CHECKPOINT_FILENAME)
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable checkpoint %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("ignoring checkpoint %s: not an object", path)
        return {}
    return data


def write_checkpoint(output_dir: str, checkpoint: dict) -> str:
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, CHECKPOINT_FILENAME)
    _atomic_write(path, json.dumps(checkpoint, indent=2, sort_keys=True))
    return path


def _history_entries(path: str) -> list[dict]:
    if not os.path.isfile(path):
        return []
    entries = []
    with open(path) as f:
        for raw in f:
            if not raw.strip():
                continue
            try:
                entries.append(json.loads(raw))
            except ValueError:
                logger.debug("skipping bad checkpoint history line in %s", path)
    return entries


def save_checkpoint_to_history(output_dir: str, checkpoint: dict, max_entries: int = 50) -> None:
    """Keep the newest max_entries checkpoints, oldest first."""
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, HISTORY_FILENAME)
    kept = (_history_entries(path) + [checkpoint])[-max(1, max_entries):]
    _atomic_write(path, "".join(json.dumps(e, sort_keys=True) + "\n" for e in kept))


def load_checkpoint_history(output_dir: str, limit: int = 10) -> list[dict]:
    return _history_entries(os.path.join(output_dir, HISTORY_FILENAME))[-limit:]
