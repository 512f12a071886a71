"""
File-replay usage feed: read JSONL or CSV counters appended to a file, incrementally.
Each complete line -> one UsageSample. The byte offset survives across ticks so a line is
read once; a trailing partial line is left for the next read.
"""
import csv
import json
import logging
import os
from datetime import datetime

from tq.domain import UsageSample
from tq.ingest.sources.base import BaseUsageSource

logger = logging.getLogger(__name__)


def _parse_ts(value) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        raise ValueError(f"timestamp without offset: {text}")
    return dt.timestamp()


def _sample(user_id, node_id, total_bytes, ts) -> UsageSample:
    user_id = str(user_id or "").strip()
    node_id = str(node_id or "").strip()
    if not user_id or not node_id:
        raise ValueError("user_id and node_id are required")
    total = int(total_bytes)
    if total < 0:
        raise ValueError(f"negative counter: {total}")
    return UsageSample(user_id=user_id, node_id=node_id, total_bytes=total, ts=_parse_ts(ts))


def parse_usage_line(line: str) -> UsageSample | None:
    """
    JSON: {"user_id", "node_id", "total_bytes", "ts"?}. CSV: user_id,node_id,total_bytes[,ts].
    Returns None for blank lines and the CSV header; raises ValueError on malformed input.
    """
    line = line.strip()
    if not line:
        return None
    if line.startswith("{"):
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc}") from exc
        return _sample(obj.get("user_id"), obj.get("node_id"), obj.get("total_bytes"), obj.get("ts"))
    parts = [p.strip() for p in next(csv.reader([line]), [])]
    if parts and parts[0].lower() == "user_id":
        return None
    if len(parts) < 3:
        raise ValueError(f"expected user_id,node_id,total_bytes[,ts]: {line}")
    return _sample(parts[0], parts[1], parts[2], parts[3] if len(parts) > 3 else None)


class FileReplaySource(BaseUsageSource):
    """Read new complete lines from a usage file starting at `offset` (bytes)."""

    def __init__(self, path: str, offset: int = 0):
        self.path = path
        self.offset = int(offset or 0)
        self.skipped = 0
        self._fh = None

    def connect(self, **kwargs) -> None:
        if not os.path.isfile(self.path):
            raise FileNotFoundError(self.path)
        self._fh = open(self.path, "rb")
        if self.offset > os.path.getsize(self.path):
            # file truncated or rotated
            logger.warning("usage file shrank below offset %d, rereading from start: %s", self.offset, self.path)
            self.offset = 0
        self._fh.seek(self.offset)

    def read(self, limit: int | None = None) -> list[UsageSample]:
        if self._fh is None:
            self.connect()
        samples = []
        while limit is None or len(samples) < limit:
            raw = self._fh.readline()
            if not raw or not raw.endswith(b"\n"):
                break
            self.offset += len(raw)
            try:
                sample = parse_usage_line(raw.decode("utf-8", errors="replace"))
            except ValueError as exc:
                self.skipped += 1
                logger.warning("skipping usage line at offset %d: %s", self.offset - len(raw), exc)
                continue
            if sample is not None:
                samples.append(sample)
        self._fh.seek(self.offset)
        return samples

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None
