"""
Append-only audit trail of enforcement signals.

Every line is a JSON object with a running `seq`, the previous line's hash and its own
sha256 over the canonical form of the rest, so an edited, dropped or reordered line
breaks the chain at that point.
"""
import hashlib
import json
import os
from datetime import datetime, timezone

GENESIS_HASH = "0" * 64


def _digest(record):
    body = {k: v for k, v in record.items() if k != "entry_hash"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _chain_head(log_path):
    """(seq, entry_hash) of the last line, or (0, GENESIS_HASH) for a new log."""
    try:
        with open(log_path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - 8192))
            tail = f.read().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return 0, GENESIS_HASH
    for line in reversed(tail.splitlines()):
        if not line.strip():
            continue
        try:
            last = json.loads(line)
        except ValueError:
            break
        return int(last.get("seq", 0)), last.get("entry_hash") or GENESIS_HASH
    return 0, GENESIS_HASH


def _open_log(log_path):
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    fd = os.open(log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
    return os.fdopen(fd, "a")


def _chain(records, seq, prev_hash):
    for action, details in records:
        seq += 1
        record = {
            "seq": seq,
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "details": details,
            "prev_hash": prev_hash,
        }
        record["entry_hash"] = prev_hash = _digest(record)
        yield record


def append_audit_log(log_path, action, details):
    seq, prev_hash = _chain_head(log_path)
    (record,) = _chain([(action, details)], seq, prev_hash)
    with _open_log(log_path) as f:
        f.write(json.dumps(record) + "\n")
    return record


def audit_signals(log_path, signals):
    """Chain a batch of EnforcementSignals onto the log in one write."""
    if not signals:
        return []
    seq, prev_hash = _chain_head(log_path)
    records = list(_chain([(s.action.value, s.to_dict()) for s in signals], seq, prev_hash))
    with _open_log(log_path) as f:
        f.writelines(json.dumps(r) + "\n" for r in records)
    return records


def verify_audit_log(log_path, strict=False):
    """Walk the chain; returns human-readable issues (empty list = intact)."""
    if not os.path.exists(log_path):
        return ["audit log not found"]
    issues = []
    expected_seq, prev_hash = 1, GENESIS_HASH
    with open(log_path) as f:
        for lineno, raw in enumerate(f, start=1):
            if not raw.strip():
                continue
            try:
                record = json.loads(raw)
            except ValueError:
                problem, record = "unparseable line", None
            else:
                if record.get("entry_hash") != _digest(record):
                    problem = "entry hash mismatch"
                elif record.get("prev_hash") != prev_hash:
                    problem = "chain link mismatch"
                elif record.get("seq") != expected_seq:
                    problem = f"sequence gap (expected {expected_seq}, got {record.get('seq')})"
                else:
                    problem = None
            if problem:
                issues.append(f"line {lineno}: {problem}")
                if strict:
                    break
            if record is not None:
                prev_hash = record.get("entry_hash") or prev_hash
                expected_seq = int(record.get("seq") or expected_seq) + 1
    return issues
