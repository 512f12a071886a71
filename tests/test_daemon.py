"""Quota worker end to end: synthetic clock, file usage feed, sinks, persistence, checkpoint."""
import json
import os
import threading
import time
from datetime import datetime, timezone

import pytest
import yaml

from tq import daemon as daemon_mod
from tq import metrics_prometheus as metrics
from tq.allocation import MIN_BUFFER_BYTES
from tq.audit import verify_audit_log
from tq.config import load_worker_config
from tq.daemon import QuotaWorker
from tq.errors import StateCorruptionError
from tq.registry import list_enforcement_events, list_node_ids, load_node_state
from tq.resilience import load_checkpoint
from tq.signals import SignalSink

SNAPSHOT = {
    "nodes": [{"node_id": "n1", "quota_limit_bytes": MIN_BUFFER_BYTES + 31000}],
    "users": [{"user_id": "a", "priority_tier": "p1"}, {"user_id": "b", "priority_tier": "p2"}],
    "grants": [{"user_id": "a", "node_id": "n1"}, {"user_id": "b", "node_id": "n1"}],
}


def _at(day, hour=12):
    return datetime(2025, 5, day, hour, tzinfo=timezone.utc)


class _RecordingSink(SignalSink):
    name = "recording"

    def __init__(self):
        self.signals = []

    def emit(self, signal):
        self.signals.append(signal)


class _BrokenSink(SignalSink):
    name = "broken"

    def __init__(self):
        self.calls = 0

    def emit(self, signal):
        self.calls += 1
        raise OSError("controller unreachable")


def _write_snapshot(tmp_path, payload):
    path = tmp_path / "snapshot.yaml"
    existed = path.exists()
    path.write_text(yaml.safe_dump(payload))
    if existed:
        st = os.stat(path)
        os.utime(path, (st.st_atime, st.st_mtime + 10))
    return str(path)


def _append_usage(tmp_path, **totals):
    with open(tmp_path / "usage.jsonl", "a") as f:
        for user_id, total in sorted(totals.items()):
            f.write(json.dumps({"user_id": user_id, "node_id": "n1", "total_bytes": total}) + "\n")


def _config(tmp_path, snapshot=SNAPSHOT, **extra):
    payload = {
        "db_path": str(tmp_path / "state.db"),
        "snapshot_path": _write_snapshot(tmp_path, snapshot),
        "usage_path": str(tmp_path / "usage.jsonl"),
        "output_dir": str(tmp_path / "out"),
        "signal_sinks": [],
        "metrics_file": str(tmp_path / "metrics.prom"),
        "interval_sec": 3600,
    }
    payload.update(extra)
    (tmp_path / "usage.jsonl").touch()
    path = tmp_path / "worker.yaml"
    path.write_text(yaml.safe_dump(payload))
    return load_worker_config(str(path))


@pytest.fixture(autouse=True)
def _fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


def test_suspend_then_reinstate_end_to_end(tmp_path):
    sink = _RecordingSink()
    worker = QuotaWorker(_config(tmp_path), sinks=[sink])

    _append_usage(tmp_path, a=0, b=0)
    summary = worker.run_tick(now=_at(1))
    assert summary["signals"] == 0
    assert summary["errors"] == []

    _append_usage(tmp_path, b=10**6)
    summary = worker.run_tick(now=_at(1, 13))
    assert summary["signals"] == 1
    worker.flush()
    assert [(s["user_id"], s["action"]) for s in sink.signals] == [("b", "suspend")]
    assert load_node_state(worker.conn, "n1").enforcement["b"].suspended
    assert [e["action"] for e in list_enforcement_events(worker.conn)] == ["suspend"]

    replay = worker.run_tick(now=_at(1, 14))
    assert replay["signals"] == 0

    worker.run_tick(now=_at(2))
    worker.flush()
    assert [s["action"] for s in sink.signals] == ["suspend", "reinstate"]

    config = worker.config
    assert verify_audit_log(config["audit_log"]) == []
    checkpoint = load_checkpoint(config["output_dir"])
    assert checkpoint["usage_offset"] == os.path.getsize(tmp_path / "usage.jsonl")
    assert checkpoint["last_tick_utc"] == _at(2).isoformat()
    text = (tmp_path / "metrics.prom").read_text()
    assert 'tq_suspended_users{node="n1"} 0' in text
    assert 'tq_signals_total{action="suspend"} 1.0' in text
    worker.close()


def test_state_survives_restart(tmp_path):
    config = _config(tmp_path)
    worker = QuotaWorker(config, sinks=[])
    _append_usage(tmp_path, a=0, b=0)
    worker.run_tick(now=_at(1))
    _append_usage(tmp_path, a=200)
    worker.run_tick(now=_at(1, 13))
    worker.close()

    restarted = QuotaWorker(config, sinks=[])
    summary = restarted.run_tick(now=_at(1, 14))
    assert summary["nodes"][0]["credited"] is False
    assert load_node_state(restarted.conn, "n1").ledgers["a"].bank_bytes == 300
    restarted.close()


def test_sink_failure_keeps_state_and_opens_circuit(tmp_path):
    broken, recorder = _BrokenSink(), _RecordingSink()
    config = _config(tmp_path, circuit_breaker={"failure_threshold": 1, "window_sec": 60, "open_sec": 60})
    worker = QuotaWorker(config, sinks=[broken, recorder])
    _append_usage(tmp_path, a=0, b=0)
    worker.run_tick(now=_at(1))
    _append_usage(tmp_path, a=10**6, b=10**6)
    summary = worker.run_tick(now=_at(1, 13))
    assert summary["signals"] == 2
    worker.flush()
    assert broken.calls == 1
    assert len(recorder.signals) == 2
    state = load_node_state(worker.conn, "n1")
    assert state.enforcement["a"].suspended and state.enforcement["b"].suspended
    worker.close()


def test_unreadable_state_fails_startup(tmp_path):
    config = _config(tmp_path)
    with open(config["db_path"], "wb") as f:
        f.write(b"\x00garbage" * 512)
    with pytest.raises(StateCorruptionError):
        QuotaWorker(config, sinks=[])


def test_node_removed_from_snapshot_is_released(tmp_path):
    sink = _RecordingSink()
    worker = QuotaWorker(_config(tmp_path), sinks=[sink])
    _append_usage(tmp_path, a=0, b=0)
    worker.run_tick(now=_at(1))
    _append_usage(tmp_path, b=10**6)
    worker.run_tick(now=_at(1, 13))

    _write_snapshot(tmp_path, dict(SNAPSHOT, nodes=[], grants=[]))
    summary = worker.run_tick(now=_at(1, 14))
    worker.flush()
    assert [(s["user_id"], s["action"], s["reason"]) for s in sink.signals[1:]] == [
        ("b", "reinstate", "node_removed")
    ]
    assert summary["errors"] == []
    assert list_node_ids(worker.conn) == []
    worker.close()


def test_one_failing_node_does_not_block_others(tmp_path, monkeypatch):
    snapshot = dict(SNAPSHOT)
    snapshot["nodes"] = SNAPSHOT["nodes"] + [{"node_id": "n2", "quota_limit_bytes": MIN_BUFFER_BYTES + 31000}]
    snapshot["grants"] = SNAPSHOT["grants"] + [{"user_id": "a", "node_id": "n2"}]
    worker = QuotaWorker(_config(tmp_path, snapshot=snapshot), sinks=[])
    real_tick = daemon_mod.run_node_tick

    def flaky(node, *args):
        if node.node_id == "n1":
            raise RuntimeError("boom")
        return real_tick(node, *args)

    monkeypatch.setattr(daemon_mod, "run_node_tick", flaky)
    summary = worker.run_tick(now=_at(1))
    assert [e["node_id"] for e in summary["errors"]] == ["n1"]
    assert [n["node_id"] for n in summary["nodes"]] == ["n2"]
    assert load_node_state(worker.conn, "n2").ledgers["a"].bank_bytes == 1000
    worker.close()


def test_config_anomalies_counted_once_per_snapshot(tmp_path):
    snapshot = dict(SNAPSHOT, weights=[{"user_id": "ghost", "node_id": "n1", "weight": 5}])
    worker = QuotaWorker(_config(tmp_path, snapshot=snapshot), sinks=[])
    worker.run_tick(now=_at(1))
    worker.run_tick(now=_at(1, 13))
    assert metrics.get_value("tq_anomalies_total", {"kind": "config_inconsistency"}) == 1.0
    worker.close()


def test_trigger_wakes_the_loop(tmp_path):
    worker = QuotaWorker(_config(tmp_path), sinks=[], clock=lambda: _at(1))
    ticks = []
    second = threading.Event()
    real_run_tick = worker.run_tick

    def counting_tick(now=None):
        summary = real_run_tick(now=now)
        ticks.append(summary)
        if len(ticks) >= 2:
            second.set()
        return summary

    worker.run_tick = counting_tick
    thread = threading.Thread(target=worker.run_forever, daemon=True)
    thread.start()
    deadline = time.monotonic() + 5
    while not ticks and time.monotonic() < deadline:
        time.sleep(0.02)
    worker.trigger()
    assert second.wait(5)
    worker.stop()
    thread.join(5)
    assert not thread.is_alive()
    worker.close()


def test_crash_before_commit_does_not_charge_usage_twice(tmp_path, monkeypatch):
    config = _config(tmp_path)
    worker = QuotaWorker(config, sinks=[])
    _append_usage(tmp_path, a=0, b=0)
    worker.run_tick(now=_at(1))
    _append_usage(tmp_path, b=100)
    worker.run_tick(now=_at(1, 13))
    assert load_node_state(worker.conn, "n1").ledgers["b"].bank_bytes == 400

    _append_usage(tmp_path, b=200)

    def disk_full(*args):
        raise OSError("disk full")

    monkeypatch.setattr(daemon_mod, "set_meta", disk_full)
    with pytest.raises(OSError):
        worker.run_tick(now=_at(1, 14))
    monkeypatch.undo()
    assert load_node_state(worker.conn, "n1").ledgers["b"].bank_bytes == 400
    worker.close()

    restarted = QuotaWorker(config, sinks=[])
    restarted.run_tick(now=_at(1, 15))
    assert load_node_state(restarted.conn, "n1").ledgers["b"].bank_bytes == 300
    restarted.close()

    # the feed position lives with the state, not in the checkpoint file
    os.remove(os.path.join(config["output_dir"], "worker_checkpoint.json"))
    again = QuotaWorker(config, sinks=[])
    summary = again.run_tick(now=_at(1, 16))
    assert summary["anomalies"] == 0
    assert load_node_state(again.conn, "n1").ledgers["b"].bank_bytes == 300
    again.close()


def test_failed_node_write_rolls_back_that_node_only(tmp_path, monkeypatch):
    snapshot = dict(SNAPSHOT)
    snapshot["nodes"] = SNAPSHOT["nodes"] + [{"node_id": "n2", "quota_limit_bytes": MIN_BUFFER_BYTES + 31000}]
    snapshot["grants"] = SNAPSHOT["grants"] + [{"user_id": "a", "node_id": "n2"}]
    worker = QuotaWorker(_config(tmp_path, snapshot=snapshot), sinks=[])
    real_save = daemon_mod.save_node_state

    def save_then_fail(conn, state, *args, **kwargs):
        real_save(conn, state, *args, **kwargs)
        if state.node_id == "n1":
            raise RuntimeError("write failed")

    monkeypatch.setattr(daemon_mod, "save_node_state", save_then_fail)
    summary = worker.run_tick(now=_at(1))
    assert [e["node_id"] for e in summary["errors"]] == ["n1"]
    assert list_node_ids(worker.conn) == ["n2"]
    worker.close()


class _SlowSink(SignalSink):
    name = "slow"

    def __init__(self):
        self.released = threading.Event()
        self.signals = []

    def emit(self, signal):
        self.released.wait(5)
        self.signals.append(signal)


def test_slow_sink_does_not_hold_up_ticks(tmp_path):
    slow = _SlowSink()
    worker = QuotaWorker(_config(tmp_path), sinks=[slow])
    _append_usage(tmp_path, a=0, b=0)
    worker.run_tick(now=_at(1))
    _append_usage(tmp_path, a=10**6, b=10**6)

    started = time.monotonic()
    summary = worker.run_tick(now=_at(1, 13))
    worker.run_tick(now=_at(1, 14))
    assert time.monotonic() - started < 2
    assert summary["signals"] == 2
    assert slow.signals == []

    slow.released.set()
    worker.flush()
    assert [(s["user_id"], s["action"]) for s in slow.signals] == [("a", "suspend"), ("b", "suspend")]
    worker.close()
