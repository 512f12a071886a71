import json

import pytest
import yaml

from tq import cli
from tq.allocation import MIN_BUFFER_BYTES
from tq.audit import append_audit_log

SNAPSHOT = {
    "nodes": [
        {"node_id": "n1", "quota_limit_bytes": MIN_BUFFER_BYTES + 31000},
        {"node_id": "free", "quota_limit_bytes": 0},
    ],
    "users": [
        {"user_id": "a", "priority_tier": "p1"},
        {"user_id": "b", "priority_tier": "p2"},
        {"user_id": "x", "priority_tier": "p3"},
    ],
    "weights": [{"user_id": "a", "node_id": "n1", "weight": 300}],
    "grants": [
        {"user_id": "a", "node_id": "n1"},
        {"user_id": "b", "node_id": "n1"},
        {"user_id": "x", "node_id": "n1"},
    ],
}


def _run(argv):
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    return exc.value.code


def _setup(tmp_path):
    snapshot = tmp_path / "snapshot.yaml"
    snapshot.write_text(yaml.safe_dump(SNAPSHOT))
    (tmp_path / "usage.csv").write_text("user_id,node_id,total_bytes\na,n1,0\nb,n1,0\n")
    config = {
        "db_path": str(tmp_path / "state.db"),
        "snapshot_path": str(snapshot),
        "usage_path": str(tmp_path / "usage.csv"),
        "output_dir": str(tmp_path / "out"),
        "signal_sinks": ["file"],
    }
    path = tmp_path / "worker.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path)


def test_allocate_dry_run(tmp_path, capsys):
    _setup(tmp_path)
    code = _run(["allocate", "--snapshot", str(tmp_path / "snapshot.yaml"), "--node", "n1",
                 "--now", "2025-05-01T12:00:00+00:00"])
    assert code == cli.EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload["cycle_days"] == 31
    assert payload["distributable_bytes"] == 31000
    users = {u["user_id"]: u for u in payload["users"]}
    assert users["a"]["base_quota_bytes"] == 23250
    assert users["b"]["base_quota_bytes"] == 7750
    assert users["x"]["base_quota_bytes"] == 0
    assert users["a"]["daily_credit_bytes"] == 750
    assert not (tmp_path / "state.db").exists()


def test_allocate_unknown_node(tmp_path, capsys):
    _setup(tmp_path)
    code = _run(["allocate", "--snapshot", str(tmp_path / "snapshot.yaml"), "--node", "nope"])
    assert code == cli.EXIT_CONFIG
    assert "node not in snapshot" in capsys.readouterr().err


def test_tick_then_ledger_and_events(tmp_path, capsys):
    config = _setup(tmp_path)
    assert _run(["tick", "--config", config, "--now", "2025-05-01T12:00:00+00:00"]) == cli.EXIT_OK
    summary = json.loads(capsys.readouterr().out)
    assert [n["node_id"] for n in summary["nodes"]] == ["free", "n1"]
    assert summary["nodes"][0]["bypass_reason"] == "unlimited"

    with open(tmp_path / "usage.csv", "a") as f:
        f.write("b,n1,100000\n")
    assert _run(["tick", "--config", config, "--now", "2025-05-01T13:00:00+00:00"]) == cli.EXIT_OK
    summary = json.loads(capsys.readouterr().out)
    assert summary["signals"] == 1

    assert _run(["ledger", "--db", str(tmp_path / "state.db"), "--node", "n1"]) == cli.EXIT_OK
    rows = json.loads(capsys.readouterr().out)
    assert {r["user_id"]: r["status"] for r in rows} == {"a": "active", "b": "suspended", "x": "active"}

    assert _run(["events", "--db", str(tmp_path / "state.db")]) == cli.EXIT_OK
    events = json.loads(capsys.readouterr().out)
    assert [(e["user_id"], e["action"]) for e in events] == [("b", "suspend")]

    signals = (tmp_path / "out" / "signals.jsonl").read_text().splitlines()
    assert json.loads(signals[0])["action"] == "suspend"

    assert _run(["audit", "verify", "--log", str(tmp_path / "out" / "audit_log.jsonl")]) == cli.EXIT_OK


def test_missing_config_and_db(tmp_path):
    assert _run(["tick", "--config", str(tmp_path / "nope.yaml")]) == cli.EXIT_CONFIG
    assert _run(["ledger", "--db", str(tmp_path / "nope.db")]) == cli.EXIT_CONFIG


def test_invalid_config_exit_code(tmp_path):
    path = tmp_path / "worker.yaml"
    path.write_text(yaml.safe_dump({"interval_sec": -1}))
    assert _run(["tick", "--config", str(path)]) == cli.EXIT_CONFIG


def test_corrupted_state_exit_code(tmp_path, capsys):
    config = _setup(tmp_path)
    (tmp_path / "state.db").write_bytes(b"not a database" * 200)
    assert _run(["tick", "--config", config]) == cli.EXIT_STATE
    assert "state corrupted" in capsys.readouterr().err


def test_bad_now_is_parse_error(tmp_path):
    _setup(tmp_path)
    code = _run(["allocate", "--snapshot", str(tmp_path / "snapshot.yaml"), "--node", "n1",
                 "--now", "2025-05-01T12:00:00"])
    assert code == cli.EXIT_PARSE


def test_audit_verify_detects_tampering(tmp_path):
    log = tmp_path / "audit_log.jsonl"
    append_audit_log(str(log), "suspend", {"user_id": "u"})
    log.write_text(log.read_text().replace('"u"', '"v"'))
    assert _run(["audit", "verify", "--log", str(log)]) == cli.EXIT_CONFIG
