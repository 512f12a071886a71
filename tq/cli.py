import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone

import yaml

from tq.allocation import compute_allocation
from tq.audit import verify_audit_log
from tq.config import default_config_path, load_cluster_snapshot, load_worker_config
from tq.cycle import cycle_window_at
from tq.domain import ALLOCATED_TIERS, CARRY_DAYS, DEFAULT_WEIGHT
from tq.errors import StateCorruptionError
from tq.pacing import cap_for_day, daily_credit
from tq.registry import init_db, list_enforcement_events, list_ledger


class TQError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


EXIT_OK = 0
EXIT_UNKNOWN = 1
EXIT_PARSE = 2
EXIT_CONFIG = 3
EXIT_STATE = 6

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(level):
    logging.basicConfig(level=getattr(logging, str(level or "INFO").upper(), logging.INFO), format=LOG_FORMAT)


def _parse_now(value):
    if not value:
        return datetime.now(timezone.utc)
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        raise ValueError(f"--now needs a UTC offset: {value}")
    return dt


def _load_config(path):
    if not os.path.isfile(path):
        raise TQError(f"worker config not found: {path}", EXIT_CONFIG)
    try:
        return load_worker_config(path)
    except (ValueError, yaml.YAMLError) as exc:
        raise TQError(f"invalid worker config {path}: {exc}", EXIT_CONFIG) from exc


def _open_db(path):
    if not os.path.isfile(path):
        raise TQError(f"state db not found: {path}", EXIT_CONFIG)
    return init_db(path)


def daemon_cmd(args):
    config = _load_config(args.config)
    _configure_logging(args.log_level or config["log_level"])
    from tq.daemon import worker_main
    worker_main(args.config)


def tick_cmd(args):
    config = _load_config(args.config)
    _configure_logging(args.log_level or config["log_level"])
    from tq.daemon import QuotaWorker
    worker = QuotaWorker(config)
    try:
        summary = worker.run_tick(now=_parse_now(args.now))
    finally:
        worker.close()
    print(json.dumps(summary, indent=2))
    if summary["errors"]:
        raise TQError(f"{len(summary['errors'])} node(s) failed", EXIT_UNKNOWN)


def allocate_cmd(args):
    """Dry-run of the allocation and today's pacing numbers for one node; touches no state."""
    _configure_logging(args.log_level)
    if not os.path.isfile(args.snapshot):
        raise TQError(f"cluster snapshot not found: {args.snapshot}", EXIT_CONFIG)
    snapshot, _ = load_cluster_snapshot(args.snapshot)
    node = snapshot.nodes.get(args.node)
    if node is None:
        raise TQError(f"node not in snapshot: {args.node}", EXIT_CONFIG)
    members = snapshot.members(node.node_id)
    weights = snapshot.node_weights(node.node_id)
    window = cycle_window_at(node.reset_rule, _parse_now(args.now))
    participants = {
        u: weights.get(u, DEFAULT_WEIGHT) for u, user in members.items() if user.tier in ALLOCATED_TIERS
    }
    allocation = compute_allocation(node.quota_limit_bytes, participants)
    rows = []
    for user_id, user in sorted(members.items()):
        base = allocation.base_quota.get(user_id, 0)
        rows.append({
            "user_id": user_id,
            "tier": user.tier.value,
            "weight": weights.get(user_id, DEFAULT_WEIGHT),
            "base_quota_bytes": base,
            "daily_credit_bytes": daily_credit(base, window.days, window.day_index),
            "cap_bytes": cap_for_day(base, window.days, window.day_index, CARRY_DAYS[user.tier]),
        })
    payload = {
        "node_id": node.node_id,
        "enforced": node.enforced,
        "cycle_start": window.start.isoformat(),
        "cycle_end": window.end.isoformat(),
        "cycle_days": window.days,
        "day_index": window.day_index,
        "quota_limit_bytes": allocation.quota_limit_bytes,
        "buffer_bytes": allocation.buffer_bytes,
        "distributable_bytes": allocation.distributable_bytes,
        "users": rows,
    }
    print(json.dumps(payload, indent=2))


def ledger_cmd(args):
    _configure_logging(args.log_level)
    conn = _open_db(args.db)
    try:
        rows = list_ledger(conn, node_id=args.node)
    finally:
        conn.close()
    print(json.dumps(rows, indent=2))


def events_cmd(args):
    _configure_logging(args.log_level)
    conn = _open_db(args.db)
    try:
        rows = list_enforcement_events(conn, node_id=args.node, limit=args.limit)
    finally:
        conn.close()
    print(json.dumps(rows, indent=2))


def audit_verify_cmd(args):
    issues = verify_audit_log(args.log, strict=args.strict)
    if issues:
        for issue in issues:
            print(f"audit: {issue}", file=sys.stderr)
        raise TQError(f"audit log verification failed: {issues[0]}", EXIT_CONFIG)
    print(f"audit log ok: {args.log}")


def build_parser():
    parser = argparse.ArgumentParser(prog="tq", description="Tiered quota pacing worker")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon_parser = subparsers.add_parser("daemon", help="run the quota worker loop")
    daemon_parser.add_argument("--config", default=default_config_path())

    tick_parser = subparsers.add_parser("tick", help="run a single tick and print its summary")
    tick_parser.add_argument("--config", default=default_config_path())
    tick_parser.add_argument("--now", default=None, help="ISO-8601 time with offset (default: now)")

    allocate_parser = subparsers.add_parser("allocate", help="show allocation and pacing for one node")
    allocate_parser.add_argument("--snapshot", required=True)
    allocate_parser.add_argument("--node", required=True)
    allocate_parser.add_argument("--now", default=None)

    ledger_parser = subparsers.add_parser("ledger", help="list stored ledgers and enforcement status")
    ledger_parser.add_argument("--db", default=os.environ.get("TQ_DB_PATH", "tq_state.db"))
    ledger_parser.add_argument("--node", default=None)

    events_parser = subparsers.add_parser("events", help="list recent enforcement events")
    events_parser.add_argument("--db", default=os.environ.get("TQ_DB_PATH", "tq_state.db"))
    events_parser.add_argument("--node", default=None)
    events_parser.add_argument("--limit", type=int, default=50)

    audit_parser = subparsers.add_parser("audit", help="audit log utilities")
    audit_sub = audit_parser.add_subparsers(dest="audit_cmd", required=True)
    audit_verify = audit_sub.add_parser("verify", help="verify the hash chain of an audit log")
    audit_verify.add_argument("--log", required=True)
    audit_verify.add_argument("--strict", action="store_true")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "daemon":
            daemon_cmd(args)
        elif args.command == "tick":
            tick_cmd(args)
        elif args.command == "allocate":
            allocate_cmd(args)
        elif args.command == "ledger":
            ledger_cmd(args)
        elif args.command == "events":
            events_cmd(args)
        elif args.command == "audit":
            if args.audit_cmd == "verify":
                audit_verify_cmd(args)
    except TQError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(exc.code)
    except StateCorruptionError as exc:
        print(f"state corrupted: {exc}", file=sys.stderr)
        sys.exit(EXIT_STATE)
    except (FileNotFoundError, ValueError) as exc:
        print(f"parse error: {exc}", file=sys.stderr)
        sys.exit(EXIT_PARSE)
    except Exception as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(EXIT_UNKNOWN)
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
