import logging
import os

import yaml

from tq.cycle import validate_reset_rule
from tq.domain import MAX_WEIGHT, ClusterSnapshot, Grant, Node, ResetRule, User, parse_tier
from tq.errors import ConfigInconsistency

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("config", "quota_worker.yaml")

_snapshot_cache = {}

_SIGNAL_SINKS = {"stdout", "file", "webhook"}
_USAGE_SOURCES = {"file_replay"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def default_config_path():
    return os.environ.get("TQ_CONFIG") or DEFAULT_CONFIG_PATH


def _normalize_worker_config(payload):
    config = dict(payload or {})
    config.setdefault("db_path", "tq_state.db")
    config.setdefault("snapshot_path", os.path.join("config", "cluster_snapshot.yaml"))
    config.setdefault("usage_source", "file_replay")
    config.setdefault("usage_path", "")
    config.setdefault("interval_sec", 60)
    config.setdefault("output_dir", "tq_output")
    sinks = config.get("signal_sinks")
    if sinks is None:
        sinks = ["stdout"]
    elif isinstance(sinks, str):
        sinks = [sinks]
    config["signal_sinks"] = [str(s).strip().lower() for s in sinks] if isinstance(sinks, list) else sinks
    if not config.get("signal_file"):
        config["signal_file"] = os.path.join(config["output_dir"], "signals.jsonl")
    if not config.get("audit_log"):
        config["audit_log"] = os.path.join(config["output_dir"], "audit_log.jsonl")
    config.setdefault("webhook_url", None)
    config["circuit_breaker"] = dict(config.get("circuit_breaker") or {})
    config.setdefault("metrics_file", None)
    config.setdefault("max_checkpoint_history", 50)
    config.setdefault("signal_queue_size", 1000)
    config["log_level"] = str(config.get("log_level") or "INFO").upper()
    return config


def _validate_worker_config(config):
    interval = config.get("interval_sec")
    if not isinstance(interval, (int, float)) or isinstance(interval, bool) or interval <= 0:
        raise ValueError("interval_sec must be a positive number")
    if config.get("usage_source") not in _USAGE_SOURCES:
        raise ValueError(f"usage_source must be one of: {', '.join(sorted(_USAGE_SOURCES))}")
    sinks = config.get("signal_sinks")
    if not isinstance(sinks, list):
        raise ValueError("signal_sinks must be a list")
    unknown = [s for s in sinks if s not in _SIGNAL_SINKS]
    if unknown:
        raise ValueError(f"unknown signal sink(s): {unknown}")
    if "webhook" in sinks and not config.get("webhook_url"):
        raise ValueError("webhook sink requires webhook_url")
    cb = config.get("circuit_breaker")
    for field in ("failure_threshold", "window_sec", "open_sec"):
        if field in cb and (not isinstance(cb[field], (int, float)) or cb[field] <= 0):
            raise ValueError(f"circuit_breaker.{field} must be positive")
    history = config.get("max_checkpoint_history")
    if not isinstance(history, int) or history < 1:
        raise ValueError("max_checkpoint_history must be >= 1")
    queue_size = config.get("signal_queue_size")
    if not isinstance(queue_size, int) or isinstance(queue_size, bool) or queue_size < 1:
        raise ValueError("signal_queue_size must be >= 1")
    if config.get("log_level") not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of: {', '.join(sorted(_LOG_LEVELS))}")
    return config


def load_worker_config(path=None):
    path = path or default_config_path()
    with open(path, "r") as f:
        payload = yaml.safe_load(f) or {}
    if not isinstance(payload, dict):
        raise ValueError("worker config must be a mapping")
    config = _normalize_worker_config(payload)
    return _validate_worker_config(config)


def _as_int(value, name):
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _skip(anomalies, anomaly):
    anomalies.append(anomaly)
    logger.warning("%s: %s", anomaly.kind, anomaly)


def _parse_nodes(rows, anomalies):
    nodes = {}
    for row in rows or []:
        if not isinstance(row, dict) or not row.get("node_id"):
            _skip(anomalies, ConfigInconsistency(f"node row without node_id: {row!r}"))
            continue
        node_id = str(row["node_id"])
        if node_id in nodes:
            _skip(anomalies, ConfigInconsistency("duplicate node row", node_id=node_id))
            continue
        try:
            limit = _as_int(row.get("quota_limit_bytes", 0), "quota_limit_bytes")
            if limit < 0:
                raise ValueError("quota_limit_bytes must be >= 0")
            rr = row.get("reset_rule") or {}
            if not isinstance(rr, dict):
                raise ValueError("reset_rule must be a mapping")
            rule = ResetRule(
                day_of_month=_as_int(rr.get("day_of_month", 1), "day_of_month"),
                tz_offset_minutes=_as_int(rr.get("tz_offset_minutes", 0), "tz_offset_minutes"),
                policy=str(rr.get("policy", "monthly")).strip().lower(),
            )
            validate_reset_rule(rule)
        except ValueError as exc:
            _skip(anomalies, ConfigInconsistency(str(exc), node_id=node_id))
            continue
        nodes[node_id] = Node(node_id=node_id, quota_limit_bytes=limit, reset_rule=rule)
    return nodes


def _parse_users(rows, anomalies):
    users = {}
    for row in rows or []:
        if not isinstance(row, dict) or not row.get("user_id"):
            _skip(anomalies, ConfigInconsistency(f"user row without user_id: {row!r}"))
            continue
        user_id = str(row["user_id"])
        raw = row.get("priority_tier", row.get("tier"))
        tier = parse_tier(str(raw)) if raw is not None else None
        if tier is None:
            _skip(anomalies, ConfigInconsistency(f"unknown priority tier: {raw!r}", user_id=user_id))
            continue
        users[user_id] = User(user_id=user_id, tier=tier)
    return users


def _parse_weights(rows, nodes, users, anomalies):
    weights = {}
    for row in rows or []:
        if not isinstance(row, dict):
            _skip(anomalies, ConfigInconsistency(f"malformed weight row: {row!r}"))
            continue
        user_id, node_id = str(row.get("user_id", "")), str(row.get("node_id", ""))
        if user_id not in users or node_id not in nodes:
            _skip(anomalies, ConfigInconsistency("weight row references unknown user or node",
                                                 node_id=node_id, user_id=user_id))
            continue
        try:
            weight = _as_int(row.get("weight"), "weight")
        except ValueError as exc:
            _skip(anomalies, ConfigInconsistency(str(exc), node_id=node_id, user_id=user_id))
            continue
        if not 0 <= weight <= MAX_WEIGHT:
            _skip(anomalies, ConfigInconsistency(f"weight out of range: {weight}", node_id=node_id, user_id=user_id))
            continue
        weights[(user_id, node_id)] = weight
    return weights


def _parse_grants(rows, nodes, users, anomalies):
    grants = []
    for row in rows or []:
        if not isinstance(row, dict):
            _skip(anomalies, ConfigInconsistency(f"malformed grant row: {row!r}"))
            continue
        user_id, node_id = str(row.get("user_id", "")), str(row.get("node_id", ""))
        if user_id not in users or node_id not in nodes:
            _skip(anomalies, ConfigInconsistency("grant references unknown user or node",
                                                 node_id=node_id, user_id=user_id))
            continue
        enabled = row.get("enabled", True)
        if not isinstance(enabled, bool):
            _skip(anomalies, ConfigInconsistency(f"grant enabled must be true or false: {enabled!r}",
                                                 node_id=node_id, user_id=user_id))
            continue
        grants.append(Grant(user_id=user_id, node_id=node_id, enabled=enabled))
    return grants


def parse_cluster_snapshot(payload):
    """
    Build a ClusterSnapshot from a mapping. Malformed or dangling rows are skipped and
    reported as ConfigInconsistency; the rest of the snapshot stays usable.
    Returns (snapshot, anomalies).
    """
    if not isinstance(payload, dict):
        raise ValueError("cluster snapshot must be a mapping")
    for section in ("nodes", "users", "weights", "grants"):
        if payload.get(section) is not None and not isinstance(payload[section], list):
            raise ValueError(f"cluster snapshot {section} must be a list")
    anomalies = []
    nodes = _parse_nodes(payload.get("nodes"), anomalies)
    users = _parse_users(payload.get("users"), anomalies)
    snapshot = ClusterSnapshot(
        nodes=nodes,
        users=users,
        weights=_parse_weights(payload.get("weights"), nodes, users, anomalies),
        grants=_parse_grants(payload.get("grants"), nodes, users, anomalies),
    )
    return snapshot, anomalies


def load_cluster_snapshot(path):
    mtime = os.path.getmtime(path)
    cached = _snapshot_cache.get(path)
    if cached and cached["mtime"] == mtime:
        return cached["snapshot"], cached["anomalies"]
    with open(path, "r") as f:
        payload = yaml.safe_load(f) or {}
    snapshot, anomalies = parse_cluster_snapshot(payload)
    _snapshot_cache[path] = {"mtime": mtime, "snapshot": snapshot, "anomalies": anomalies}
    return snapshot, anomalies
