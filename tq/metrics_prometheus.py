"""
In-process metrics for the quota worker, rendered in the Prometheus text format and dumped to
a file after each tick (node_exporter textfile collector or any scraper that reads it).
"""
import logging
import os
from typing import Any

logger = logging.getLogger(__name__)

HELP = {
    "tq_bank_bytes": "Current pacing bank per user on a node.",
    "tq_suspended_users": "Users currently suspended on a node.",
    "tq_anomalies_total": "Recoverable quota anomalies by kind.",
    "tq_signals_total": "Enforcement signals emitted by action.",
    "tq_tick_seconds": "Wall time of the last worker tick.",
}

# (metric name, sorted label pairs) -> value
_series: dict[tuple[str, tuple], float] = {}
_types: dict[str, str] = {}


def _labels(labels: dict[str, str] | None) -> tuple:
    return tuple(sorted((labels or {}).items()))


def gauge(name: str, value: float, labels: dict[str, str] | None = None) -> None:
    _types.setdefault(name, "gauge")
    _series[(name, _labels(labels))] = value


def counter_inc(name: str, amount: float = 1.0, labels: dict[str, str] | None = None) -> None:
    _types.setdefault(name, "counter")
    key = (name, _labels(labels))
    _series[key] = _series.get(key, 0.0) + amount


def clear_gauges(name: str, labels: dict[str, str]) -> None:
    """Forget every series of `name` carrying all of `labels`, e.g. every user of one node."""
    wanted = set(labels.items())
    for key in [k for k in _series if k[0] == name and wanted <= set(k[1])]:
        del _series[key]


def bank_bytes(node_id: str, user_id: str, value: int) -> None:
    gauge("tq_bank_bytes", value, {"node": node_id, "user": user_id})


def suspended_users(node_id: str, value: int) -> None:
    gauge("tq_suspended_users", value, {"node": node_id})


def anomaly_total(kind: str) -> None:
    counter_inc("tq_anomalies_total", labels={"kind": kind})


def signal_total(action: str) -> None:
    counter_inc("tq_signals_total", labels={"action": action})


def tick_seconds(value: float) -> None:
    gauge("tq_tick_seconds", value)


def get_value(name: str, labels: dict[str, str] | None = None) -> Any:
    return _series.get((name, _labels(labels)))


def _format_series(name: str, labels: tuple) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f'{k}="{v}"' for k, v in labels) + "}"


def render_prometheus() -> str:
    lines = []
    for name in sorted({key[0] for key in _series}):
        if name in HELP:
            lines.append(f"# HELP {name} {HELP[name]}")
        lines.append(f"# TYPE {name} {_types.get(name, 'untyped')}")
        for (_, labels), value in sorted((k, v) for k, v in _series.items() if k[0] == name):
            lines.append(f"{_format_series(name, labels)} {value}")
    return "".join(line + "\n" for line in lines)


def write_metrics_file(path: str) -> None:
    tmp = path + ".tmp"
    try:
        with open(tmp, "w") as f:
            f.write(render_prometheus())
        os.replace(tmp, path)
    except OSError as exc:
        logger.warning("metrics file not written: %s: %s", path, exc)


def reset() -> None:
    _series.clear()
    _types.clear()
