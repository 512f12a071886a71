"""
Quota worker: periodic (and on-demand) ticks over every node of this replica.
tq daemon --config config/quota_worker.yaml

One tick at a time per process. A tick is a single sqlite transaction: every node's state,
its enforcement events and the usage feed offset commit together, with a savepoint per node
so one failing node rolls back alone. Signals are handed to a background sender only after
the commit, and delivery failures never roll anything back.
"""
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone

from tq import metrics_prometheus as metrics
from tq.audit import audit_signals
from tq.config import load_cluster_snapshot, load_worker_config
from tq.engine import retire_node, run_node_tick
from tq.errors import StateCorruptionError
from tq.ingest import get_source
from tq.registry import (
    get_meta,
    init_db,
    list_node_ids,
    load_node_state,
    node_savepoint,
    save_node_state,
    set_meta,
    tick_transaction,
    verify_state,
)
from tq.resilience import load_checkpoint, save_checkpoint_to_history, write_checkpoint
from tq.signals import SignalDispatcher, get_sinks

logger = logging.getLogger(__name__)

USAGE_OFFSET_KEY = "usage_offset"


def _utcnow():
    return datetime.now(timezone.utc)


class QuotaWorker:
    def __init__(self, config: dict, clock=None, sinks=None):
        self.config = config
        self.clock = clock or _utcnow
        self.output_dir = os.path.abspath(config.get("output_dir", "tq_output"))
        self.interval_sec = float(config.get("interval_sec", 60))
        # unreadable state is fatal here, never reset
        self.conn = init_db(config["db_path"])
        stored = verify_state(self.conn)
        logger.info("state db %s: %d node(s) stored", config["db_path"], stored)
        if sinks is None:
            sinks = get_sinks(
                config.get("signal_sinks") or [],
                path=config.get("signal_file"),
                url=config.get("webhook_url"),
            )
        self.dispatcher = SignalDispatcher(
            sinks,
            breaker_config=config.get("circuit_breaker"),
            max_pending=int(config.get("signal_queue_size", 1000)),
        )
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._snapshot_seen = None
        self.checkpoint = load_checkpoint(self.output_dir)

    def _read_usage(self):
        """New samples from the feed and the offset just past them (None when there is no feed)."""
        path = self.config.get("usage_path")
        if not path or not os.path.isfile(path):
            return [], None
        offset = int(get_meta(self.conn, USAGE_OFFSET_KEY, 0) or 0)
        source = get_source(self.config.get("usage_source", "file_replay"), path=path, offset=offset)
        with source:
            source.connect()
            samples = source.read()
        return samples, source.offset

    def _load_snapshot(self):
        snapshot, anomalies = load_cluster_snapshot(self.config["snapshot_path"])
        if snapshot is not self._snapshot_seen:
            self._snapshot_seen = snapshot
            for anomaly in anomalies:
                metrics.anomaly_total(anomaly.kind)
        return snapshot

    def _observe(self, state, result):
        metrics.clear_gauges("tq_bank_bytes", {"node": state.node_id})
        for user_id, entry in sorted(state.ledgers.items()):
            metrics.bank_bytes(state.node_id, user_id, entry.bank_bytes)
        metrics.suspended_users(state.node_id, sum(1 for r in state.enforcement.values() if r.suspended))
        for anomaly in result.anomalies:
            metrics.anomaly_total(anomaly.kind)

    def _tick_node(self, snapshot, node, samples, now):
        state = load_node_state(self.conn, node.node_id)
        result = run_node_tick(
            node,
            snapshot.members(node.node_id),
            snapshot.node_weights(node.node_id),
            state,
            samples,
            now,
        )
        save_node_state(self.conn, state, result.signals, commit=False)
        return state, result

    def _retire_node(self, node_id, now):
        state = load_node_state(self.conn, node_id)
        result = retire_node(state, now)
        save_node_state(self.conn, state, result.signals, commit=False)
        logger.info("node %s left the snapshot; state dropped", node_id)
        return state, result

    def dispatch_signals(self, signals):
        """Audit committed signals, then queue them for the sinks without waiting."""
        audit_path = self.config.get("audit_log")
        for signal in signals:
            metrics.signal_total(signal.action.value)
        if audit_path and signals:
            try:
                audit_signals(audit_path, signals)
            except OSError as exc:
                logger.error("audit append failed: %s", exc)
        self.dispatcher.submit([s.to_dict() for s in signals])

    def run_tick(self, now=None):
        """One pass over every node. Returns a summary dict."""
        with self._lock:
            started = time.monotonic()
            now = now or self.clock()
            snapshot = self._load_snapshot()
            samples, usage_offset = self._read_usage()
            by_node = {}
            for sample in samples:
                if sample.node_id not in snapshot.nodes:
                    logger.debug("usage for unknown node %s ignored", sample.node_id)
                    continue
                by_node.setdefault(sample.node_id, []).append(sample)

            ticked, errors = [], []
            with tick_transaction(self.conn):
                for node_id in sorted(snapshot.nodes):
                    try:
                        with node_savepoint(self.conn):
                            ticked.append(self._tick_node(snapshot, snapshot.nodes[node_id],
                                                          by_node.get(node_id, []), now))
                    except Exception as exc:
                        logger.exception("node tick failed node=%s", node_id)
                        errors.append({"node_id": node_id, "error": str(exc)})
                for node_id in list_node_ids(self.conn):
                    if node_id in snapshot.nodes:
                        continue
                    try:
                        with node_savepoint(self.conn):
                            ticked.append(self._retire_node(node_id, now))
                    except Exception as exc:
                        logger.exception("node retire failed node=%s", node_id)
                        errors.append({"node_id": node_id, "error": str(exc)})
                if usage_offset is not None:
                    set_meta(self.conn, USAGE_OFFSET_KEY, usage_offset)

            for state, result in ticked:
                if state.node_id in snapshot.nodes:
                    self._observe(state, result)
                else:
                    metrics.clear_gauges("tq_bank_bytes", {"node": state.node_id})
                    metrics.suspended_users(state.node_id, 0)
            results = [result for _, result in ticked]
            signals = [s for r in results for s in r.signals]
            self.dispatch_signals(signals)

            elapsed = time.monotonic() - started
            metrics.tick_seconds(elapsed)
            summary = {
                "ts_utc": now.isoformat(),
                "nodes": [r.summary() for r in results],
                "signals": len(signals),
                "anomalies": sum(len(r.anomalies) for r in results),
                "errors": errors,
                "tick_seconds": round(elapsed, 6),
            }
            if usage_offset is not None:
                self.checkpoint["usage_offset"] = usage_offset
            self._write_checkpoint(summary)
            return summary

    def _write_checkpoint(self, summary):
        self.checkpoint["last_tick_utc"] = summary["ts_utc"]
        self.checkpoint["last_signals"] = summary["signals"]
        self.checkpoint["last_anomalies"] = summary["anomalies"]
        self.checkpoint["last_errors"] = len(summary["errors"])
        try:
            write_checkpoint(self.output_dir, self.checkpoint)
            save_checkpoint_to_history(
                self.output_dir,
                self.checkpoint,
                max_entries=int(self.config.get("max_checkpoint_history", 50)),
            )
        except OSError as exc:
            logger.warning("checkpoint not written: %s", exc)
        metrics_file = self.config.get("metrics_file")
        if metrics_file:
            metrics.write_metrics_file(metrics_file)

    def trigger(self):
        """Request an immediate tick from the run_forever loop."""
        self._wake.set()

    def stop(self):
        self._stopped.set()
        self._wake.set()

    def flush(self):
        """Block until queued signals have been handed to every sink."""
        self.dispatcher.flush()

    def close(self):
        self.dispatcher.close()
        with self._lock:
            self.conn.close()

    def run_forever(self):
        print(
            f"worker started: snapshot={self.config['snapshot_path']} interval={self.interval_sec:g}s "
            f"db={self.config['db_path']} output={self.output_dir}"
        )
        try:
            while not self._stopped.is_set():
                try:
                    summary = self.run_tick()
                    print(
                        f"tick: nodes={len(summary['nodes'])} signals={summary['signals']} "
                        f"anomalies={summary['anomalies']} errors={len(summary['errors'])}"
                    )
                except StateCorruptionError:
                    raise
                except Exception as e:
                    logger.exception("tick failed")
                    print(f"worker error: {e}", file=sys.stderr)
                self._wake.wait(self.interval_sec)
                self._wake.clear()
        except KeyboardInterrupt:
            pass
        print("worker stopped")


def worker_main(config_path: str) -> None:
    config = load_worker_config(config_path)
    worker = QuotaWorker(config)
    try:
        worker.run_forever()
    finally:
        worker.close()
