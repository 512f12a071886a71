"""
Node-local persisted state (sqlite): pacing watermarks, ledgers, enforcement status,
usage cursors and the enforcement event log. Never replicated.
"""
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from tq.domain import Tier
from tq.engine import NodePacing, NodeState
from tq.enforcement import EnforcementRecord, EnforcementSignal, EnforcementStatus
from tq.errors import StateCorruptionError
from tq.pacing import LedgerEntry
from tq.usage import UsageCursor

SCHEMA_VERSION = "1"


def _create_schema(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS node_pacing (
            node_id TEXT PRIMARY KEY,
            cycle_start TEXT,
            cycle_end TEXT,
            cycle_days INTEGER,
            last_credited_day INTEGER,
            last_cascaded_day INTEGER,
            alloc_fingerprint TEXT,
            updated_at TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger (
            node_id TEXT,
            user_id TEXT,
            tier TEXT,
            base_quota_bytes INTEGER,
            bank_bytes INTEGER,
            last_credited_day INTEGER,
            updated_at TEXT,
            PRIMARY KEY (node_id, user_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS enforcement (
            node_id TEXT,
            user_id TEXT,
            status TEXT,
            suspended_since TEXT,
            updated_at TEXT,
            PRIMARY KEY (node_id, user_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS usage_cursor (
            node_id TEXT,
            user_id TEXT,
            last_total_bytes INTEGER,
            last_seen_ts REAL,
            epoch INTEGER,
            PRIMARY KEY (node_id, user_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS enforcement_events (
            event_id TEXT PRIMARY KEY,
            node_id TEXT,
            user_id TEXT,
            action TEXT,
            reason TEXT,
            bank_bytes INTEGER,
            ts_utc TEXT
        )
        """
    )
    conn.execute(
        "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
        (SCHEMA_VERSION,),
    )
    conn.commit()


def init_db(path):
    """
    Open (or create) the state database. An existing file that sqlite cannot read, that fails
    the integrity check, or that carries an unknown schema version raises StateCorruptionError;
    it is never reset silently.
    """
    dir_name = os.path.dirname(path)
    if dir_name:
        os.makedirs(dir_name, exist_ok=True)
    existed = os.path.isfile(path) and os.path.getsize(path) > 0
    try:
        conn = sqlite3.connect(path, timeout=10, check_same_thread=False)
        conn.execute("PRAGMA busy_timeout=5000")
        if existed:
            row = conn.execute("PRAGMA integrity_check").fetchone()
            if not row or row[0] != "ok":
                conn.close()
                raise StateCorruptionError(f"state db integrity check failed: {path}: {row}")
            tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            if "meta" not in tables:
                conn.close()
                raise StateCorruptionError(f"state db has no meta table: {path}")
            version = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
            if not version or version[0] != SCHEMA_VERSION:
                conn.close()
                raise StateCorruptionError(f"state db schema version {version and version[0]} != {SCHEMA_VERSION}")
        _create_schema(conn)
    except sqlite3.DatabaseError as exc:
        raise StateCorruptionError(f"state db unreadable: {path}: {exc}") from exc
    return conn


def _execute_with_retry(conn, query, params=(), retries=3, delay=0.25):
    attempt = 0
    while True:
        try:
            return conn.execute(query, params)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() and attempt < retries:
                attempt += 1
                time.sleep(delay)
                continue
            raise


def get_meta(conn, key, default=None):
    row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
    return row[0] if row else default


def set_meta(conn, key, value):
    """Upsert a meta value; not committed here."""
    _execute_with_retry(
        conn,
        "INSERT INTO meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, str(value)),
    )


@contextmanager
def tick_transaction(conn):
    """
    One transaction for a whole worker tick: node states, their events and the usage feed
    offset land together or not at all.
    """
    if conn.in_transaction:
        conn.commit()
    _execute_with_retry(conn, "BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


@contextmanager
def node_savepoint(conn):
    """Inside tick_transaction: a node that fails rolls back its own writes only."""
    conn.execute("SAVEPOINT node_tick")
    try:
        yield conn
    except Exception:
        conn.execute("ROLLBACK TO SAVEPOINT node_tick")
        conn.execute("RELEASE SAVEPOINT node_tick")
        raise
    conn.execute("RELEASE SAVEPOINT node_tick")


def _now():
    return datetime.now(timezone.utc).isoformat()


def _parse_tier(value, node_id, user_id):
    try:
        return Tier(value)
    except ValueError as exc:
        raise StateCorruptionError(f"bad tier {value!r} in ledger node={node_id} user={user_id}") from exc


def _parse_status(value, node_id, user_id):
    try:
        return EnforcementStatus(value)
    except ValueError as exc:
        raise StateCorruptionError(f"bad status {value!r} node={node_id} user={user_id}") from exc


def load_node_state(conn, node_id):
    state = NodeState(node_id=node_id)
    row = conn.execute(
        """
        SELECT cycle_start, cycle_end, cycle_days, last_credited_day, last_cascaded_day, alloc_fingerprint
        FROM node_pacing WHERE node_id = ?
        """,
        (node_id,),
    ).fetchone()
    if row:
        state.pacing = NodePacing(
            node_id=node_id,
            cycle_start=row[0],
            cycle_end=row[1],
            cycle_days=int(row[2]),
            last_credited_day=int(row[3]),
            last_cascaded_day=int(row[4]),
            alloc_fingerprint=row[5],
        )
    for user_id, tier, base, bank, last_day in conn.execute(
        "SELECT user_id, tier, base_quota_bytes, bank_bytes, last_credited_day FROM ledger WHERE node_id = ?",
        (node_id,),
    ):
        if bank is None or int(bank) < 0:
            raise StateCorruptionError(f"negative bank in ledger node={node_id} user={user_id}")
        state.ledgers[user_id] = LedgerEntry(
            user_id=user_id,
            tier=_parse_tier(tier, node_id, user_id),
            base_quota_bytes=int(base),
            bank_bytes=int(bank),
            last_credited_day=int(last_day),
        )
    for user_id, status, since in conn.execute(
        "SELECT user_id, status, suspended_since FROM enforcement WHERE node_id = ?",
        (node_id,),
    ):
        state.enforcement[user_id] = EnforcementRecord(
            user_id=user_id,
            status=_parse_status(status, node_id, user_id),
            suspended_since=since,
        )
    for user_id, total, seen, epoch in conn.execute(
        "SELECT user_id, last_total_bytes, last_seen_ts, epoch FROM usage_cursor WHERE node_id = ?",
        (node_id,),
    ):
        state.cursors[user_id] = UsageCursor(
            user_id=user_id,
            last_total_bytes=int(total),
            last_seen_ts=seen,
            epoch=int(epoch),
        )
    return state


def save_node_state(conn, state, signals=(), commit=True):
    """
    Replace everything stored for the node and append its signals. With commit=False the
    writes join the caller's transaction (see tick_transaction) and are not committed here.
    """
    node_id = state.node_id
    now = _now()
    try:
        if state.pacing is None:
            _execute_with_retry(conn, "DELETE FROM node_pacing WHERE node_id = ?", (node_id,))
        else:
            p = state.pacing
            _execute_with_retry(
                conn,
                """
                INSERT INTO node_pacing (
                    node_id, cycle_start, cycle_end, cycle_days,
                    last_credited_day, last_cascaded_day, alloc_fingerprint, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(node_id) DO UPDATE SET
                    cycle_start=excluded.cycle_start,
                    cycle_end=excluded.cycle_end,
                    cycle_days=excluded.cycle_days,
                    last_credited_day=excluded.last_credited_day,
                    last_cascaded_day=excluded.last_cascaded_day,
                    alloc_fingerprint=excluded.alloc_fingerprint,
                    updated_at=excluded.updated_at
                """,
                (node_id, p.cycle_start, p.cycle_end, p.cycle_days,
                 p.last_credited_day, p.last_cascaded_day, p.alloc_fingerprint, now),
            )
        _execute_with_retry(conn, "DELETE FROM ledger WHERE node_id = ?", (node_id,))
        for e in state.ledgers.values():
            _execute_with_retry(
                conn,
                """
                INSERT INTO ledger (node_id, user_id, tier, base_quota_bytes, bank_bytes, last_credited_day, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (node_id, e.user_id, e.tier.value, e.base_quota_bytes, e.bank_bytes, e.last_credited_day, now),
            )
        _execute_with_retry(conn, "DELETE FROM enforcement WHERE node_id = ?", (node_id,))
        for r in state.enforcement.values():
            _execute_with_retry(
                conn,
                "INSERT INTO enforcement (node_id, user_id, status, suspended_since, updated_at) VALUES (?, ?, ?, ?, ?)",
                (node_id, r.user_id, r.status.value, r.suspended_since, now),
            )
        _execute_with_retry(conn, "DELETE FROM usage_cursor WHERE node_id = ?", (node_id,))
        for c in state.cursors.values():
            _execute_with_retry(
                conn,
                "INSERT INTO usage_cursor (node_id, user_id, last_total_bytes, last_seen_ts, epoch) VALUES (?, ?, ?, ?, ?)",
                (node_id, c.user_id, c.last_total_bytes, c.last_seen_ts, c.epoch),
            )
        for s in signals:
            insert_enforcement_event(conn, s, commit=False)
        if commit:
            conn.commit()
    except Exception:
        if commit:
            conn.rollback()
        raise


def insert_enforcement_event(conn, signal: EnforcementSignal, commit=True):
    _execute_with_retry(
        conn,
        """
        INSERT INTO enforcement_events (event_id, node_id, user_id, action, reason, bank_bytes, ts_utc)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), signal.node_id, signal.user_id, signal.action.value,
         signal.reason, signal.bank_bytes, signal.ts_utc),
    )
    if commit:
        conn.commit()


def list_node_ids(conn):
    rows = conn.execute(
        """
        SELECT node_id FROM node_pacing
        UNION SELECT node_id FROM ledger
        UNION SELECT node_id FROM enforcement
        UNION SELECT node_id FROM usage_cursor
        """
    ).fetchall()
    return sorted(r[0] for r in rows)


def verify_state(conn):
    """Load every stored node; raises StateCorruptionError on the first unreadable row."""
    count = 0
    try:
        for node_id in list_node_ids(conn):
            load_node_state(conn, node_id)
            count += 1
    except (sqlite3.DatabaseError, TypeError, ValueError) as exc:
        raise StateCorruptionError(f"state db unreadable: {exc}") from exc
    return count


def list_ledger(conn, node_id=None):
    """Ledger rows joined with enforcement status (administrator diagnostics only)."""
    query = """
        SELECT l.node_id, l.user_id, l.tier, l.base_quota_bytes, l.bank_bytes, l.last_credited_day,
               COALESCE(e.status, 'active'), e.suspended_since
        FROM ledger l
        LEFT JOIN enforcement e ON e.node_id = l.node_id AND e.user_id = l.user_id
    """
    params = ()
    if node_id:
        query += " WHERE l.node_id = ?"
        params = (node_id,)
    query += " ORDER BY l.node_id, l.user_id"
    keys = ["node_id", "user_id", "tier", "base_quota_bytes", "bank_bytes", "last_credited_day",
            "status", "suspended_since"]
    return [dict(zip(keys, row)) for row in conn.execute(query, params).fetchall()]


def list_enforcement_events(conn, node_id=None, limit=50):
    query = "SELECT event_id, node_id, user_id, action, reason, bank_bytes, ts_utc FROM enforcement_events"
    params = []
    if node_id:
        query += " WHERE node_id = ?"
        params.append(node_id)
    query += " ORDER BY ts_utc DESC, rowid DESC LIMIT ?"
    params.append(int(limit))
    keys = ["event_id", "node_id", "user_id", "action", "reason", "bank_bytes", "ts_utc"]
    return [dict(zip(keys, row)) for row in conn.execute(query, params).fetchall()]
