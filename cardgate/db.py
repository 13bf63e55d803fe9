"""
Database module for Cardgate.

Provides SQLite-based storage for cards, reader attestation challenges
and tokens, the simulated card counters, and the hash-chained audit log.
Uses thread-local connections and explicit transactions.
"""

import sqlite3
import threading
from typing import Optional, List, Dict, Any
from contextlib import contextmanager

from . import config
from .util import chain_entry_hash

# Thread-local storage for connection pooling
_local = threading.local()


def _get_connection() -> sqlite3.Connection:
    """
    Get a thread-local database connection.
    Connections are reused within the same thread and reopened if the
    configured database path changes.
    """
    path = str(config.DB_PATH)
    conn = getattr(_local, 'conn', None)
    if conn is None or getattr(_local, 'path', None) != path:
        if conn is not None:
            conn.close()
        config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below
        conn = sqlite3.connect(path, timeout=5.0, check_same_thread=False, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.row_factory = sqlite3.Row
        _local.conn = conn
        _local.path = path
    return conn


@contextmanager
def _transaction(immediate: bool = False):
    """
    Context manager for database transactions.
    Commits on success, rolls back on failure. An immediate transaction
    takes the write lock up front so read-then-write sequences cannot
    interleave with another writer.
    """
    conn = _get_connection()
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def init_db() -> None:
    """
    Initialize database schema with proper indexes.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    with _transaction() as conn:
        conn.execute("""
        CREATE TABLE IF NOT EXISTS cards (
            card_id TEXT PRIMARY KEY,
            secret_wrapped TEXT NOT NULL,
            owner TEXT NOT NULL,
            user_role TEXT NOT NULL,
            mac_version TEXT NOT NULL,
            last_ctr INTEGER,
            created_at INTEGER NOT NULL,
            expires_at INTEGER NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            qr_code TEXT,
            CHECK (expires_at > created_at)
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_cards_active
        ON cards(active);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS attestation_challenges (
            challenge TEXT PRIMARY KEY,
            reader_id TEXT NOT NULL,
            issued_at INTEGER NOT NULL,
            expires_at INTEGER NOT NULL,
            state TEXT NOT NULL DEFAULT 'issued',
            failed_attempts INTEGER NOT NULL DEFAULT 0,
            closed_at INTEGER
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_challenges_state
        ON attestation_challenges(state, closed_at);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS attestation_tokens (
            token_hash TEXT PRIMARY KEY,
            reader_id TEXT NOT NULL,
            issued_at INTEGER NOT NULL,
            expires_at INTEGER NOT NULL,
            uses INTEGER NOT NULL DEFAULT 0
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_tokens_reader
        ON attestation_tokens(reader_id, expires_at);""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS sim_counters (
            card_id TEXT PRIMARY KEY,
            ctr INTEGER NOT NULL
        );""")

        conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_events (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type TEXT NOT NULL,
            event_category TEXT NOT NULL,
            card_id TEXT,
            reader_id TEXT,
            owner TEXT,
            user_role TEXT,
            event_timestamp INTEGER NOT NULL,
            success INTEGER NOT NULL,
            message TEXT,
            error_code TEXT,
            counter_value INTEGER,
            response_time_ms INTEGER,
            ip_address TEXT,
            user_agent TEXT,
            request_id TEXT,
            payload_hash TEXT NOT NULL,
            prev_entry_hash TEXT,
            entry_hash TEXT NOT NULL
        );""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_card
        ON audit_events(card_id, event_timestamp);""")
        conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_type
        ON audit_events(event_type);""")


# ============================================================
# Cards
# ============================================================

CARD_COLUMNS = (
    "card_id, secret_wrapped, owner, user_role, mac_version, last_ctr, "
    "created_at, expires_at, active, qr_code"
)


def insert_card(row: Dict[str, Any]) -> None:
    """Insert a freshly issued card. Fails on a duplicate card_id."""
    with _transaction() as conn:
        conn.execute(
            f"INSERT INTO cards({CARD_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
            (row["card_id"], row["secret_wrapped"], row["owner"], row["user_role"],
             row["mac_version"], row.get("last_ctr"), row["created_at"], row["expires_at"],
             1 if row.get("active", True) else 0, row.get("qr_code"))
        )


def get_card(card_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    cur = conn.execute(f"SELECT {CARD_COLUMNS} FROM cards WHERE card_id=?", (card_id,))
    row = cur.fetchone()
    return dict(row) if row else None


def advance_counter(card_id: str, ctr: int) -> bool:
    """
    Advance the counter high-water-mark.

    Returns True only if the stored value was unset or strictly lower.
    The single UPDATE is the compare-and-set; no read precedes it.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE cards SET last_ctr=? WHERE card_id=? AND (last_ctr IS NULL OR last_ctr < ?)",
            (ctr, card_id, ctr)
        )
        return cur.rowcount == 1


def deactivate_card(card_id: str) -> bool:
    """Set active=0. Returns True only if this call changed the flag."""
    with _transaction(immediate=True) as conn:
        cur = conn.execute("UPDATE cards SET active=0 WHERE card_id=? AND active=1", (card_id,))
        return cur.rowcount == 1


def extend_card(card_id: str, now: int, extra_seconds: int, max_expiry: int) -> Optional[int]:
    """
    Set expires_at := max(now, expires_at) + extra_seconds in one statement.
    Returns the new expiry, or None if the card does not exist or the new
    expiry would pass max_expiry.
    """
    with _transaction(immediate=True) as conn:
        cur = conn.execute(
            "UPDATE cards SET expires_at = MAX(?, expires_at) + ? "
            "WHERE card_id=? AND MAX(?, expires_at) + ? <= ?",
            (now, extra_seconds, card_id, now, extra_seconds, max_expiry)
        )
        if cur.rowcount != 1:
            return None
        row = conn.execute("SELECT expires_at FROM cards WHERE card_id=?", (card_id,)).fetchone()
        return row["expires_at"]


def set_qr_code(card_id: str, qr_code: str) -> bool:
    with _transaction() as conn:
        cur = conn.execute("UPDATE cards SET qr_code=? WHERE card_id=?", (qr_code, card_id))
        return cur.rowcount == 1


def list_cards(
    active: Optional[bool] = None,
    role: Optional[str] = None,
    owner: Optional[str] = None
) -> List[Dict[str, Any]]:
    """List cards, newest first, with optional filters."""
    clauses, params = [], []
    if active is not None:
        clauses.append("active=?")
        params.append(1 if active else 0)
    if role:
        clauses.append("user_role=?")
        params.append(role)
    if owner:
        clauses.append("owner LIKE ?")
        params.append(f"%{owner}%")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    conn = _get_connection()
    cur = conn.execute(
        f"SELECT {CARD_COLUMNS} FROM cards{where} ORDER BY created_at DESC, card_id",
        params
    )
    return [dict(row) for row in cur.fetchall()]


# ============================================================
# Reader Attestation
# ============================================================

def insert_challenge(challenge: str, reader_id: str, issued_at: int, expires_at: int) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO attestation_challenges(challenge, reader_id, issued_at, expires_at, state) "
            "VALUES(?,?,?,?,'issued')",
            (challenge, reader_id, issued_at, expires_at)
        )


def get_challenge(challenge: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT challenge, reader_id, issued_at, expires_at, state, failed_attempts, closed_at "
        "FROM attestation_challenges WHERE challenge=?",
        (challenge,)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def close_challenge(challenge: str, new_state: str, now: int) -> bool:
    """
    Move an issued challenge to a terminal state.
    Returns True only for the caller that performed the transition.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE attestation_challenges SET state=?, closed_at=? "
            "WHERE challenge=? AND state='issued'",
            (new_state, now, challenge)
        )
        return cur.rowcount == 1


def record_challenge_failure(challenge: str, max_attempts: int, now: int) -> int:
    """
    Count a failed signature check; expire the challenge once max_attempts is reached.
    Returns the updated failure count.
    """
    with _transaction(immediate=True) as conn:
        conn.execute(
            "UPDATE attestation_challenges SET failed_attempts = failed_attempts + 1 "
            "WHERE challenge=? AND state='issued'",
            (challenge,)
        )
        row = conn.execute(
            "SELECT failed_attempts FROM attestation_challenges WHERE challenge=?",
            (challenge,)
        ).fetchone()
        attempts = row["failed_attempts"] if row else 0
        if max_attempts > 0 and attempts >= max_attempts:
            conn.execute(
                "UPDATE attestation_challenges SET state='expired', closed_at=? "
                "WHERE challenge=? AND state='issued'",
                (now, challenge)
            )
        return attempts


def purge_challenges(now: int, grace_seconds: int) -> int:
    """
    Garbage-collect challenges: expire overdue issued ones, then delete
    terminal ones older than the grace period.
    """
    with _transaction() as conn:
        conn.execute(
            "UPDATE attestation_challenges SET state='expired', closed_at=? "
            "WHERE state='issued' AND expires_at < ?",
            (now, now)
        )
        cur = conn.execute(
            "DELETE FROM attestation_challenges WHERE state != 'issued' AND closed_at < ?",
            (now - grace_seconds,)
        )
        return cur.rowcount


def insert_token(token_hash: str, reader_id: str, issued_at: int, expires_at: int) -> None:
    with _transaction() as conn:
        conn.execute(
            "INSERT INTO attestation_tokens(token_hash, reader_id, issued_at, expires_at, uses) "
            "VALUES(?,?,?,?,0)",
            (token_hash, reader_id, issued_at, expires_at)
        )


def use_token(token_hash: str, reader_id: str, now: int, max_uses: int) -> bool:
    """
    Atomically count one use of an attestation token.
    Fails if the token is unknown, bound to another reader, expired or used up.
    """
    with _transaction() as conn:
        cur = conn.execute(
            "UPDATE attestation_tokens SET uses = uses + 1 "
            "WHERE token_hash=? AND reader_id=? AND expires_at > ? AND (? = 0 OR uses < ?)",
            (token_hash, reader_id, now, max_uses, max_uses)
        )
        return cur.rowcount == 1


def latest_token(reader_id: str, now: int) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    cur = conn.execute(
        "SELECT reader_id, issued_at, expires_at, uses FROM attestation_tokens "
        "WHERE reader_id=? AND expires_at > ? ORDER BY issued_at DESC LIMIT 1",
        (reader_id, now)
    )
    row = cur.fetchone()
    return dict(row) if row else None


def purge_tokens(now: int) -> int:
    with _transaction() as conn:
        cur = conn.execute("DELETE FROM attestation_tokens WHERE expires_at <= ?", (now,))
        return cur.rowcount


# ============================================================
# Card Simulator
# ============================================================

def next_sim_counter(card_id: str, floor: int) -> int:
    """Advance the simulated card counter to max(current, floor) + 1."""
    with _transaction(immediate=True) as conn:
        row = conn.execute("SELECT ctr FROM sim_counters WHERE card_id=?", (card_id,)).fetchone()
        current = row["ctr"] if row else -1
        nxt = max(current, floor) + 1
        conn.execute(
            "INSERT INTO sim_counters(card_id, ctr) VALUES(?,?) "
            "ON CONFLICT(card_id) DO UPDATE SET ctr=excluded.ctr",
            (card_id, nxt)
        )
        return nxt


# ============================================================
# Audit Log
# ============================================================

AUDIT_COLUMNS = (
    "event_type, event_category, card_id, reader_id, owner, user_role, event_timestamp, "
    "success, message, error_code, counter_value, response_time_ms, ip_address, user_agent, "
    "request_id"
)


def append_audit_event(event: Dict[str, Any], payload_hash: str) -> str:
    """
    Append an audit event, linking it to the previous entry's hash.
    The write lock is taken before reading the chain head so concurrent
    appends cannot fork the chain. Returns the new entry hash.
    """
    with _transaction(immediate=True) as conn:
        row = conn.execute("SELECT entry_hash FROM audit_events ORDER BY seq DESC LIMIT 1").fetchone()
        prev = row["entry_hash"] if row else None
        entry_hash = chain_entry_hash(prev, payload_hash)
        conn.execute(
            f"INSERT INTO audit_events({AUDIT_COLUMNS}, payload_hash, prev_entry_hash, entry_hash) "
            "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (event["event_type"], event["event_category"], event.get("card_id"),
             event.get("reader_id"), event.get("owner"), event.get("user_role"),
             event["event_timestamp"], 1 if event["success"] else 0, event.get("message"),
             event.get("error_code"), event.get("counter_value"), event.get("response_time_ms"),
             event.get("ip_address"), event.get("user_agent"), event.get("request_id"),
             payload_hash, prev, entry_hash)
        )
        return entry_hash


def query_audit_events(
    card_id: Optional[str] = None,
    reader_id: Optional[str] = None,
    event_type: Optional[str] = None,
    success: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    ascending: bool = False
) -> List[Dict[str, Any]]:
    clauses, params = [], []
    if card_id:
        clauses.append("card_id=?")
        params.append(card_id)
    if reader_id:
        clauses.append("reader_id=?")
        params.append(reader_id)
    if event_type:
        clauses.append("event_type=?")
        params.append(event_type)
    if success is not None:
        clauses.append("success=?")
        params.append(1 if success else 0)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    order = "ASC" if ascending else "DESC"
    conn = _get_connection()
    cur = conn.execute(
        f"SELECT seq, {AUDIT_COLUMNS}, payload_hash, prev_entry_hash, entry_hash "
        f"FROM audit_events{where} ORDER BY seq {order} LIMIT ? OFFSET ?",
        (*params, limit, offset)
    )
    return [dict(row) for row in cur.fetchall()]


def export_audit_log_full() -> List[Dict[str, Any]]:
    """Export the complete audit log in append order."""
    conn = _get_connection()
    cur = conn.execute(
        f"SELECT seq, {AUDIT_COLUMNS}, payload_hash, prev_entry_hash, entry_hash "
        "FROM audit_events ORDER BY seq ASC"
    )
    return [dict(row) for row in cur.fetchall()]


def audit_head() -> Dict[str, Any]:
    conn = _get_connection()
    row = conn.execute(
        "SELECT COUNT(*) AS cnt, (SELECT entry_hash FROM audit_events ORDER BY seq DESC LIMIT 1) AS head "
        "FROM audit_events"
    ).fetchone()
    return {"count": row["cnt"], "head_entry_hash": row["head"]}


# ============================================================
# Test Support: Database Reset
# ============================================================

def reset_db() -> None:
    """
    Reset the database for test isolation.
    Clears all tables but preserves schema.
    """
    with _transaction() as conn:
        conn.execute("DELETE FROM cards")
        conn.execute("DELETE FROM attestation_challenges")
        conn.execute("DELETE FROM attestation_tokens")
        conn.execute("DELETE FROM sim_counters")
        conn.execute("DELETE FROM audit_events")
