#!/usr/bin/env python3

"""
db.py

SQLite access layer:
- ensure schema
- backup records (find, upsert, status transitions)
- oauth tokens
- mailbox alerts
- sync operation logs
- mailbox leases
- purge history

Uses thread-local connections to avoid cross-thread SQLite errors.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from mailvault.logger import get_logger
from mailvault.utils import to_iso, utcnow

_thread_local = threading.local()


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Return a sqlite3.Connection specific to the current thread and db_path.
    Ensures parent directories exist and caches one connection per thread.
    """
    conns = getattr(_thread_local, "conns", None)
    if conns is None:
        conns = {}
        setattr(_thread_local, "conns", conns)

    key = str(db_path.resolve())
    if key in conns:
        conn = conns[key]
        try:
            # quick liveness check (will raise if closed/corrupt)
            conn.execute("SELECT 1;")
            return conn
        except (sqlite3.ProgrammingError, sqlite3.OperationalError, sqlite3.DatabaseError):
            del conns[key]

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    conns[key] = conn
    return conn


def _now() -> str:
    return to_iso(utcnow())


def ensure_schema(db_path: Path) -> None:
    """
    Ensure the SQLite schema exists and is up-to-date.

    Safe to call multiple times. Missing columns added by later versions are
    appended with ALTER TABLE.
    """
    _logger = get_logger(__name__)
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.executescript(
        """
        CREATE TABLE IF NOT EXISTS backups
        (
            id               INTEGER PRIMARY KEY AUTOINCREMENT,
            source_path      TEXT UNIQUE NOT NULL,
            mailbox          TEXT NOT NULL,
            cloud_path       TEXT,
            status           TEXT NOT NULL DEFAULT 'pending',
            size             INTEGER DEFAULT 0,
            checksum         TEXT,
            retry_count      INTEGER DEFAULT 0,
            error_message    TEXT,
            last_verified_at TEXT,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS oauth_tokens
        (
            principal     TEXT NOT NULL,
            provider      TEXT NOT NULL,
            access_token  TEXT NOT NULL,
            refresh_token TEXT,
            expires_at    TEXT NOT NULL,
            scopes        TEXT,
            token_type    TEXT DEFAULT 'Bearer',
            created_at    TEXT NOT NULL,
            updated_at    TEXT NOT NULL,
            PRIMARY KEY (principal, provider)
        );

        CREATE TABLE IF NOT EXISTS mailbox_alerts
        (
            id                 INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox            TEXT NOT NULL,
            current_size_bytes INTEGER NOT NULL,
            threshold_bytes    INTEGER NOT NULL,
            alert_type         TEXT NOT NULL,
            status             TEXT NOT NULL DEFAULT 'active',
            acknowledged_by    TEXT,
            acknowledged_at    TEXT,
            resolved_at        TEXT,
            alert_date         TEXT,
            notes              TEXT,
            created_at         TEXT NOT NULL,
            updated_at         TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_logs
        (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            operation_type TEXT NOT NULL,
            status         TEXT NOT NULL,
            details        TEXT,
            error_message  TEXT,
            started_at     TEXT NOT NULL,
            completed_at   TEXT
        );

        CREATE TABLE IF NOT EXISTS mailbox_locks
        (
            mailbox     TEXT PRIMARY KEY,
            owner       TEXT NOT NULL,
            acquired_at REAL NOT NULL,
            expires_at  REAL NOT NULL
        );

        CREATE TABLE IF NOT EXISTS purge_history
        (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox      TEXT NOT NULL,
            purged_files INTEGER NOT NULL,
            purged_bytes INTEGER NOT NULL,
            purged_at    TEXT NOT NULL
        );
        """
    )

    cur.execute("PRAGMA table_info(backups);")
    cols = {r[1] for r in cur.fetchall()}
    type_map = {
        "checksum": "TEXT",
        "last_verified_at": "TEXT",
        "retry_count": "INTEGER DEFAULT 0",
    }
    for col, coltype in type_map.items():
        if col not in cols:
            cur.execute(f"ALTER TABLE backups ADD COLUMN {col} {coltype};")
            _logger.debug(f"Added column {col} ({coltype}) to database.")

    cur.execute("CREATE INDEX IF NOT EXISTS idx_backups_mailbox ON backups(mailbox);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_backups_status ON backups(status);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_alerts_mailbox ON mailbox_alerts(mailbox);")
    # At most one open alert per mailbox
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_open ON mailbox_alerts(mailbox) "
        "WHERE status IN ('active', 'acknowledged');"
    )
    conn.commit()


# ----------------------------------------------------------------------
# Backup records
# ----------------------------------------------------------------------
def find_backup(db_path: Path, source_path: str) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT * FROM backups WHERE source_path = ? LIMIT 1;", (source_path,))
    return cur.fetchone()


def mark_backup_processing(db_path: Path, source_path: str, mailbox: str, cloud_path: str, size: int) -> None:
    """
    Insert or update a backup record in `processing` state.
    Existing rows keep their cloud path and retry count.
    """
    now = _now()
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO backups (source_path, mailbox, cloud_path, status, size, created_at, updated_at)
        VALUES (?, ?, ?, 'processing', ?, ?, ?)
        ON CONFLICT(source_path) DO UPDATE SET
            mailbox=excluded.mailbox,
            cloud_path=COALESCE(backups.cloud_path, excluded.cloud_path),
            status='processing',
            size=excluded.size,
            updated_at=excluded.updated_at;
        """,
        (source_path, mailbox, cloud_path, size, now, now),
    )
    conn.commit()


def mark_backup_completed(
        db_path: Path,
        source_path: str,
        cloud_path: str,
        size: int,
        checksum: Optional[str],
) -> None:
    now = _now()
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE backups
        SET status           = 'completed',
            cloud_path       = ?,
            size             = ?,
            checksum         = ?,
            error_message    = NULL,
            last_verified_at = ?,
            updated_at       = ?
        WHERE source_path = ?;
        """,
        (cloud_path, size, checksum, now, now, source_path),
    )
    conn.commit()


def mark_backup_failed(db_path: Path, source_path: str, error_message: str) -> None:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE backups
        SET status        = 'failed',
            error_message = ?,
            retry_count   = retry_count + 1,
            updated_at    = ?
        WHERE source_path = ?;
        """,
        (error_message[:1000], _now(), source_path),
    )
    conn.commit()


def mark_backup_verified(db_path: Path, source_path: str) -> None:
    """Stamp last_verified_at without touching updated_at."""
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("UPDATE backups SET last_verified_at = ? WHERE source_path = ?;", (_now(), source_path))
    conn.commit()


def mark_backup_purged(db_path: Path, source_path: str) -> None:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        "UPDATE backups SET status = 'purged', updated_at = ? WHERE source_path = ? AND status = 'completed';",
        (_now(), source_path),
    )
    conn.commit()


def mark_backup_restored(db_path: Path, source_path: str) -> None:
    """A restored purged record is backed by a local file again."""
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        "UPDATE backups SET status = 'completed', updated_at = ? WHERE source_path = ? AND status = 'purged';",
        (_now(), source_path),
    )
    conn.commit()


def fetch_backups(db_path: Path, mailbox: Optional[str] = None, status: Optional[str] = None) -> List[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    clauses, params = [], []
    if mailbox:
        clauses.append("mailbox = ?")
        params.append(mailbox)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cur.execute(f"SELECT * FROM backups {where} ORDER BY source_path;", params)
    return cur.fetchall()


def backup_status_counts(db_path: Path, mailbox: Optional[str] = None) -> Dict[str, int]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    if mailbox:
        cur.execute("SELECT status, COUNT(*) AS n FROM backups WHERE mailbox = ? GROUP BY status;", (mailbox,))
    else:
        cur.execute("SELECT status, COUNT(*) AS n FROM backups GROUP BY status;")
    return {r["status"]: r["n"] for r in cur.fetchall()}


# ----------------------------------------------------------------------
# OAuth tokens
# ----------------------------------------------------------------------
def get_token(db_path: Path, principal: str, provider: str) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM oauth_tokens WHERE principal = ? AND provider = ? LIMIT 1;",
        (principal, provider),
    )
    return cur.fetchone()


def save_token(
        db_path: Path,
        principal: str,
        provider: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: str,
        scopes: str,
        token_type: str,
) -> None:
    """Upsert keyed by (principal, provider) so a refresh replaces the row in place."""
    now = _now()
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO oauth_tokens
        (principal, provider, access_token, refresh_token, expires_at, scopes, token_type, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(principal, provider) DO UPDATE SET
            access_token=excluded.access_token,
            refresh_token=excluded.refresh_token,
            expires_at=excluded.expires_at,
            scopes=excluded.scopes,
            token_type=excluded.token_type,
            updated_at=excluded.updated_at;
        """,
        (principal, provider, access_token, refresh_token, expires_at, scopes, token_type, now, now),
    )
    conn.commit()


def delete_token(db_path: Path, principal: str, provider: str) -> bool:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("DELETE FROM oauth_tokens WHERE principal = ? AND provider = ?;", (principal, provider))
    conn.commit()
    return cur.rowcount > 0


def fetch_tokens(db_path: Path, provider: str) -> List[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT * FROM oauth_tokens WHERE provider = ? ORDER BY principal;", (provider,))
    return cur.fetchall()


# ----------------------------------------------------------------------
# Mailbox alerts
# ----------------------------------------------------------------------
def find_open_alert(db_path: Path, mailbox: str) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        SELECT *
        FROM mailbox_alerts
        WHERE mailbox = ?
          AND status IN ('active', 'acknowledged')
        ORDER BY id DESC
        LIMIT 1;
        """,
        (mailbox,),
    )
    return cur.fetchone()


def get_alert(db_path: Path, alert_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT * FROM mailbox_alerts WHERE id = ?;", (alert_id,))
    return cur.fetchone()


def create_alert(db_path: Path, mailbox: str, size_bytes: int, threshold_bytes: int, alert_type: str) -> int:
    now = _now()
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO mailbox_alerts
        (mailbox, current_size_bytes, threshold_bytes, alert_type, status, alert_date, created_at, updated_at)
        VALUES (?, ?, ?, ?, 'active', ?, ?, ?);
        """,
        (mailbox, size_bytes, threshold_bytes, alert_type, now, now, now),
    )
    conn.commit()
    return cur.lastrowid


def update_alert_breach(db_path: Path, alert_id: int, size_bytes: int, threshold_bytes: int, alert_type: str) -> None:
    now = _now()
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE mailbox_alerts
        SET current_size_bytes = ?,
            threshold_bytes    = ?,
            alert_type         = ?,
            alert_date         = ?,
            updated_at         = ?
        WHERE id = ?;
        """,
        (size_bytes, threshold_bytes, alert_type, now, now, alert_id),
    )
    conn.commit()


def set_alert_status(
        db_path: Path,
        alert_id: int,
        status: str,
        acknowledged_by: Optional[str] = None,
        notes: Optional[str] = None,
        size_bytes: Optional[int] = None,
) -> None:
    """
    Move an alert to `status`. Acknowledging stamps acknowledged_by/at,
    resolving stamps resolved_at, reopening clears both. Notes and the
    current size are replaced only if given.
    """
    now = _now()
    fields: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == "acknowledged":
        fields["acknowledged_by"] = acknowledged_by
        fields["acknowledged_at"] = now
    elif status == "resolved":
        fields["resolved_at"] = now
    elif status == "active":
        fields["acknowledged_by"] = None
        fields["acknowledged_at"] = None
        fields["resolved_at"] = None
        fields["alert_date"] = now
    if notes is not None:
        fields["notes"] = notes
    if size_bytes is not None:
        fields["current_size_bytes"] = size_bytes

    assignments = ", ".join(f"{k} = ?" for k in fields)
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(f"UPDATE mailbox_alerts SET {assignments} WHERE id = ?;", (*fields.values(), alert_id))
    conn.commit()


def fetch_alerts(db_path: Path, mailbox: Optional[str] = None, status: Optional[str] = None) -> List[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    clauses, params = [], []
    if mailbox:
        clauses.append("mailbox = ?")
        params.append(mailbox)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cur.execute(f"SELECT * FROM mailbox_alerts {where} ORDER BY id;", params)
    return cur.fetchall()


# ----------------------------------------------------------------------
# Sync operation log
# ----------------------------------------------------------------------
def insert_sync_log(db_path: Path, operation_type: str, details: Dict[str, Any]) -> int:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO sync_logs (operation_type, status, details, started_at) VALUES (?, 'processing', ?, ?);",
        (operation_type, json.dumps(details, default=str), _now()),
    )
    conn.commit()
    return cur.lastrowid


def finish_sync_log(
        db_path: Path,
        log_id: int,
        status: str,
        details: Dict[str, Any],
        error_message: Optional[str] = None,
) -> bool:
    """
    Write the terminal state of a sync log. Only the first call wins;
    returns False if the entry was already finished.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE sync_logs
        SET status        = ?,
            details       = ?,
            error_message = ?,
            completed_at  = ?
        WHERE id = ?
          AND completed_at IS NULL;
        """,
        (status, json.dumps(details, default=str), error_message, _now(), log_id),
    )
    conn.commit()
    return cur.rowcount > 0


def get_sync_log(db_path: Path, log_id: int) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT * FROM sync_logs WHERE id = ?;", (log_id,))
    return cur.fetchone()


# ----------------------------------------------------------------------
# Mailbox leases
# ----------------------------------------------------------------------
def acquire_lock(db_path: Path, mailbox: str, owner: str, now: float, ttl: int) -> bool:
    """
    Take or renew the lease on `mailbox`. An existing lease is stolen only
    once it has expired. Returns True if `owner` holds the lease afterwards.
    """
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO mailbox_locks (mailbox, owner, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(mailbox) DO UPDATE SET
            owner=excluded.owner,
            acquired_at=excluded.acquired_at,
            expires_at=excluded.expires_at
        WHERE mailbox_locks.expires_at <= excluded.acquired_at
           OR mailbox_locks.owner = excluded.owner;
        """,
        (mailbox, owner, now, now + ttl),
    )
    conn.commit()
    cur.execute("SELECT owner FROM mailbox_locks WHERE mailbox = ?;", (mailbox,))
    row = cur.fetchone()
    return row is not None and row["owner"] == owner


def release_lock(db_path: Path, mailbox: str, owner: str) -> bool:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("DELETE FROM mailbox_locks WHERE mailbox = ? AND owner = ?;", (mailbox, owner))
    conn.commit()
    return cur.rowcount > 0


def get_lock(db_path: Path, mailbox: str) -> Optional[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute("SELECT * FROM mailbox_locks WHERE mailbox = ?;", (mailbox,))
    return cur.fetchone()


# ----------------------------------------------------------------------
# Purge history
# ----------------------------------------------------------------------
def record_purge_history(db_path: Path, mailbox: str, purged_files: int, purged_bytes: int) -> None:
    conn = get_connection(db_path)
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO purge_history (mailbox, purged_files, purged_bytes, purged_at) VALUES (?, ?, ?, ?);",
        (mailbox, purged_files, purged_bytes, _now()),
    )
    conn.commit()


def fetch_purge_history(db_path: Path, mailbox: Optional[str] = None) -> List[sqlite3.Row]:
    conn = get_connection(db_path)
    cur = conn.cursor()
    if mailbox:
        cur.execute("SELECT * FROM purge_history WHERE mailbox = ? ORDER BY id;", (mailbox,))
    else:
        cur.execute("SELECT * FROM purge_history ORDER BY id;")
    return cur.fetchall()
