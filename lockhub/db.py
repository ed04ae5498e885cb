"""Database initialisation for lockhub.

The SQLite file stands in for the shared realtime database the phone app and
the lock firmware both talk to.  Tables mirror its record paths:

  deviceStates/<uid>      → device_states
  authorizedRFIDs/<uid>   → authorized_credentials
  accessLogs/<uid>        → access_logs
  deviceMeta/<uid>        → device_meta (name, type, owner)
  backup code             → backup_codes
  users/<user>/devices    → saved_devices (+ switch_logs)

The database path is taken from the ``LOCKHUB_DATA_DIR`` environment variable
(default: ``./data``).

Usage::

    from lockhub.db import get_db, init_db
    init_db()                  # idempotent; safe to call repeatedly
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        data_dir = Path(os.environ.get("LOCKHUB_DATA_DIR", "./data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        _DB_PATH = data_dir / "lockhub.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode, FK enabled)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        conn = sqlite3.connect(str(_db_path()), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create all tables (idempotent — safe to run multiple times)."""
    if path:
        set_db_path(path)
    conn = get_db()
    conn.executescript(_SCHEMA_SQL)
    conn.commit()


_SCHEMA_SQL = """
-- ───────── Arbitration ─────────

CREATE TABLE IF NOT EXISTS device_states (
    device_uid    TEXT PRIMARY KEY,
    is_locked     INTEGER NOT NULL DEFAULT 1,
    last_command  TEXT NOT NULL DEFAULT 'init',
    timestamp     INTEGER NOT NULL,
    triggered_by  TEXT
);

CREATE TABLE IF NOT EXISTS device_acks (
    device_uid         TEXT NOT NULL,
    command_timestamp  INTEGER NOT NULL,
    acked_at           INTEGER NOT NULL,
    PRIMARY KEY (device_uid, command_timestamp)
);

CREATE TABLE IF NOT EXISTS device_meta (
    device_uid  TEXT PRIMARY KEY,
    name        TEXT,
    type        TEXT,
    owner       TEXT
);

-- ───────── Credentials ─────────

CREATE TABLE IF NOT EXISTS authorized_credentials (
    device_uid     TEXT NOT NULL,
    credential_id  TEXT NOT NULL,
    PRIMARY KEY (device_uid, credential_id)
);

CREATE TABLE IF NOT EXISTS backup_codes (
    device_uid  TEXT PRIMARY KEY,
    code        TEXT NOT NULL,
    set_by      TEXT,
    updated_at  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS access_logs (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    device_uid     TEXT NOT NULL,
    credential_id  TEXT NOT NULL,
    granted        INTEGER NOT NULL,
    timestamp      INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_access_logs_device ON access_logs(device_uid, timestamp);

-- ───────── Saved devices ─────────

CREATE TABLE IF NOT EXISTS saved_devices (
    user_id         TEXT NOT NULL,
    device_uid      TEXT NOT NULL,
    name            TEXT NOT NULL,
    type            TEXT NOT NULL DEFAULT 'unknown',
    ip              TEXT,
    discovered_at   TEXT,
    state           INTEGER NOT NULL DEFAULT 0,
    mode            TEXT NOT NULL DEFAULT 'solid',
    pulse_duration  INTEGER,
    PRIMARY KEY (user_id, device_uid)
);

CREATE TABLE IF NOT EXISTS switch_logs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id     TEXT NOT NULL,
    device_uid  TEXT NOT NULL,
    message     TEXT NOT NULL,
    created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (user_id, device_uid)
        REFERENCES saved_devices(user_id, device_uid) ON DELETE CASCADE
);
"""
