"""Controller arbitration store — the shared per-device record.

Each device has one state row: lock state, last command tag, a millisecond
timestamp and ``triggered_by``, the session currently allowed to issue
commands (the arbitration token).  The firmware watches this row and acts on
it; the phone side only ever writes it.

Token checks happen inside the write itself — a conditional upsert or a
``BEGIN IMMEDIATE`` transaction — so two sessions racing for an unclaimed
device cannot both win.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Callable, Iterator

from lockhub.db import get_db
from lockhub.errors import PermissionDenied

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 10


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class DeviceStateRecord:
    is_locked: bool = True
    last_command: str = "init"
    timestamp: int = 0
    triggered_by: str | None = None

    @property
    def claimed(self) -> bool:
        return bool(self.triggered_by)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AccessLogEntry:
    credential_id: str
    granted: bool
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)


StateCallback = Callable[[DeviceStateRecord], None]


class ArbitrationStore:
    """SQLite-backed device records: state, credentials, backup code, logs.

    Args:
        conn:  Open connection; defaults to :func:`lockhub.db.get_db`.
        clock: Millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._conn = conn if conn is not None else get_db()
        self._conn.row_factory = sqlite3.Row
        self._clock = clock
        self._subscribers: dict[str, list[StateCallback]] = {}

    # ------------------------------------------------------------------ #
    # Device state                                                         #
    # ------------------------------------------------------------------ #

    def read(self, device_uid: str) -> DeviceStateRecord:
        """Return the current record; an unseen device reads as locked/``init``."""
        row = self._conn.execute(
            "SELECT is_locked, last_command, timestamp, triggered_by "
            "FROM device_states WHERE device_uid = ?",
            (device_uid,),
        ).fetchone()
        if row is None:
            return DeviceStateRecord(timestamp=self._clock())
        return DeviceStateRecord(
            is_locked=bool(row["is_locked"]),
            last_command=row["last_command"],
            timestamp=row["timestamp"],
            triggered_by=row["triggered_by"] or None,
        )

    def subscribe(self, device_uid: str, callback: StateCallback) -> Callable[[], None]:
        """Call *callback* now and after every write to *device_uid*.

        Returns a function that removes the subscription.
        """
        self._subscribers.setdefault(device_uid, []).append(callback)
        callback(self.read(device_uid))

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(device_uid, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def claim(self, device_uid: str, session_id: str) -> bool:
        """Take the token if nobody holds it.  Returns ``True`` on success."""
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO device_states
                    (device_uid, is_locked, last_command, timestamp, triggered_by)
                VALUES (?, 1, 'init', ?, ?)
                ON CONFLICT(device_uid) DO UPDATE SET
                    triggered_by = excluded.triggered_by
                WHERE device_states.triggered_by IS NULL
                   OR device_states.triggered_by = ''
                """,
                (device_uid, self._clock(), session_id),
            )
            claimed = cur.rowcount > 0
            if claimed:
                conn.execute(
                    """
                    INSERT INTO device_meta (device_uid, owner) VALUES (?, ?)
                    ON CONFLICT(device_uid) DO UPDATE SET owner = excluded.owner
                    """,
                    (device_uid, session_id),
                )
        if claimed:
            logger.info("device %s claimed by %s", device_uid, session_id)
            self._notify(device_uid)
        return claimed

    def command(
        self,
        device_uid: str,
        session_id: str,
        is_locked: bool,
        last_command: str,
    ) -> DeviceStateRecord:
        """Overwrite the record on behalf of *session_id*.

        Allowed only while the token is empty or already held by the caller.

        Raises:
            PermissionDenied: another session holds the token.
        """
        timestamp = self._clock()
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO device_states
                    (device_uid, is_locked, last_command, timestamp, triggered_by)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(device_uid) DO UPDATE SET
                    is_locked    = excluded.is_locked,
                    last_command = excluded.last_command,
                    timestamp    = excluded.timestamp,
                    triggered_by = excluded.triggered_by
                WHERE device_states.triggered_by IS NULL
                   OR device_states.triggered_by = ''
                   OR device_states.triggered_by = excluded.triggered_by
                """,
                (device_uid, int(is_locked), last_command, timestamp, session_id),
            )
            if cur.rowcount == 0:
                holder = self._holder(conn, device_uid)
                raise PermissionDenied(
                    f"device {device_uid} is controlled by {holder}", holder=holder
                )
        self._notify(device_uid)
        return DeviceStateRecord(
            is_locked=is_locked,
            last_command=last_command,
            timestamp=timestamp,
            triggered_by=session_id,
        )

    def release(self, device_uid: str, session_id: str) -> DeviceStateRecord:
        """Clear the token.  Only the current holder may release.

        Raises:
            PermissionDenied: the caller does not hold the token (including
                when nobody does).
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE device_states
                   SET triggered_by = NULL, last_command = 'device_released', timestamp = ?
                 WHERE device_uid = ? AND triggered_by = ?
                """,
                (self._clock(), device_uid, session_id),
            )
            if cur.rowcount == 0:
                holder = self._holder(conn, device_uid)
                raise PermissionDenied(
                    f"{session_id} does not control device {device_uid}", holder=holder
                )
            conn.execute(
                "UPDATE device_meta SET owner = NULL WHERE device_uid = ? AND owner = ?",
                (device_uid, session_id),
            )
        logger.info("device %s released by %s", device_uid, session_id)
        self._notify(device_uid)
        return self.read(device_uid)

    @contextmanager
    def guarded(self, device_uid: str, session_id: str) -> Iterator[sqlite3.Connection]:
        """Write transaction that only opens if *session_id* may control the device."""
        with self._transaction() as conn:
            holder = self._holder(conn, device_uid)
            if holder and holder != session_id:
                raise PermissionDenied(
                    f"device {device_uid} is controlled by {holder}", holder=holder
                )
            yield conn

    def get_owner(self, device_uid: str) -> str | None:
        row = self._conn.execute(
            "SELECT owner FROM device_meta WHERE device_uid = ?", (device_uid,)
        ).fetchone()
        return (row["owner"] or None) if row else None

    # ------------------------------------------------------------------ #
    # Acknowledgments                                                      #
    # ------------------------------------------------------------------ #

    def acknowledge(self, device_uid: str, command_timestamp: int) -> None:
        """Record that the device applied the command stamped *command_timestamp*."""
        self._conn.execute(
            """
            INSERT OR IGNORE INTO device_acks (device_uid, command_timestamp, acked_at)
            VALUES (?, ?, ?)
            """,
            (device_uid, command_timestamp, self._clock()),
        )
        self._conn.commit()

    def is_acknowledged(self, device_uid: str, command_timestamp: int) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM device_acks WHERE device_uid = ? AND command_timestamp = ?",
            (device_uid, command_timestamp),
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------ #
    # Credentials & backup code                                            #
    # ------------------------------------------------------------------ #

    def list_credentials(self, device_uid: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT credential_id FROM authorized_credentials WHERE device_uid = ? "
            "ORDER BY credential_id",
            (device_uid,),
        ).fetchall()
        return [r["credential_id"] for r in rows]

    def add_credential(self, device_uid: str, session_id: str, credential_id: str) -> None:
        with self.guarded(device_uid, session_id) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO authorized_credentials (device_uid, credential_id) "
                "VALUES (?, ?)",
                (device_uid, credential_id),
            )

    def remove_credential(self, device_uid: str, session_id: str, credential_id: str) -> bool:
        """Returns ``True`` if the credential existed."""
        with self.guarded(device_uid, session_id) as conn:
            cur = conn.execute(
                "DELETE FROM authorized_credentials WHERE device_uid = ? AND credential_id = ?",
                (device_uid, credential_id),
            )
            return cur.rowcount > 0

    def get_backup_code(self, device_uid: str) -> str | None:
        row = self._conn.execute(
            "SELECT code FROM backup_codes WHERE device_uid = ?", (device_uid,)
        ).fetchone()
        return row["code"] if row else None

    def set_backup_code(self, device_uid: str, session_id: str, code: str) -> None:
        with self.guarded(device_uid, session_id) as conn:
            conn.execute(
                """
                INSERT INTO backup_codes (device_uid, code, set_by, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(device_uid) DO UPDATE SET
                    code = excluded.code,
                    set_by = excluded.set_by,
                    updated_at = excluded.updated_at
                """,
                (device_uid, code, session_id, self._clock()),
            )

    # ------------------------------------------------------------------ #
    # Access log                                                           #
    # ------------------------------------------------------------------ #

    def append_access_log(
        self,
        device_uid: str,
        credential_id: str,
        granted: bool,
        timestamp: int | None = None,
    ) -> None:
        """Append a reader event (written by the firmware side)."""
        if timestamp is None:
            timestamp = self._clock()
        self._conn.execute(
            "INSERT INTO access_logs (device_uid, credential_id, granted, timestamp) "
            "VALUES (?, ?, ?, ?)",
            (device_uid, credential_id, int(granted), timestamp),
        )
        self._conn.commit()

    def recent_access_logs(
        self, device_uid: str, limit: int = DEFAULT_LOG_LIMIT
    ) -> list[AccessLogEntry]:
        """Newest first, at most *limit* entries."""
        rows = self._conn.execute(
            "SELECT credential_id, granted, timestamp FROM access_logs "
            "WHERE device_uid = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (device_uid, limit),
        ).fetchall()
        return [
            AccessLogEntry(
                credential_id=r["credential_id"],
                granted=bool(r["granted"]),
                timestamp=r["timestamp"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------ #
    # Internal helpers                                                     #
    # ------------------------------------------------------------------ #

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    @staticmethod
    def _holder(conn: sqlite3.Connection, device_uid: str) -> str | None:
        row = conn.execute(
            "SELECT triggered_by FROM device_states WHERE device_uid = ?", (device_uid,)
        ).fetchone()
        return (row["triggered_by"] or None) if row else None

    def _notify(self, device_uid: str) -> None:
        callbacks = list(self._subscribers.get(device_uid, []))
        if not callbacks:
            return
        record = self.read(device_uid)
        for cb in callbacks:
            try:
                cb(record)
            except Exception:
                logger.exception("Error in state subscriber for %s", device_uid)
