"""Per-user device list.

Users register devices they found on the LAN (or ones already known by uid),
keep the last IP each device answered from, and toggle plain relay switches.
Registration goes through the device's owner marker: a device already
claimed by another user cannot be added.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from lockhub.db import get_db
from lockhub.discovery.prober import DiscoveredDevice, validate_address
from lockhub.errors import DeviceNotFound, InvalidInput, PermissionDenied

logger = logging.getLogger(__name__)

LOCK_TYPES = frozenset({"lock", "rfid_relay"})
SWITCH_MODES = ("solid", "pulse")
DEFAULT_PULSE_MS = 300


@dataclass
class SavedDevice:
    uid: str
    name: str
    type: str = "unknown"
    ip: str | None = None
    discovered_at: str | None = None
    state: bool = False
    mode: str = "solid"
    pulse_duration: int | None = None

    @property
    def is_lock(self) -> bool:
        return self.type in LOCK_TYPES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DeviceOverview:
    """One dashboard row: a saved device or a lock known only by its credentials.

    For locks with a state record, ``state`` is ``True`` when unlocked and
    ``last_access`` is the record's timestamp.
    """

    uid: str
    name: str
    type: str
    ip: str | None = None
    state: bool = False
    is_lock: bool = False
    credential_count: int = 0
    last_access: int | None = None
    saved: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeviceRegistry:
    """CRUD over ``saved_devices`` / ``device_meta`` / ``switch_logs``.

    Args:
        conn: An open :class:`sqlite3.Connection`; defaults to :func:`lockhub.db.get_db`.
    """

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        self._conn = conn if conn is not None else get_db()
        self._conn.row_factory = sqlite3.Row
        self._pulses: set[asyncio.Task] = set()

    # ── Registration ───────────────────────────────────────────────

    def register_discovered(self, user_id: str, device: DiscoveredDevice) -> SavedDevice:
        """Claim *device* for *user_id* and add it to their list.

        Registering a device the user already owns returns the existing entry.

        Raises:
            PermissionDenied: another user owns the device.
        """
        cur = self._conn.execute(
            """
            INSERT INTO device_meta (device_uid, name, type, owner) VALUES (?, ?, ?, ?)
            ON CONFLICT(device_uid) DO UPDATE SET
                owner = excluded.owner,
                name  = excluded.name,
                type  = excluded.type
            WHERE device_meta.owner IS NULL OR device_meta.owner = ''
            """,
            (device.uid, device.name or None, device.type or None, user_id),
        )
        if cur.rowcount == 0:
            self._conn.commit()
            owner = self._owner(device.uid)
            if owner != user_id:
                raise PermissionDenied(f"device {device.uid} belongs to another account", holder=owner)
            existing = self.get_device(user_id, device.uid)
            if existing is not None:
                logger.info("device %s already registered to %s", device.uid, user_id)
                return existing

        saved = SavedDevice(
            uid=device.uid,
            name=device.name or "Perangkat",
            type=device.type or "unknown",
            ip=device.address,
            discovered_at=datetime.now(timezone.utc).isoformat(),
        )
        self._save(user_id, saved)
        logger.info("device %s registered to %s at %s", device.uid, user_id, device.address)
        return saved

    def add_from_meta(
        self,
        user_id: str,
        device_uid: str,
        mode: str = "solid",
        pulse_duration: int = DEFAULT_PULSE_MS,
    ) -> SavedDevice:
        """Add a device known only by uid, copying its name and type from meta.

        Raises:
            DeviceNotFound: no meta is recorded for *device_uid*.
            InvalidInput:   unknown *mode* or non-positive pulse duration.
        """
        if mode not in SWITCH_MODES:
            raise InvalidInput(f"mode must be one of {SWITCH_MODES}")
        if mode == "pulse" and pulse_duration <= 0:
            raise InvalidInput("pulse duration must be positive")
        row = self._conn.execute(
            "SELECT name, type FROM device_meta WHERE device_uid = ?", (device_uid,)
        ).fetchone()
        if row is None:
            raise DeviceNotFound(f"no device with id {device_uid}")
        saved = SavedDevice(
            uid=device_uid,
            name=row["name"] or device_uid,
            type=row["type"] or "other",
            mode=mode,
            pulse_duration=pulse_duration if mode == "pulse" else None,
        )
        self._save(user_id, saved)
        return saved

    # ── Queries ────────────────────────────────────────────────────

    def list_devices(self, user_id: str) -> list[SavedDevice]:
        rows = self._conn.execute(
            "SELECT * FROM saved_devices WHERE user_id = ? ORDER BY rowid DESC", (user_id,)
        ).fetchall()
        return [self._from_row(r) for r in rows]

    def list_lock_devices(self, user_id: str) -> list[SavedDevice]:
        return [d for d in self.list_devices(user_id) if d.is_lock]

    def get_device(self, user_id: str, device_uid: str) -> SavedDevice | None:
        row = self._conn.execute(
            "SELECT * FROM saved_devices WHERE user_id = ? AND device_uid = ?",
            (user_id, device_uid),
        ).fetchone()
        return self._from_row(row) if row else None

    def overview(self, user_id: str) -> list[DeviceOverview]:
        """Saved devices merged with live lock state and credential counts.

        Locks that have authorized credentials but are not in the user's list
        (and not owned by another account) are appended after the saved ones.
        """
        saved_rows = self._conn.execute(
            """
            SELECT s.device_uid, s.name, s.type, s.ip, s.state,
                   d.is_locked, d.timestamp AS last_access,
                   (SELECT COUNT(*) FROM authorized_credentials c
                     WHERE c.device_uid = s.device_uid) AS credential_count
            FROM saved_devices s
            LEFT JOIN device_states d ON d.device_uid = s.device_uid
            WHERE s.user_id = ?
            ORDER BY s.rowid DESC
            """,
            (user_id,),
        ).fetchall()
        credential_rows = self._conn.execute(
            """
            SELECT c.device_uid, m.name, COUNT(*) AS credential_count,
                   d.is_locked, d.timestamp AS last_access
            FROM authorized_credentials c
            LEFT JOIN device_meta m ON m.device_uid = c.device_uid
            LEFT JOIN device_states d ON d.device_uid = c.device_uid
            WHERE COALESCE(m.owner, '') IN ('', ?)
              AND c.device_uid NOT IN
                  (SELECT device_uid FROM saved_devices WHERE user_id = ?)
            GROUP BY c.device_uid
            ORDER BY c.device_uid
            """,
            (user_id, user_id),
        ).fetchall()

        rows: list[DeviceOverview] = []
        for r in saved_rows:
            entry = DeviceOverview(
                uid=r["device_uid"],
                name=r["name"],
                type=r["type"],
                ip=r["ip"],
                state=bool(r["state"]),
                is_lock=r["type"] in LOCK_TYPES,
                credential_count=r["credential_count"],
            )
            if entry.is_lock and r["is_locked"] is not None:
                entry.state = not r["is_locked"]
                entry.last_access = r["last_access"]
            rows.append(entry)
        for r in credential_rows:
            locked = r["is_locked"]
            rows.append(DeviceOverview(
                uid=r["device_uid"],
                name=r["name"] or f"RFID {r['device_uid'][:6]}",
                type="rfid_relay",
                state=locked is not None and not locked,
                is_lock=True,
                credential_count=r["credential_count"],
                last_access=r["last_access"] if locked is not None else None,
                saved=False,
            ))
        return rows

    def known_addresses(self, user_id: str) -> list[str]:
        return [d.ip for d in self.list_devices(user_id) if d.ip]

    def switch_logs(self, user_id: str, device_uid: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT message FROM switch_logs WHERE user_id = ? AND device_uid = ? ORDER BY id",
            (user_id, device_uid),
        ).fetchall()
        return [r["message"] for r in rows]

    # ── Mutations ──────────────────────────────────────────────────

    def update_address(self, user_id: str, device_uid: str, ip: str | None) -> None:
        """Remember where *device_uid* last answered (``None`` clears it)."""
        ip = validate_address(ip) if ip else None
        self._conn.execute(
            "UPDATE saved_devices SET ip = ? WHERE user_id = ? AND device_uid = ?",
            (ip, user_id, device_uid),
        )
        self._conn.commit()

    def remove_devices(self, user_id: str, device_uids: list[str]) -> int:
        cur = self._conn.executemany(
            "DELETE FROM saved_devices WHERE user_id = ? AND device_uid = ?",
            [(user_id, uid) for uid in device_uids],
        )
        self._conn.commit()
        return cur.rowcount

    async def toggle_switch(self, user_id: str, device_uid: str) -> SavedDevice:
        """Flip a relay switch.

        Solid mode inverts ``state``.  Pulse mode turns it on and schedules it
        back off after ``pulse_duration`` milliseconds.
        """
        device = self.get_device(user_id, device_uid)
        if device is None:
            raise DeviceNotFound(f"device {device_uid} is not in this account")

        stamp = datetime.now().strftime("%A, %d %B %Y %H:%M")
        if device.mode == "pulse":
            duration = device.pulse_duration or DEFAULT_PULSE_MS
            self._set_state(user_id, device_uid, True, f"{stamp} • {device.name} pulsed ({duration}ms)")
            device.state = True
            task = asyncio.create_task(self._end_pulse(user_id, device_uid, duration / 1000))
            self._pulses.add(task)
            task.add_done_callback(self._pulses.discard)
        else:
            device.state = not device.state
            action = "on" if device.state else "off"
            self._set_state(user_id, device_uid, device.state, f"{stamp} • {device.name} turned {action}")
        return device

    async def drain(self) -> None:
        """Wait for scheduled pulse ends."""
        if self._pulses:
            await asyncio.gather(*self._pulses, return_exceptions=True)

    # ── Internal ───────────────────────────────────────────────────

    def _owner(self, device_uid: str) -> str | None:
        row = self._conn.execute(
            "SELECT owner FROM device_meta WHERE device_uid = ?", (device_uid,)
        ).fetchone()
        return (row["owner"] or None) if row else None

    def _save(self, user_id: str, d: SavedDevice) -> None:
        self._conn.execute(
            """
            INSERT INTO saved_devices
                (user_id, device_uid, name, type, ip, discovered_at, state, mode, pulse_duration)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, device_uid) DO UPDATE SET
                name = excluded.name,
                type = excluded.type,
                ip = COALESCE(excluded.ip, saved_devices.ip),
                mode = excluded.mode,
                pulse_duration = excluded.pulse_duration
            """,
            (
                user_id, d.uid, d.name, d.type, d.ip, d.discovered_at,
                int(d.state), d.mode, d.pulse_duration,
            ),
        )
        self._conn.commit()

    def _set_state(self, user_id: str, device_uid: str, state: bool, message: str) -> None:
        self._conn.execute(
            "UPDATE saved_devices SET state = ? WHERE user_id = ? AND device_uid = ?",
            (int(state), user_id, device_uid),
        )
        if message:
            self._conn.execute(
                "INSERT INTO switch_logs (user_id, device_uid, message) VALUES (?, ?, ?)",
                (user_id, device_uid, message),
            )
        self._conn.commit()

    async def _end_pulse(self, user_id: str, device_uid: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._set_state(user_id, device_uid, False, "")

    @staticmethod
    def _from_row(row: sqlite3.Row) -> SavedDevice:
        return SavedDevice(
            uid=row["device_uid"],
            name=row["name"],
            type=row["type"],
            ip=row["ip"],
            discovered_at=row["discovered_at"],
            state=bool(row["state"]),
            mode=row["mode"],
            pulse_duration=row["pulse_duration"],
        )
