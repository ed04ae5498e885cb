"""Command dispatcher — permission-checked writes to the arbitration store.

Every state-changing call follows the same rule: the caller must hold the
arbitration token, or the token must be empty (the first command claims
it).  Writes are fire-and-forget; the lock firmware picks them up on its own
schedule.  :meth:`CommandDispatcher.command_acknowledged` lets a caller poll
for the optional acknowledgment record without blocking on it.

LAN-only operations (management mode, reading freshly scanned tags) go
straight to the device through :class:`~lockhub.device.client.DeviceClient`.
"""

from __future__ import annotations

import asyncio
import logging

from lockhub.arbitration.store import ArbitrationStore, DeviceStateRecord
from lockhub.device.client import DeviceClient
from lockhub.discovery.monitor import ConnectionStatus
from lockhub.discovery.prober import validate_address
from lockhub.errors import InvalidInput, NetworkUnreachable, PermissionDenied

logger = logging.getLogger(__name__)

LOCK_COMMAND = "manual_lock"
UNLOCK_COMMAND = "manual_unlock"


def normalize_credential(credential_id: str) -> str:
    cleaned = (credential_id or "").strip().upper()
    if not cleaned:
        raise InvalidInput("credential id must not be empty")
    return cleaned


def _require(value: str, what: str) -> str:
    if not value or not value.strip():
        raise InvalidInput(f"{what} must not be empty")
    return value.strip()


class CommandDispatcher:
    """Validates arbitration, then writes to the shared record."""

    def __init__(self, store: ArbitrationStore, device: DeviceClient | None = None) -> None:
        self.store = store
        self.device = device or DeviceClient()
        self._background: set[asyncio.Task] = set()

    # ── Arbitration queries ────────────────────────────────────────

    def can_control(self, device_uid: str, session_id: str) -> bool:
        holder = self.store.read(device_uid).triggered_by
        return not holder or holder == session_id

    def is_controller(self, device_uid: str, session_id: str) -> bool:
        return self.store.read(device_uid).triggered_by == session_id

    def command_acknowledged(self, device_uid: str, record: DeviceStateRecord) -> bool:
        return self.store.is_acknowledged(device_uid, record.timestamp)

    # ── Lock commands ──────────────────────────────────────────────

    def toggle_lock(self, device_uid: str, session_id: str) -> DeviceStateRecord:
        """Invert the lock state on behalf of *session_id*.

        Raises:
            PermissionDenied: another session holds the token; the record is
                left untouched.
        """
        device_uid = _require(device_uid, "device uid")
        session_id = _require(session_id, "session id")

        current = self.store.read(device_uid)
        self._check(device_uid, session_id, current.triggered_by)

        if not current.claimed and not self.store.claim(device_uid, session_id):
            # Lost the race for an unclaimed device.
            current = self.store.read(device_uid)
            self._check(device_uid, session_id, current.triggered_by)

        is_locked = not current.is_locked
        record = self.store.command(
            device_uid,
            session_id,
            is_locked=is_locked,
            last_command=LOCK_COMMAND if is_locked else UNLOCK_COMMAND,
        )
        logger.info(
            "%s → %s by %s", device_uid, "locked" if is_locked else "unlocked", session_id
        )
        return record

    def release(self, device_uid: str, session_id: str) -> DeviceStateRecord:
        """Give up the token.  Strict: fails unless the caller holds it."""
        device_uid = _require(device_uid, "device uid")
        session_id = _require(session_id, "session id")
        try:
            return self.store.release(device_uid, session_id)
        except PermissionDenied:
            logger.info("release of %s denied for %s", device_uid, session_id)
            raise

    # ── Credentials & backup code ─────────────────────────────────

    def add_credential(self, device_uid: str, session_id: str, credential_id: str) -> str:
        """Authorize *credential_id* (upper-cased) and return the stored form."""
        device_uid = _require(device_uid, "device uid")
        cleaned = normalize_credential(credential_id)
        self._guard(device_uid, session_id)
        self.store.add_credential(device_uid, session_id, cleaned)
        logger.info("credential %s added to %s by %s", cleaned, device_uid, session_id)
        return cleaned

    def remove_credential(self, device_uid: str, session_id: str, credential_id: str) -> bool:
        device_uid = _require(device_uid, "device uid")
        cleaned = normalize_credential(credential_id)
        self._guard(device_uid, session_id)
        removed = self.store.remove_credential(device_uid, session_id, cleaned)
        logger.info("credential %s removed from %s by %s", cleaned, device_uid, session_id)
        return removed

    def set_backup_code(self, device_uid: str, session_id: str, code: str) -> None:
        device_uid = _require(device_uid, "device uid")
        code = _require(code, "backup code")
        self._guard(device_uid, session_id)
        self.store.set_backup_code(device_uid, session_id, code)
        logger.info("backup code updated on %s by %s", device_uid, session_id)

    # ── LAN management ────────────────────────────────────────────

    async def start_management_mode(
        self,
        device_uid: str,
        session_id: str,
        address: str | None,
        status: ConnectionStatus,
    ) -> None:
        """Put the reader into enrolment mode (needs a live LAN path)."""
        if not address or status != ConnectionStatus.CONNECTED:
            raise NetworkUnreachable(
                "management mode needs a direct LAN connection to the device"
            )
        address = validate_address(address)
        self._guard(device_uid, session_id)
        await self.device.set_management_mode(address, True)
        logger.info("management mode on for %s at %s", device_uid, address)

    async def stop_management_mode(self, address: str | None) -> None:
        if not address:
            return
        await self.device.set_management_mode(validate_address(address), False)

    async def poll_new_credentials(self, address: str) -> list[str]:
        return await self.device.new_rfids(validate_address(address))

    async def save_scanned_credential(
        self,
        device_uid: str,
        session_id: str,
        rfid: str,
        address: str | None = None,
    ) -> str:
        """Authorize a freshly scanned tag, then tell the reader to drop it
        from its pending list.  The device call runs in the background and
        its failures are only logged."""
        address = validate_address(address) if address else None
        cleaned = self.add_credential(device_uid, session_id, rfid)
        if address:
            task = asyncio.create_task(self._clear_on_device(address, rfid))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return cleaned

    async def drain(self) -> None:
        """Wait for background device calls (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Internal ───────────────────────────────────────────────────

    def _guard(self, device_uid: str, session_id: str) -> None:
        session_id = _require(session_id, "session id")
        self._check(device_uid, session_id, self.store.read(device_uid).triggered_by)

    @staticmethod
    def _check(device_uid: str, session_id: str, holder: str | None) -> None:
        if holder and holder != session_id:
            logger.info("%s denied on %s (held by %s)", session_id, device_uid, holder)
            raise PermissionDenied(f"device {device_uid} is controlled by {holder}", holder=holder)

    async def _clear_on_device(self, address: str, rfid: str) -> None:
        try:
            await self.device.clear_rfid(address, rfid)
        except Exception as exc:
            logger.warning("failed to clear %s on %s: %s", rfid, address, exc)
