"""Per-device control session.

One user, one device: locate it on the LAN (or fall back to remote-only
control), watch its reachability, and issue commands through the dispatcher.
The session's position is a single explicit state driven by events:

    IDLE ──scan──▶ SCANNING ──found──▶ CONNECTED ──claimed──▶ CLAIMED
      │               │                    │                    │
      │               └─not found──▶ IDLE  └──denied──▶ DENIED ◀┘
      └──remote──▶ REMOTE_ONLY

``CONNECTED`` and ``REMOTE_ONLY`` are both "located"; which one a release or a
freed token returns to depends on whether the session has a LAN address.
A located session may rescan at any time (the device's IP can change); a scan
that finds nothing puts it back where it was, token and all.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Iterable

from lockhub.arbitration.dispatcher import CommandDispatcher
from lockhub.arbitration.store import DeviceStateRecord
from lockhub.discovery.monitor import ConnectionMonitor, ConnectionStatus
from lockhub.discovery.prober import (
    NETWORK_RANGES,
    CancelToken,
    DiscoveredDevice,
    DiscoveryProber,
    ScanProgress,
    build_candidates,
    validate_address,
)
from lockhub.errors import (
    DeviceNotFound,
    InvalidTransition,
    PermissionDenied,
    ScanCancelled,
)
from lockhub.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTED = "connected"
    REMOTE_ONLY = "remote_only"
    CLAIMED = "claimed"
    DENIED = "denied"


class SessionEvent(str, enum.Enum):
    SCAN_STARTED = "scan_started"
    DEVICE_FOUND = "device_found"
    NOT_FOUND = "not_found"
    SCAN_CANCELLED = "scan_cancelled"
    REMOTE_SELECTED = "remote_selected"
    CLAIMED = "claimed"
    RELEASED = "released"
    DENIED = "denied"
    TOKEN_FREE = "token_free"
    RESET = "reset"


# Placeholder targets: CONNECTED with a LAN address, REMOTE_ONLY without;
# after a failed scan, that again if the scan started located, else IDLE.
_LOCATED = "located"
_RESUMED = "resumed"

_S, _E = SessionState, SessionEvent
TRANSITIONS: dict[SessionState, dict[SessionEvent, SessionState | str]] = {
    _S.IDLE: {
        _E.SCAN_STARTED: _S.SCANNING,
        _E.DEVICE_FOUND: _S.CONNECTED,
        _E.REMOTE_SELECTED: _S.REMOTE_ONLY,
        _E.RESET: _S.IDLE,
    },
    _S.SCANNING: {
        _E.DEVICE_FOUND: _S.CONNECTED,
        _E.NOT_FOUND: _RESUMED,
        _E.SCAN_CANCELLED: _RESUMED,
        _E.RESET: _S.IDLE,
    },
    _S.CONNECTED: {
        _E.SCAN_STARTED: _S.SCANNING,
        _E.DEVICE_FOUND: _S.CONNECTED,
        _E.REMOTE_SELECTED: _S.REMOTE_ONLY,
        _E.CLAIMED: _S.CLAIMED,
        _E.DENIED: _S.DENIED,
        _E.RESET: _S.IDLE,
    },
    _S.REMOTE_ONLY: {
        _E.SCAN_STARTED: _S.SCANNING,
        _E.DEVICE_FOUND: _S.CONNECTED,
        _E.CLAIMED: _S.CLAIMED,
        _E.DENIED: _S.DENIED,
        _E.RESET: _S.IDLE,
    },
    _S.CLAIMED: {
        _E.SCAN_STARTED: _S.SCANNING,
        _E.DEVICE_FOUND: _S.CLAIMED,
        _E.RELEASED: _LOCATED,
        _E.DENIED: _S.DENIED,
        _E.RESET: _S.IDLE,
    },
    _S.DENIED: {
        _E.TOKEN_FREE: _LOCATED,
        _E.CLAIMED: _S.CLAIMED,
        _E.SCAN_STARTED: _S.SCANNING,
        _E.DEVICE_FOUND: _S.DENIED,
        _E.RESET: _S.IDLE,
    },
}

_LOCATED_STATES = frozenset({_S.CONNECTED, _S.REMOTE_ONLY, _S.CLAIMED, _S.DENIED})


class DeviceSession:
    """Drives one user's control of one device through :class:`SessionState`."""

    def __init__(
        self,
        device_uid: str,
        session_id: str,
        prober: DiscoveryProber,
        dispatcher: CommandDispatcher,
        registry: DeviceRegistry | None = None,
        monitor_interval: float = 5.0,
        ranges: Iterable[str] = NETWORK_RANGES,
        on_state: Callable[[SessionState], None] | None = None,
    ) -> None:
        self.device_uid = device_uid
        self.session_id = session_id
        self.prober = prober
        self.dispatcher = dispatcher
        self.registry = registry
        self.monitor_interval = monitor_interval
        self.ranges = tuple(ranges)
        self.on_state = on_state
        self.state = SessionState.IDLE
        self.address: str | None = None
        self.monitor: ConnectionMonitor | None = None
        self._cancel: CancelToken | None = None
        self._scan_from_located = False
        self._unsubscribe = dispatcher.store.subscribe(device_uid, self._on_record)

    # ── State machine ──────────────────────────────────────────────

    def handle(self, event: SessionEvent) -> SessionState:
        """Apply *event* to the current state.

        Raises:
            InvalidTransition: the current state does not accept *event*.
        """
        target = self._target(event)
        if target == _RESUMED:
            target = _LOCATED if self._scan_from_located else SessionState.IDLE
        if target == _LOCATED:
            target = SessionState.CONNECTED if self.address else SessionState.REMOTE_ONLY
        previous, self.state = self.state, target
        if previous != target:
            logger.debug("session %s/%s: %s → %s", self.session_id, self.device_uid,
                         previous.value, target.value)
            if self.on_state is not None:
                try:
                    self.on_state(target)
                except Exception:
                    logger.exception("Error in session-state callback")
        return self.state

    @property
    def located(self) -> bool:
        return self.state in _LOCATED_STATES

    @property
    def link_status(self) -> ConnectionStatus:
        if self.monitor is not None:
            return self.monitor.status
        return ConnectionStatus.REMOTE_ONLY if self.address is None else ConnectionStatus.CHECKING

    # ── Locating ───────────────────────────────────────────────────

    async def locate(
        self,
        candidates: Iterable[str] | None = None,
        on_progress: Callable[[ScanProgress], None] | None = None,
    ) -> DiscoveredDevice:
        """Scan for this session's device.

        Saved addresses go first.  On success the address is remembered in
        the user's device list.

        Raises:
            DeviceNotFound: nothing answered; :meth:`use_remote` is the fallback.
            ScanCancelled:  :meth:`cancel` was called mid-scan.
        """
        if candidates is None:
            known = self.registry.known_addresses(self.session_id) if self.registry else []
            candidates = build_candidates(known, ranges=self.ranges)

        was_located = self.located
        self.handle(SessionEvent.SCAN_STARTED)
        self._scan_from_located = was_located
        self._cancel = CancelToken()
        try:
            found = await self.prober.find(
                candidates,
                target_uid=self.device_uid,
                cancel=self._cancel,
                on_progress=on_progress,
            )
        except DeviceNotFound:
            self.handle(SessionEvent.NOT_FOUND)
            self.refresh()
            raise
        except ScanCancelled:
            self.handle(SessionEvent.SCAN_CANCELLED)
            self.refresh()
            raise
        finally:
            self._cancel = None

        self._set_address(found.address)
        if self.registry is not None:
            self.registry.update_address(self.session_id, self.device_uid, found.address)
        self.handle(SessionEvent.DEVICE_FOUND)
        self.refresh()
        return found

    def cancel(self) -> None:
        """Abort a running :meth:`locate`; in-flight probes are left to finish."""
        if self._cancel is not None:
            self._cancel.cancel()

    async def connect(self, address: str) -> DiscoveredDevice:
        """Check a manually entered *address* for this device.

        The session keeps its previous address unless the device answers.
        """
        address = validate_address(address)
        self._target(SessionEvent.DEVICE_FOUND)
        found = await self.prober.probe(address)
        if found is None or found.uid != self.device_uid or found.type != self.prober.device_type:
            raise DeviceNotFound(f"{self.device_uid} does not answer at {address}")
        self._set_address(address)
        self.handle(SessionEvent.DEVICE_FOUND)
        self.refresh()
        return found

    def use_remote(self) -> SessionState:
        """Drop the LAN address and control the device through the store only."""
        self._set_address(None)
        if self.state in (SessionState.IDLE, SessionState.CONNECTED):
            self.handle(SessionEvent.REMOTE_SELECTED)
        self.refresh()
        return self.state

    # ── Arbitration ────────────────────────────────────────────────

    def refresh(self, record: DeviceStateRecord | None = None) -> SessionState:
        """Re-derive CLAIMED / DENIED from the device record."""
        if not self.located:
            return self.state
        record = record or self.dispatcher.store.read(self.device_uid)
        holder = record.triggered_by
        if holder == self.session_id:
            if self.state != SessionState.CLAIMED:
                self.handle(SessionEvent.CLAIMED)
        elif holder:
            if self.state != SessionState.DENIED:
                self.handle(SessionEvent.DENIED)
        elif self.state == SessionState.CLAIMED:
            self.handle(SessionEvent.RELEASED)
        elif self.state == SessionState.DENIED:
            self.handle(SessionEvent.TOKEN_FREE)
        return self.state

    def toggle(self) -> DeviceStateRecord:
        self._require_located()
        self.refresh()
        try:
            record = self.dispatcher.toggle_lock(self.device_uid, self.session_id)
        except PermissionDenied:
            self.refresh()
            raise
        self.refresh(record)
        return record

    def release(self) -> DeviceStateRecord:
        self._require_located()
        record = self.dispatcher.release(self.device_uid, self.session_id)
        self.refresh(record)
        return record

    # ── Monitoring ─────────────────────────────────────────────────

    async def start_monitoring(self) -> ConnectionMonitor:
        if self.monitor is None:
            self.monitor = ConnectionMonitor(
                self.prober,
                self.device_uid,
                address=self.address,
                interval=self.monitor_interval,
            )
        else:
            self.monitor.set_address(self.address)
        await self.monitor.start()
        return self.monitor

    async def close(self) -> None:
        if self.monitor is not None:
            await self.monitor.stop()
        self._unsubscribe()

    # ── Internal ───────────────────────────────────────────────────

    def _target(self, event: SessionEvent) -> SessionState | str:
        target = TRANSITIONS[self.state].get(event)
        if target is None:
            raise InvalidTransition(f"{event.value} not allowed in state {self.state.value}")
        return target

    def _set_address(self, address: str | None) -> None:
        self.address = address
        if self.monitor is not None:
            self.monitor.set_address(address)

    def _require_located(self) -> None:
        if not self.located:
            raise InvalidTransition(f"device not located (state {self.state.value})")

    def _on_record(self, record: DeviceStateRecord) -> None:
        self.refresh(record)
