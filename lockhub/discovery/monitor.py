"""LAN connection monitor for a known lock.

Re-probes the device's last known address on a fixed interval and reports
``connected`` / ``disconnected``.  A device without an address is in
remote-only (WAN) mode, which is a state of its own rather than a failure.
One failed probe flips the status; there is no debouncing.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Callable

from lockhub.discovery.prober import DiscoveryProber, validate_address

logger = logging.getLogger(__name__)

MONITOR_INTERVAL = 5.0
MONITOR_TIMEOUT = 2.0


class ConnectionStatus(str, enum.Enum):
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REMOTE_ONLY = "remote_only"


class ConnectionMonitor:
    """Periodic single-probe reachability check for one device."""

    def __init__(
        self,
        prober: DiscoveryProber,
        device_uid: str | None,
        address: str | None = None,
        interval: float = MONITOR_INTERVAL,
        timeout: float = MONITOR_TIMEOUT,
        on_change: Callable[[ConnectionStatus], None] | None = None,
    ) -> None:
        self.prober = prober
        self.device_uid = device_uid
        self.address = _normalize(address)
        self.interval = interval
        self.timeout = timeout
        self.on_change = on_change
        self.status = ConnectionStatus.CHECKING
        self.last_seen: float | None = None
        self._task: asyncio.Task | None = None

    @property
    def mode(self) -> str:
        """``none`` without a device, ``lan`` with an address, ``wan`` otherwise."""
        if not self.device_uid:
            return "none"
        return "lan" if self.address else "wan"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_address(self, address: str | None) -> None:
        """Point the monitor at a new address (``None`` → remote-only)."""
        self.address = _normalize(address)
        logger.debug("monitor %s: address now %s", self.device_uid, self.address or "<remote>")

    async def check(self) -> ConnectionStatus:
        """Run one probe and record the resulting status."""
        if not self.device_uid:
            return self._set(ConnectionStatus.DISCONNECTED)
        if self.address is None:
            return self._set(ConnectionStatus.REMOTE_ONLY)
        if not self.address:
            return self._set(ConnectionStatus.DISCONNECTED)

        found = await self.prober.probe(self.address, timeout=self.timeout)
        if (
            found is not None
            and found.uid == self.device_uid
            and found.type == self.prober.device_type
        ):
            self.last_seen = time.time()
            return self._set(ConnectionStatus.CONNECTED)
        return self._set(ConnectionStatus.DISCONNECTED)

    async def start(self) -> None:
        """Check once, then keep checking every :attr:`interval` seconds."""
        if self.running:
            return
        await self.check()
        self._task = asyncio.create_task(self._loop())
        logger.info("monitor started for %s (%s)", self.device_uid, self.mode)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("monitor stopped for %s", self.device_uid)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception:
                logger.exception("connection check failed for %s", self.device_uid)

    def _set(self, status: ConnectionStatus) -> ConnectionStatus:
        previous, self.status = self.status, status
        if status != previous:
            logger.info("device %s: %s → %s", self.device_uid, previous.value, status.value)
            if self.on_change is not None:
                try:
                    self.on_change(status)
                except Exception:
                    logger.exception("Error in connection-status callback")
        return status


def _normalize(address: str | None) -> str | None:
    # None is remote-only; a blank string is a LAN address nobody filled in.
    if address is None:
        return None
    if not address.strip():
        return ""
    return validate_address(address)
