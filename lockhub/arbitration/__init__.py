"""lockhub.arbitration — single-controller arbitration over the shared device record."""

from __future__ import annotations

from lockhub.arbitration.dispatcher import CommandDispatcher, normalize_credential
from lockhub.arbitration.store import AccessLogEntry, ArbitrationStore, DeviceStateRecord

__all__ = [
    "AccessLogEntry",
    "ArbitrationStore",
    "CommandDispatcher",
    "DeviceStateRecord",
    "normalize_credential",
]
