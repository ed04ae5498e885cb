"""lockhub.device — HTTP client for the lock firmware's LAN endpoints."""

from __future__ import annotations

from lockhub.device.client import DISCOVERY_PATH, DeviceClient

__all__ = ["DeviceClient", "DISCOVERY_PATH"]
