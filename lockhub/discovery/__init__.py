"""lockhub.discovery — finding locks on the LAN and watching their reachability.

Exports:
    DiscoveryProber    — batched ``/discover`` probe over candidate addresses
    DiscoveredDevice   — dataclass for a device that answered
    ConnectionMonitor  — periodic reachability check for a known address
    ConnectionStatus   — connected / disconnected / remote_only / checking
"""

from __future__ import annotations

from lockhub.discovery.monitor import ConnectionMonitor, ConnectionStatus
from lockhub.discovery.prober import (
    CancelToken,
    DiscoveredDevice,
    DiscoveryProber,
    ScanProgress,
    build_candidates,
    validate_address,
)

__all__ = [
    "CancelToken",
    "ConnectionMonitor",
    "ConnectionStatus",
    "DiscoveredDevice",
    "DiscoveryProber",
    "ScanProgress",
    "build_candidates",
    "validate_address",
]
