"""Runtime configuration for lockhub, read from ``LOCKHUB_*`` environment variables.

The database location (``LOCKHUB_DATA_DIR``) is resolved by :mod:`lockhub.db`;
JWT settings live in :mod:`lockhub.auth`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    items = tuple(p.strip() for p in raw.split(",") if p.strip())
    return items or default


@dataclass
class Settings:
    """Snapshot of the environment taken at construction time."""

    host: str = field(default_factory=lambda: os.environ.get("LOCKHUB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: int(os.environ.get("LOCKHUB_PORT", "5200")))

    # Discovery
    probe_timeout: float = field(
        default_factory=lambda: float(os.environ.get("LOCKHUB_PROBE_TIMEOUT", "2.5"))
    )
    batch_size: int = field(default_factory=lambda: int(os.environ.get("LOCKHUB_BATCH_SIZE", "5")))
    monitor_interval: float = field(
        default_factory=lambda: float(os.environ.get("LOCKHUB_MONITOR_INTERVAL", "5.0"))
    )
    network_ranges: tuple[str, ...] = field(
        default_factory=lambda: _env_list("LOCKHUB_NETWORK_RANGES", ("192.168.137", "192.168.1"))
    )


def get_settings() -> Settings:
    return Settings()
