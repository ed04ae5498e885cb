"""Error taxonomy shared by discovery, arbitration and the HTTP API."""

from __future__ import annotations


class LockhubError(Exception):
    """Base error for lockhub failures."""


class NetworkUnreachable(LockhubError):
    """Raised when a device does not answer (timeout, refused, no LAN path)."""


class DeviceRequestError(LockhubError):
    """Raised when a device answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermissionDenied(LockhubError):
    """Raised when another session holds the arbitration token."""

    def __init__(self, message: str, holder: str | None = None) -> None:
        super().__init__(message)
        self.holder = holder


class DeviceNotFound(LockhubError):
    """Raised when a scan exhausts its candidates or a device is unknown."""


class InvalidInput(LockhubError):
    """Raised for malformed addresses, empty credentials and similar input."""


class ScanCancelled(LockhubError):
    """Raised when a scan is aborted through its cancel token."""


class InvalidTransition(LockhubError):
    """Raised when a session receives an event its current state does not accept."""
