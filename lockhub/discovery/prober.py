"""Discovery prober for lockhub.

Finds a lock on the local network by asking candidate addresses for their
discovery document (``GET /discover``).  Candidates are probed in small
batches so a /24 sweep never opens more than ``batch_size`` sockets at once;
the first batch that yields a match ends the scan.

Known addresses go first, then a fixed list of "usual" last octets, then the
rest of each range.  Errors, timeouts and foreign devices are all treated as
silence.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from lockhub.device.client import DeviceClient
from lockhub.errors import DeviceNotFound, InvalidInput, ScanCancelled

logger = logging.getLogger(__name__)

DEVICE_TYPE = "rfid_relay"
PROBE_TIMEOUT = 2.5
BATCH_SIZE = 5
BATCH_DELAY = 0.05

NETWORK_RANGES: tuple[str, ...] = ("192.168.137", "192.168.1")
PRIORITY_OCTETS: tuple[int, ...] = (185, 17, 1, 100, 101, 102, 103, 104, 105, 142, 163, 254)


@dataclass
class DiscoveredDevice:
    address: str
    uid: str
    type: str
    name: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanProgress:
    completed: int
    total: int
    batches: int

    @property
    def percent(self) -> int:
        if not self.total:
            return 100
        return round(self.completed * 100 / self.total)


class CancelToken:
    """Single-flag cancellation shared between a scan and whoever started it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def validate_address(address: str) -> str:
    """Return *address* stripped, or raise :class:`InvalidInput` unless it is a dotted IPv4."""
    cleaned = (address or "").strip()
    try:
        ipaddress.IPv4Address(cleaned)
    except ValueError:
        raise InvalidInput(f"not a valid IPv4 address: {address!r}") from None
    return cleaned


def build_candidates(
    known: Iterable[str] = (),
    ranges: Iterable[str] = NETWORK_RANGES,
    priority: Iterable[int] = PRIORITY_OCTETS,
) -> list[str]:
    """Return the ordered, de-duplicated address list for a scan.

    Order: *known* addresses, then for each range the *priority* octets
    followed by the remaining octets 1..254.
    """
    priority = list(priority)
    octets = priority + [o for o in range(1, 255) if o not in priority]

    seen: set[str] = set()
    out: list[str] = []
    for addr in list(known) + [f"{base}.{o}" for base in ranges for o in octets]:
        if addr and addr not in seen:
            seen.add(addr)
            out.append(addr)
    return out


class DiscoveryProber:
    """Batched HTTP probe of candidate addresses.

    Args:
        device:       Client used for the ``/discover`` calls.
        timeout:      Per-request timeout in seconds.
        batch_size:   Simultaneous probes per batch.
        batch_delay:  Pause between batches, in seconds.
        device_type:  Capability type a match must announce.
    """

    def __init__(
        self,
        device: DeviceClient | None = None,
        timeout: float = PROBE_TIMEOUT,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        device_type: str = DEVICE_TYPE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.device = device or DeviceClient(timeout=timeout)
        self.timeout = timeout
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.device_type = device_type

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    async def probe(self, address: str, timeout: float | None = None) -> DiscoveredDevice | None:
        """Ask one *address* for its discovery document.

        Returns ``None`` for anything short of a well-formed answer.
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            data = await asyncio.wait_for(
                self.device.discover(address, timeout=timeout), timeout=timeout
            )
        except Exception as exc:
            logger.debug("probe %s: no answer (%s)", address, exc.__class__.__name__)
            return None
        uid = data.get("uid")
        if not uid:
            return None
        return DiscoveredDevice(
            address=address,
            uid=str(uid),
            type=str(data.get("type") or ""),
            name=str(data.get("name") or ""),
            raw=data,
        )

    async def find(
        self,
        candidates: Iterable[str],
        target_uid: str | None = None,
        cancel: CancelToken | None = None,
        on_progress: Callable[[ScanProgress], None] | None = None,
    ) -> DiscoveredDevice:
        """Return the first candidate announcing *target_uid* (or, with no
        target, the first responder of :attr:`device_type`).

        Raises:
            DeviceNotFound: every candidate was probed without a match.
            ScanCancelled:  *cancel* fired; pending results are discarded.
        """
        addresses = list(candidates)
        total = len(addresses)
        completed = 0
        batches = 0

        for start in range(0, total, self.batch_size):
            if cancel is not None and cancel.cancelled:
                raise ScanCancelled("scan cancelled")

            batch = addresses[start:start + self.batch_size]
            batches += 1
            results = await asyncio.gather(
                *(self.probe(addr) for addr in batch), return_exceptions=True
            )
            completed += len(batch)

            if on_progress is not None:
                on_progress(ScanProgress(completed=completed, total=total, batches=batches))
            if cancel is not None and cancel.cancelled:
                raise ScanCancelled("scan cancelled")

            for r in results:
                if isinstance(r, DiscoveredDevice) and self._matches(r, target_uid):
                    logger.info(
                        "found %s (%s) at %s after %d batch(es)", r.uid, r.type, r.address, batches
                    )
                    return r

            if start + self.batch_size < total and self.batch_delay:
                await asyncio.sleep(self.batch_delay)

        logger.info("scan complete — %s not found in %d address(es)", target_uid or "device", total)
        raise DeviceNotFound(
            f"{target_uid or self.device_type} not found after probing {total} address(es)"
        )

    async def scan(self, candidates: Iterable[str]) -> list[DiscoveredDevice]:
        """Probe every candidate and return all responders, whatever their type."""
        addresses = list(candidates)
        found: list[DiscoveredDevice] = []
        seen: set[str] = set()
        for start in range(0, len(addresses), self.batch_size):
            batch = addresses[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.probe(addr) for addr in batch), return_exceptions=True
            )
            for r in results:
                if isinstance(r, DiscoveredDevice) and r.address not in seen:
                    seen.add(r.address)
                    found.append(r)
        logger.info("scan complete — %d device(s) discovered", len(found))
        return found

    # ------------------------------------------------------------------ #
    # Internal helpers                                                     #
    # ------------------------------------------------------------------ #

    def _matches(self, found: DiscoveredDevice, target_uid: str | None) -> bool:
        if found.type != self.device_type:
            return False
        return target_uid is None or found.uid == target_uid
