"""HTTP client for the endpoints an ESP32 lock exposes on the LAN.

  GET  /discover         → {"uid": ..., "type": ..., "name": ...}
  POST /management-mode  ← {"enabled": bool}
  GET  /new-rfids        → {"rfids": [...]}
  POST /clear-rfid       ← {"rfid": "..."}

Plain HTTP, no auth.  Every call targets an explicit address so a single
client can serve a whole subnet scan.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from lockhub.errors import DeviceRequestError, NetworkUnreachable

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/discover"


class DeviceClient:
    """Thin async wrapper around the lock firmware's HTTP endpoints.

    A single :class:`httpx.AsyncClient` is reused across calls.  Pass one in
    to share a pool (or a mock transport in tests); otherwise the client owns
    its own and :meth:`aclose` releases it.
    """

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = 3.0) -> None:
        self.timeout = timeout
        self._owns_client = client is None
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DeviceClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def discover(self, address: str, timeout: float | None = None) -> dict[str, Any]:
        """Return the device's discovery document."""
        result = await self._request(
            "GET",
            address,
            DISCOVERY_PATH,
            timeout=timeout,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
        )
        return result if isinstance(result, dict) else {}

    async def set_management_mode(self, address: str, enabled: bool) -> None:
        """Switch the reader into (or out of) enrolment mode."""
        await self._request("POST", address, "/management-mode", json={"enabled": enabled})

    async def new_rfids(self, address: str) -> list[str]:
        """Return UIDs scanned at the reader since management mode started."""
        result = await self._request("GET", address, "/new-rfids")
        if not isinstance(result, dict):
            return []
        return [str(r) for r in result.get("rfids") or []]

    async def clear_rfid(self, address: str, rfid: str) -> None:
        """Drop *rfid* from the reader's pending list."""
        await self._request("POST", address, "/clear-rfid", json={"rfid": rfid})

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        method: str,
        address: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"http://{address}{path}"
        try:
            response = await self._client.request(
                method, url, timeout=timeout if timeout is not None else self.timeout, **kwargs
            )
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise NetworkUnreachable(f"Cannot reach device at {url}: {exc}") from exc
        if response.status_code >= 300:
            raise DeviceRequestError(
                f"Device at {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.debug("Non-JSON body from %s", url)
            return None
