"""pytest configuration for lockhub tests."""

from __future__ import annotations

import json
import sqlite3

import httpx
import pytest

from lockhub.db import init_db, set_db_path
from lockhub.device import DeviceClient


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "test.db"
    set_db_path(path)
    init_db(path)
    return path


@pytest.fixture()
def db_conn(db_path):
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    yield conn
    conn.close()


class FakeLAN:
    """Lock firmwares answering on made-up addresses via ``httpx.MockTransport``.

    Addresses with no registered device raise :class:`httpx.ConnectError`,
    the same as a host that refuses the connection.
    """

    def __init__(self) -> None:
        self.devices: dict[str, dict] = {}
        self.pending: dict[str, list[str]] = {}
        self.management: dict[str, bool] = {}
        self.requests: list[tuple[str, str, str]] = []

    def add(self, address: str, uid: str, type: str = "rfid_relay", name: str = "") -> None:
        self.devices[address] = {"uid": uid, "type": type, "name": name}

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        path = request.url.path
        self.requests.append((request.method, host, path))
        doc = self.devices.get(host)
        if doc is None:
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/discover":
            return httpx.Response(200, json=doc)
        if path == "/management-mode":
            self.management[host] = json.loads(request.content)["enabled"]
            return httpx.Response(200, json={"ok": True})
        if path == "/new-rfids":
            return httpx.Response(200, json={"rfids": self.pending.get(host, [])})
        if path == "/clear-rfid":
            rfid = json.loads(request.content)["rfid"]
            self.pending[host] = [r for r in self.pending.get(host, []) if r != rfid]
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    def client(self) -> DeviceClient:
        return DeviceClient(httpx.AsyncClient(transport=httpx.MockTransport(self.handler)))

    def probed(self) -> list[str]:
        return [host for _, host, path in self.requests if path == "/discover"]


@pytest.fixture()
def lan():
    return FakeLAN()
