"""Tests for DeviceRegistry — saved devices, registration and switches."""

from __future__ import annotations

import pytest

from lockhub.arbitration import ArbitrationStore
from lockhub.discovery import DiscoveredDevice
from lockhub.errors import DeviceNotFound, InvalidInput, PermissionDenied
from lockhub.registry import DeviceRegistry


@pytest.fixture
def registry(db_conn):
    return DeviceRegistry(db_conn)


def _found(uid="lock-1", address="10.0.0.6", type="rfid_relay", name="Front door"):
    return DiscoveredDevice(address=address, uid=uid, type=type, name=name)


def _meta(conn, uid, name=None, type=None, owner=None):
    conn.execute(
        "INSERT INTO device_meta (device_uid, name, type, owner) VALUES (?, ?, ?, ?)",
        (uid, name, type, owner),
    )
    conn.commit()


class TestRegistration:
    def test_register_new_device(self, registry, db_conn):
        saved = registry.register_discovered("u1", _found())
        assert saved.uid == "lock-1"
        assert saved.ip == "10.0.0.6"
        assert saved.is_lock
        assert saved.discovered_at
        owner = db_conn.execute(
            "SELECT owner FROM device_meta WHERE device_uid = 'lock-1'"
        ).fetchone()["owner"]
        assert owner == "u1"
        assert [d.uid for d in registry.list_devices("u1")] == ["lock-1"]

    def test_unnamed_device_gets_default_name(self, registry):
        saved = registry.register_discovered("u1", _found(name=""))
        assert saved.name == "Perangkat"

    def test_device_owned_by_other_user(self, registry):
        registry.register_discovered("u1", _found())
        with pytest.raises(PermissionDenied) as exc_info:
            registry.register_discovered("u2", _found())
        assert exc_info.value.holder == "u1"
        assert registry.list_devices("u2") == []

    def test_reregister_returns_existing(self, registry):
        first = registry.register_discovered("u1", _found())
        again = registry.register_discovered("u1", _found(address="10.0.0.7"))
        assert again.discovered_at == first.discovered_at
        assert len(registry.list_devices("u1")) == 1

    def test_released_device_can_be_registered(self, registry, db_conn):
        store = ArbitrationStore(db_conn)
        store.claim("lock-1", "u1")
        store.release("lock-1", "u1")
        saved = registry.register_discovered("u2", _found())
        assert saved.uid == "lock-1"


class TestAddFromMeta:
    def test_unknown_uid(self, registry):
        with pytest.raises(DeviceNotFound):
            registry.add_from_meta("u1", "nope")

    def test_copies_meta(self, registry, db_conn):
        _meta(db_conn, "plug-1", name="Porch light", type="switch")
        saved = registry.add_from_meta("u1", "plug-1")
        assert saved.name == "Porch light"
        assert saved.type == "switch"
        assert saved.mode == "solid"
        assert saved.pulse_duration is None

    def test_pulse_mode(self, registry, db_conn):
        _meta(db_conn, "gate-1", type="switch")
        saved = registry.add_from_meta("u1", "gate-1", mode="pulse", pulse_duration=500)
        assert saved.name == "gate-1"
        assert saved.pulse_duration == 500

    @pytest.mark.parametrize("mode,duration", [("blink", 300), ("pulse", 0)])
    def test_invalid_switch_settings(self, registry, db_conn, mode, duration):
        _meta(db_conn, "gate-1", type="switch")
        with pytest.raises(InvalidInput):
            registry.add_from_meta("u1", "gate-1", mode=mode, pulse_duration=duration)


class TestQueries:
    def test_lock_devices_and_addresses(self, registry, db_conn):
        registry.register_discovered("u1", _found("lock-1", "10.0.0.6"))
        _meta(db_conn, "plug-1", type="switch")
        registry.add_from_meta("u1", "plug-1")
        assert [d.uid for d in registry.list_devices("u1")] == ["plug-1", "lock-1"]
        assert [d.uid for d in registry.list_lock_devices("u1")] == ["lock-1"]
        assert registry.known_addresses("u1") == ["10.0.0.6"]

    def test_update_address(self, registry):
        registry.register_discovered("u1", _found())
        registry.update_address("u1", "lock-1", "10.0.0.9")
        assert registry.get_device("u1", "lock-1").ip == "10.0.0.9"
        registry.update_address("u1", "lock-1", None)
        assert registry.get_device("u1", "lock-1").ip is None

    def test_update_address_validates(self, registry):
        with pytest.raises(InvalidInput):
            registry.update_address("u1", "lock-1", "10.0.0")

    def test_remove_devices(self, registry, db_conn):
        registry.register_discovered("u1", _found("lock-1", "10.0.0.6"))
        registry.register_discovered("u1", _found("lock-2", "10.0.0.7"))
        assert registry.remove_devices("u1", ["lock-1", "lock-2", "missing"]) == 2
        assert registry.list_devices("u1") == []


class TestOverview:
    def test_merges_lock_state_and_credentials(self, registry, db_conn):
        store = ArbitrationStore(db_conn)
        registry.register_discovered("u1", _found("lock-1", "10.0.0.6"))
        _meta(db_conn, "plug-1", type="switch")
        registry.add_from_meta("u1", "plug-1")
        record = store.command("lock-1", "u1", is_locked=False, last_command="manual_unlock")
        store.add_credential("lock-1", "u1", "AA")
        store.add_credential("lock-1", "u1", "BB")
        store.add_credential("door-9abcdef", "u1", "CC")

        rows = {d.uid: d for d in registry.overview("u1")}
        assert list(rows) == ["plug-1", "lock-1", "door-9abcdef"]

        lock = rows["lock-1"]
        assert lock.state is True
        assert lock.last_access == record.timestamp
        assert lock.credential_count == 2
        assert lock.ip == "10.0.0.6"

        plug = rows["plug-1"]
        assert not plug.is_lock
        assert plug.last_access is None

        extra = rows["door-9abcdef"]
        assert extra.saved is False
        assert extra.name == "RFID door-9"
        assert extra.type == "rfid_relay"
        assert extra.credential_count == 1
        assert extra.state is False

    def test_skips_credential_locks_of_other_accounts(self, registry, db_conn):
        _meta(db_conn, "gate-2", owner="u2")
        ArbitrationStore(db_conn).add_credential("gate-2", "u2", "DD")
        assert registry.overview("u1") == []
        assert [d.uid for d in registry.overview("u2")] == ["gate-2"]

    def test_saved_lock_is_not_repeated(self, registry, db_conn):
        registry.register_discovered("u1", _found())
        ArbitrationStore(db_conn).add_credential("lock-1", "u1", "AA")
        rows = registry.overview("u1")
        assert [(d.uid, d.saved) for d in rows] == [("lock-1", True)]
        assert rows[0].state is False


class TestSwitches:
    async def test_solid_toggle_logs(self, registry, db_conn):
        _meta(db_conn, "plug-1", name="Porch", type="switch")
        registry.add_from_meta("u1", "plug-1")
        on = await registry.toggle_switch("u1", "plug-1")
        off = await registry.toggle_switch("u1", "plug-1")
        assert on.state is True
        assert off.state is False
        logs = registry.switch_logs("u1", "plug-1")
        assert logs[0].endswith("Porch turned on")
        assert logs[1].endswith("Porch turned off")

    async def test_pulse_turns_itself_off(self, registry, db_conn):
        _meta(db_conn, "gate-1", name="Gate", type="switch")
        registry.add_from_meta("u1", "gate-1", mode="pulse", pulse_duration=10)
        device = await registry.toggle_switch("u1", "gate-1")
        assert device.state is True
        assert registry.get_device("u1", "gate-1").state is True
        await registry.drain()
        assert registry.get_device("u1", "gate-1").state is False
        assert len(registry.switch_logs("u1", "gate-1")) == 1

    async def test_unknown_switch(self, registry):
        with pytest.raises(DeviceNotFound):
            await registry.toggle_switch("u1", "nope")

    async def test_remove_drops_logs(self, registry, db_conn):
        _meta(db_conn, "plug-1", type="switch")
        registry.add_from_meta("u1", "plug-1")
        await registry.toggle_switch("u1", "plug-1")
        registry.remove_devices("u1", ["plug-1"])
        assert registry.switch_logs("u1", "plug-1") == []
