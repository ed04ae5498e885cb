"""Tests for controller arbitration: ArbitrationStore and CommandDispatcher."""

from __future__ import annotations

import itertools
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from lockhub.arbitration import (
    ArbitrationStore,
    CommandDispatcher,
    DeviceStateRecord,
    normalize_credential,
)
from lockhub.discovery import ConnectionStatus
from lockhub.errors import InvalidInput, NetworkUnreachable, PermissionDenied

UID = "lock-1"


@pytest.fixture
def store(db_conn):
    clock = itertools.count(1_000)
    return ArbitrationStore(db_conn, clock=lambda: next(clock))


@pytest.fixture
def dispatcher(store, lan):
    return CommandDispatcher(store, device=lan.client())


def _seed(conn, uid=UID, is_locked=True, triggered_by=""):
    conn.execute(
        "INSERT INTO device_states (device_uid, is_locked, last_command, timestamp, triggered_by) "
        "VALUES (?, ?, 'init', 1, ?)",
        (uid, int(is_locked), triggered_by),
    )
    conn.commit()


# ── Store ─────────────────────────────────────────────────────────

class TestArbitrationStore:
    def test_unseen_device_reads_default(self, store):
        record = store.read("never-seen")
        assert record.is_locked is True
        assert record.last_command == "init"
        assert record.triggered_by is None
        assert record.timestamp >= 1_000

    def test_claim_once(self, store):
        assert store.claim(UID, "a") is True
        assert store.claim(UID, "b") is False
        assert store.read(UID).triggered_by == "a"
        assert store.get_owner(UID) == "a"

    def test_empty_string_token_is_unclaimed(self, store, db_conn):
        _seed(db_conn, triggered_by="")
        assert store.claim(UID, "a") is True

    def test_command_by_other_session_leaves_record(self, store):
        store.claim(UID, "a")
        store.command(UID, "a", is_locked=False, last_command="manual_unlock")
        before = store.read(UID)
        with pytest.raises(PermissionDenied) as exc_info:
            store.command(UID, "b", is_locked=True, last_command="manual_lock")
        assert exc_info.value.holder == "a"
        assert store.read(UID) == before

    def test_release_clears_token_keeps_lock_state(self, store):
        store.claim(UID, "a")
        store.command(UID, "a", is_locked=False, last_command="manual_unlock")
        record = store.release(UID, "a")
        assert record.triggered_by is None
        assert record.is_locked is False
        assert record.last_command == "device_released"
        assert store.get_owner(UID) is None

    def test_release_is_strict(self, store):
        store.claim(UID, "a")
        store.release(UID, "a")
        with pytest.raises(PermissionDenied):
            store.release(UID, "a")

    def test_release_by_non_holder(self, store):
        store.claim(UID, "a")
        with pytest.raises(PermissionDenied) as exc_info:
            store.release(UID, "b")
        assert exc_info.value.holder == "a"
        assert store.read(UID).triggered_by == "a"

    def test_subscribe_delivers_current_then_updates(self, store):
        seen: list[DeviceStateRecord] = []
        unsubscribe = store.subscribe(UID, seen.append)
        store.claim(UID, "a")
        store.command(UID, "a", is_locked=False, last_command="manual_unlock")
        unsubscribe()
        store.release(UID, "a")
        assert [r.triggered_by for r in seen] == [None, "a", "a"]
        assert seen[-1].is_locked is False

    def test_acknowledgment(self, store):
        store.claim(UID, "a")
        record = store.command(UID, "a", is_locked=False, last_command="manual_unlock")
        assert not store.is_acknowledged(UID, record.timestamp)
        store.acknowledge(UID, record.timestamp)
        assert store.is_acknowledged(UID, record.timestamp)

    def test_credentials_sorted_and_unique(self, store):
        store.add_credential(UID, "a", "CC")
        store.add_credential(UID, "a", "AA")
        store.add_credential(UID, "a", "AA")
        assert store.list_credentials(UID) == ["AA", "CC"]
        assert store.remove_credential(UID, "a", "AA") is True
        assert store.remove_credential(UID, "a", "AA") is False

    def test_guarded_writes_refuse_other_session(self, store):
        store.claim(UID, "a")
        with pytest.raises(PermissionDenied):
            store.add_credential(UID, "b", "AA")
        with pytest.raises(PermissionDenied):
            store.set_backup_code(UID, "b", "1234")
        assert store.list_credentials(UID) == []
        assert store.get_backup_code(UID) is None

    def test_backup_code(self, store):
        store.set_backup_code(UID, "a", "1234")
        store.set_backup_code(UID, "a", "5678")
        assert store.get_backup_code(UID) == "5678"

    def test_access_logs_newest_first(self, store):
        for ts in range(1, 13):
            store.append_access_log(UID, f"C{ts}", granted=ts % 2 == 0, timestamp=ts)
        logs = store.recent_access_logs(UID)
        assert len(logs) == 10
        assert logs[0].timestamp == 12
        assert logs[0].granted is True
        assert logs[-1].timestamp == 3

    def test_access_log_keeps_zero_timestamp(self, store):
        store.append_access_log(UID, "AB12", granted=True, timestamp=0)
        assert store.recent_access_logs(UID)[0].timestamp == 0

    def test_concurrent_claims_single_winner(self, db_path):
        sessions = ["a", "b", "c", "d"]
        barrier = threading.Barrier(len(sessions))

        def attempt(session):
            conn = sqlite3.connect(str(db_path), timeout=10)
            try:
                store = ArbitrationStore(conn)
                barrier.wait()
                return store.claim(UID, session)
            finally:
                conn.close()

        with ThreadPoolExecutor(len(sessions)) as pool:
            results = list(pool.map(attempt, sessions))
        assert results.count(True) == 1


# ── Dispatcher ────────────────────────────────────────────────────

class TestToggle:
    def test_unclaimed_toggle_claims_and_unlocks(self, dispatcher, db_conn):
        _seed(db_conn, is_locked=True, triggered_by="")
        record = dispatcher.toggle_lock(UID, "u1")
        assert record.is_locked is False
        assert record.triggered_by == "u1"
        assert record.last_command == "manual_unlock"
        assert dispatcher.store.read(UID) == record

    def test_second_toggle_locks(self, dispatcher):
        dispatcher.toggle_lock(UID, "u1")
        record = dispatcher.toggle_lock(UID, "u1")
        assert record.is_locked is True
        assert record.last_command == "manual_lock"

    def test_other_session_denied(self, dispatcher):
        dispatcher.toggle_lock(UID, "a")
        before = dispatcher.store.read(UID)
        with pytest.raises(PermissionDenied):
            dispatcher.toggle_lock(UID, "b")
        assert dispatcher.store.read(UID) == before

    def test_release_then_other_session(self, dispatcher):
        dispatcher.toggle_lock(UID, "a")
        dispatcher.release(UID, "a")
        record = dispatcher.toggle_lock(UID, "b")
        assert record.triggered_by == "b"

    def test_double_release_denied(self, dispatcher):
        dispatcher.toggle_lock(UID, "a")
        dispatcher.release(UID, "a")
        with pytest.raises(PermissionDenied):
            dispatcher.release(UID, "a")

    def test_lost_claim_race_is_denied(self, dispatcher, monkeypatch):
        store = dispatcher.store
        real_claim = store.claim

        def racing_claim(uid, session):
            real_claim(uid, "intruder")
            return real_claim(uid, session)

        monkeypatch.setattr(store, "claim", racing_claim)
        with pytest.raises(PermissionDenied):
            dispatcher.toggle_lock(UID, "u1")
        assert store.read(UID).triggered_by == "intruder"
        assert store.read(UID).last_command == "init"

    def test_empty_session_rejected(self, dispatcher):
        with pytest.raises(InvalidInput):
            dispatcher.toggle_lock(UID, "  ")

    def test_control_queries(self, dispatcher):
        assert dispatcher.can_control(UID, "a")
        assert not dispatcher.is_controller(UID, "a")
        dispatcher.toggle_lock(UID, "a")
        assert dispatcher.is_controller(UID, "a")
        assert not dispatcher.can_control(UID, "b")

    def test_command_acknowledged(self, dispatcher):
        record = dispatcher.toggle_lock(UID, "a")
        assert not dispatcher.command_acknowledged(UID, record)
        dispatcher.store.acknowledge(UID, record.timestamp)
        assert dispatcher.command_acknowledged(UID, record)


class TestCredentials:
    def test_normalize(self):
        assert normalize_credential(" ab12 ") == "AB12"

    @pytest.mark.parametrize("bad", ["", "   ", None])
    def test_normalize_empty(self, bad):
        with pytest.raises(InvalidInput):
            normalize_credential(bad)

    def test_add_and_remove(self, dispatcher):
        assert dispatcher.add_credential(UID, "a", " ab12 ") == "AB12"
        assert dispatcher.store.list_credentials(UID) == ["AB12"]
        assert dispatcher.remove_credential(UID, "a", "ab12") is True
        assert dispatcher.store.list_credentials(UID) == []

    def test_add_denied_for_other_session(self, dispatcher):
        dispatcher.toggle_lock(UID, "a")
        with pytest.raises(PermissionDenied):
            dispatcher.add_credential(UID, "b", "AB12")

    def test_backup_code_requires_value(self, dispatcher):
        with pytest.raises(InvalidInput):
            dispatcher.set_backup_code(UID, "a", " ")
        dispatcher.set_backup_code(UID, "a", "2468")
        assert dispatcher.store.get_backup_code(UID) == "2468"


class TestManagementMode:
    async def test_requires_lan_connection(self, dispatcher):
        with pytest.raises(NetworkUnreachable):
            await dispatcher.start_management_mode(UID, "a", None, ConnectionStatus.REMOTE_ONLY)
        with pytest.raises(NetworkUnreachable):
            await dispatcher.start_management_mode(
                UID, "a", "10.0.0.6", ConnectionStatus.DISCONNECTED
            )

    async def test_enable_and_disable(self, dispatcher, lan):
        lan.add("10.0.0.6", UID)
        await dispatcher.start_management_mode(UID, "a", "10.0.0.6", ConnectionStatus.CONNECTED)
        assert lan.management["10.0.0.6"] is True
        await dispatcher.stop_management_mode("10.0.0.6")
        assert lan.management["10.0.0.6"] is False

    async def test_denied_without_device_call(self, dispatcher, lan):
        lan.add("10.0.0.6", UID)
        dispatcher.toggle_lock(UID, "a")
        with pytest.raises(PermissionDenied):
            await dispatcher.start_management_mode(
                UID, "b", "10.0.0.6", ConnectionStatus.CONNECTED
            )
        assert lan.requests == []

    async def test_save_scanned_credential_clears_reader(self, dispatcher, lan):
        lan.add("10.0.0.6", UID)
        lan.pending["10.0.0.6"] = ["ab12", "cd34"]
        assert await dispatcher.poll_new_credentials("10.0.0.6") == ["ab12", "cd34"]
        saved = await dispatcher.save_scanned_credential(UID, "a", "ab12", address="10.0.0.6")
        await dispatcher.drain()
        assert saved == "AB12"
        assert dispatcher.store.list_credentials(UID) == ["AB12"]
        assert lan.pending["10.0.0.6"] == ["cd34"]

    async def test_clear_failure_keeps_credential(self, dispatcher):
        await dispatcher.save_scanned_credential(UID, "a", "ab12", address="10.0.0.99")
        await dispatcher.drain()
        assert dispatcher.store.list_credentials(UID) == ["AB12"]

    @pytest.mark.parametrize("address", ["evil.example:8080/x?", "10.0.0", "10.0.0.6/x"])
    async def test_malformed_address_never_sent(self, dispatcher, lan, address):
        with pytest.raises(InvalidInput):
            await dispatcher.stop_management_mode(address)
        with pytest.raises(InvalidInput):
            await dispatcher.poll_new_credentials(address)
        with pytest.raises(InvalidInput):
            await dispatcher.start_management_mode(UID, "a", address, ConnectionStatus.CONNECTED)
        with pytest.raises(InvalidInput):
            await dispatcher.save_scanned_credential(UID, "a", "ab12", address=address)
        assert lan.requests == []
        assert dispatcher.store.list_credentials(UID) == []
