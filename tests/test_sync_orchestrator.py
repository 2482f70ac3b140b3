from __future__ import annotations

import pytest

from bondapp.errors import StorageFailure
from bondapp.models.enums import SyncPhase
from tests.fakes import record


def _corrupt(device, key: str) -> None:
    device.db.sqlite.execute(
        "INSERT INTO local_snapshots (namespace, key, data, last_modified) VALUES (?, ?, ?, ?)",
        ("bondapp", key, "{roto", 1),
    )
    device.db.sqlite.commit()


# ---------------------------------------------------------------------------
# save
# ---------------------------------------------------------------------------

class TestSave:
    def test_save_writes_locally_and_pushes(self, device, remote) -> None:
        stored = device.orchestrator.save("tasks", [{"id": "t1", "title": "Afinar"}])

        assert stored == [{"id": "t1", "title": "Afinar"}]
        snapshot = device.store.read("tasks")
        assert snapshot.data == stored
        pushed = remote.records["tasks"]
        assert pushed.data == stored
        assert pushed.device_id == "device-a"
        assert pushed.owner_id == "admin"
        assert pushed.timestamp == snapshot.last_modified == 1_000
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_server_timestamp_is_adopted_locally(self, device, remote) -> None:
        remote.server_now_ms = 5_000

        device.orchestrator.save("tasks", [{"id": "t1"}])
        device.orchestrator.save("tasks", [{"id": "t2"}])

        assert [r.timestamp for r in remote.push_calls] == [5_000, 5_001]
        assert device.store.read("tasks").last_modified == 5_001

    def test_successive_saves_strictly_increase(self, device, remote) -> None:
        device.orchestrator.save("scores", [{"id": "s1"}])
        device.orchestrator.save("scores", [{"id": "s2"}])
        device.orchestrator.save("scores", [{"id": "s3"}])

        timestamps = [r.timestamp for r in remote.push_calls]
        assert timestamps == sorted(set(timestamps))
        assert remote.records["scores"].data == [{"id": "s3"}]

    def test_offline_write_is_durable_and_pending(self, device, remote) -> None:
        remote.online = False
        performances = [{"id": "p1", "title": "Concierto de primavera"}]

        stored = device.orchestrator.save("performances", performances)

        assert stored == performances
        assert device.store.read("performances").data == performances
        assert device.orchestrator.phase("performances") == SyncPhase.PENDING_PUSH
        assert device.orchestrator.status().pending == ("performances",)
        assert "performances" not in remote.records
        row = device.db.sqlite.execute(
            "SELECT attempts, last_error FROM pending_pushes WHERE key = 'performances'"
        ).fetchone()
        assert row["attempts"] == 1
        assert "offline" in row["last_error"]

    def test_retry_pending_delivers_offline_write(self, device, remote) -> None:
        remote.online = False
        device.orchestrator.save("performances", [{"id": "p1"}])
        remote.online = True

        assert device.orchestrator.retry_pending() == 1

        assert remote.records["performances"].data == [{"id": "p1"}]
        assert device.store.pending_keys() == []
        assert device.orchestrator.phase("performances") == SyncPhase.SYNCED

    def test_retry_pending_stops_while_offline(self, device, remote) -> None:
        remote.online = False
        device.orchestrator.save("tasks", [{"id": "t1"}])
        device.orchestrator.save("scores", [{"id": "s1"}])

        assert device.orchestrator.retry_pending() == 0
        assert sorted(device.store.pending_keys()) == ["scores", "tasks"]

    def test_retry_pending_drops_marks_without_snapshot(self, device) -> None:
        device.store.mark_pending("instruments")

        assert device.orchestrator.retry_pending() == 0
        assert device.store.pending_keys() == []

    def test_write_saved_during_retry_stays_pending(self, device, remote) -> None:
        remote.online = False
        device.orchestrator.save("tasks", [{"id": "t1"}])
        remote.online = True
        remote.server_now_ms = 50_000

        def _save_newer_while_offline(key: str) -> None:
            remote.online = False
            device.orchestrator.save("tasks", [{"id": "t2"}])
            remote.online = True

        remote.during_push = _save_newer_while_offline

        device.orchestrator.retry_pending()

        assert remote.records["tasks"].data == [{"id": "t1"}]
        assert remote.records["tasks"].timestamp == 50_000
        assert device.store.pending_keys() == ["tasks"]
        assert device.store.read("tasks").data == [{"id": "t2"}]
        assert device.orchestrator.phase("tasks") == SyncPhase.PENDING_PUSH

        assert device.orchestrator.load("tasks") == [{"id": "t2"}]
        assert remote.records["tasks"].data == [{"id": "t2"}]
        assert remote.records["tasks"].timestamp == 50_001
        assert device.store.read("tasks").last_modified == 50_001
        assert device.store.pending_keys() == []

    def test_superseded_push_is_requeued(self, device, remote) -> None:
        remote.server_now_ms = 9_000

        def _save_newer_locally(key: str) -> None:
            device.orchestrator.save_local("tasks", [{"id": "t2"}])

        remote.during_push = _save_newer_locally

        device.orchestrator.save("tasks", [{"id": "t1"}])

        assert remote.records["tasks"].data == [{"id": "t1"}]
        assert device.store.read("tasks").data == [{"id": "t2"}]
        assert device.store.pending_keys() == ["tasks"]

        assert device.orchestrator.retry_pending() == 1
        assert remote.records["tasks"].data == [{"id": "t2"}]
        assert device.store.pending_keys() == []
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_save_local_does_not_push(self, device, remote) -> None:
        device.orchestrator.save_local("tasks", [{"id": "t1"}])

        assert remote.push_calls == []
        assert device.store.read("tasks").data == [{"id": "t1"}]
        assert device.orchestrator.phase("tasks") == SyncPhase.LOCAL_AHEAD

    def test_save_after_close_is_kept_pending(self, device, remote) -> None:
        device.orchestrator.close()

        device.orchestrator.save("tasks", [{"id": "t1"}])

        assert remote.push_calls == []
        assert device.store.pending_keys() == ["tasks"]
        assert device.orchestrator.phase("tasks") == SyncPhase.PENDING_PUSH

    def test_storage_failure_is_raised_to_caller(self, device) -> None:
        device.db.close()

        with pytest.raises(StorageFailure):
            device.orchestrator.save("tasks", [{"id": "t1"}])


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------

class TestLoad:
    def test_remote_newer_overwrites_local(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "old"}], 1_000)
        remote.put(record("tasks", [{"id": "new"}], 2_000))

        result = device.orchestrator.load("tasks")

        assert result == [{"id": "new"}]
        snapshot = device.store.read("tasks")
        assert snapshot.data == [{"id": "new"}]
        assert snapshot.last_modified == 2_000
        assert remote.push_calls == []
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_local_newer_wins_and_is_pushed(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "local"}], 3_000)
        remote.put(record("tasks", [{"id": "remote"}], 2_000))

        result = device.orchestrator.load("tasks")

        assert result == [{"id": "local"}]
        assert remote.records["tasks"].data == [{"id": "local"}]
        assert remote.records["tasks"].timestamp == 3_000
        assert remote.records["tasks"].device_id == "device-a"
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_tie_keeps_local_without_push(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "local"}], 2_000)
        remote.put(record("tasks", [{"id": "remote"}], 2_000))

        assert device.orchestrator.load("tasks") == [{"id": "local"}]
        assert remote.push_calls == []
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_local_only_is_pushed(self, device, remote) -> None:
        device.store.write("members", [{"id": "m1"}], 1_500)

        assert device.orchestrator.load("members") == [{"id": "m1"}]
        assert remote.records["members"].timestamp == 1_500

    def test_nothing_anywhere_yields_empty_collection(self, device, remote) -> None:
        assert device.orchestrator.load("finances") == []
        assert device.store.read("finances") is None
        assert device.orchestrator.phase("finances") == SyncPhase.SYNCED

    def test_remote_only_is_stored_locally(self, device, remote) -> None:
        remote.put(record("finances", [{"id": "f1"}], 4_000))

        assert device.orchestrator.load("finances") == [{"id": "f1"}]
        assert device.store.read("finances").last_modified == 4_000

    def test_offline_load_serves_local(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "t1"}], 1_000)
        remote.online = False

        assert device.orchestrator.load("tasks") == [{"id": "t1"}]
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_offline_load_keeps_pending_phase(self, device, remote) -> None:
        remote.online = False
        device.orchestrator.save("tasks", [{"id": "t1"}])

        assert device.orchestrator.load("tasks") == [{"id": "t1"}]
        assert device.orchestrator.phase("tasks") == SyncPhase.PENDING_PUSH

    def test_local_failure_falls_back_to_remote(self, device, remote) -> None:
        _corrupt(device, "scores")
        remote.put(record("scores", [{"id": "s1"}], 2_000))

        assert device.orchestrator.load("scores") == [{"id": "s1"}]
        assert device.orchestrator.phase("scores") == SyncPhase.REMOTE_AHEAD

    def test_local_failure_without_remote_raises(self, device) -> None:
        _corrupt(device, "scores")

        with pytest.raises(StorageFailure):
            device.orchestrator.load("scores")
        assert device.orchestrator.phase("scores") == SyncPhase.UNLOADED

    def test_update_arriving_during_load_wins(self, device, remote) -> None:
        remote.put(record("tasks", [{"id": "v1"}], 2_000))
        received: list = []
        device.orchestrator.subscribe("tasks", received.append)
        remote.before_pull = lambda key: remote.inject(
            record("tasks", [{"id": "v2"}], 3_000, device_id="device-b")
        )

        result = device.orchestrator.load("tasks")

        assert result == [{"id": "v2"}]
        assert device.store.read("tasks").data == [{"id": "v2"}]
        assert received == [[{"id": "v2"}]]
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED


# ---------------------------------------------------------------------------
# change feed
# ---------------------------------------------------------------------------

class TestRemoteUpdates:
    def test_apply_is_idempotent(self, device) -> None:
        incoming = record("tasks", [{"id": "x"}], 2_000)

        assert device.orchestrator.apply_remote(incoming) == [{"id": "x"}]
        assert device.orchestrator.apply_remote(incoming) is None
        assert device.store.read("tasks").last_modified == 2_000

    def test_arrival_order_does_not_matter(self, make_device) -> None:
        first = record("tasks", [{"id": "a"}], 2_000)
        second = record("tasks", [{"id": "b"}], 3_000)
        one = make_device("device-1")
        two = make_device("device-2")

        one.orchestrator.apply_remote(first)
        one.orchestrator.apply_remote(second)
        two.orchestrator.apply_remote(second)
        two.orchestrator.apply_remote(first)

        assert one.store.read("tasks") == two.store.read("tasks")
        assert one.store.read("tasks").data == [{"id": "b"}]

    def test_stale_record_is_ignored(self, device) -> None:
        device.store.write("tasks", [{"id": "mine"}], 5_000)

        assert device.orchestrator.apply_remote(record("tasks", [{"id": "old"}], 4_000)) is None
        assert device.store.read("tasks").data == [{"id": "mine"}]

    def test_own_echo_is_dropped(self, device, remote) -> None:
        received: list = []
        device.orchestrator.subscribe("tasks", received.append)

        device.orchestrator.save("tasks", [{"id": "t1"}])
        remote.inject(record("tasks", [{"id": "forged"}], 9_000, device_id="device-a"))

        assert received == []
        assert device.store.read("tasks").data == [{"id": "t1"}]

    def test_peer_update_reaches_subscriber(self, device, remote) -> None:
        received: list = []
        device.orchestrator.subscribe("tasks", received.append)

        remote.inject(record("tasks", [{"id": "peer"}], 5_000, device_id="device-b"))
        remote.inject(record("tasks", [{"id": "late"}], 10, device_id="device-b"))

        assert received == [[{"id": "peer"}]]
        assert device.store.read("tasks").data == [{"id": "peer"}]
        assert device.orchestrator.phase("tasks") == SyncPhase.SYNCED

    def test_local_write_after_remote_apply_orders_after_it(self, device, remote) -> None:
        device.orchestrator.apply_remote(record("tasks", [{"id": "peer"}], 8_000))

        device.orchestrator.save("tasks", [{"id": "mine"}])

        assert device.store.read("tasks").last_modified == 8_001
        assert remote.records["tasks"].data == [{"id": "mine"}]

    def test_remote_apply_repairs_partners(self, device, remote) -> None:
        device.orchestrator.load("inventory")
        device.orchestrator.load("members")
        device.orchestrator.save("members", [{"id": "m1"}])

        applied = device.orchestrator.apply_remote(record(
            "inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}], 5_000,
        ))

        assert applied == [{"id": "i1", "status": "assigned", "assignedTo": "m1"}]
        assert device.store.read("members").data == [{"id": "m1", "assignedInventory": ["i1"]}]
        assert remote.records["members"].device_id == "device-a"
        assert remote.records["members"].data == [{"id": "m1", "assignedInventory": ["i1"]}]
        assert device.orchestrator.phase("inventory") == SyncPhase.SYNCED

    def test_unsubscribe_stops_delivery(self, device, remote) -> None:
        received: list = []
        subscription = device.orchestrator.subscribe("tasks", received.append)

        device.orchestrator.unsubscribe("tasks")
        remote.inject(record("tasks", [{"id": "peer"}], 5_000))

        assert subscription.active is False
        assert received == []

    def test_release_forgets_one_handle(self, device, remote) -> None:
        received: list = []
        kept = device.orchestrator.subscribe("tasks", received.append)
        released = device.orchestrator.subscribe("tasks", lambda data: None)

        device.orchestrator.release(released)
        remote.inject(record("tasks", [{"id": "peer"}], 5_000))
        device.orchestrator.close()

        assert received == [[{"id": "peer"}]]
        assert released.unsubscribe_calls == 1
        assert kept.unsubscribe_calls == 1

    def test_close_releases_every_subscription(self, device) -> None:
        subs = [
            device.orchestrator.subscribe("tasks", lambda data: None),
            device.orchestrator.subscribe("tasks", lambda data: None),
            device.orchestrator.subscribe("members", lambda data: None),
        ]

        device.orchestrator.close()
        device.orchestrator.close()

        assert all(not sub.active for sub in subs)
        assert all(sub.unsubscribe_calls == 1 for sub in subs)


# ---------------------------------------------------------------------------
# bulk operations
# ---------------------------------------------------------------------------

class TestBulk:
    def test_sync_all_reports_failures_and_continues(self, device, remote) -> None:
        _corrupt(device, "scores")
        remote.put(record("tasks", [{"id": "t1"}], 2_000))

        failures = device.orchestrator.sync_all()

        assert list(failures) == ["scores"]
        assert isinstance(failures["scores"], StorageFailure)
        assert device.store.read("tasks").data == [{"id": "t1"}]
        assert device.orchestrator.status().last_sync_time is not None
        assert device.orchestrator.phase("scores") == SyncPhase.UNLOADED

    def test_sync_all_retries_pending(self, device, remote) -> None:
        remote.online = False
        device.orchestrator.save("tasks", [{"id": "t1"}])
        remote.online = True

        assert device.orchestrator.sync_all() == {}
        assert device.store.pending_keys() == []
        assert remote.records["tasks"].data == [{"id": "t1"}]

    def test_push_all_local_overrides_remote(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "local"}], 1_000)
        device.store.write("members", [{"id": "m1"}], 1_000)
        remote.put(record("tasks", [{"id": "remote"}], 9_000))

        assert device.orchestrator.push_all_local() == 2

        assert remote.records["tasks"].data == [{"id": "local"}]
        assert remote.records["tasks"].timestamp == 9_001
        assert device.store.read("tasks").last_modified == 9_001

    def test_push_all_local_sends_only_stored_collections(self, device, remote) -> None:
        device.store.write("tasks", [{"id": "t1"}], 1_000)

        assert device.orchestrator.push_all_local() == 1

        assert list(remote.records) == ["tasks"]
        assert device.store.pending_keys() == []

    def test_status_reports_identity_and_connectivity(self, device) -> None:
        status = device.orchestrator.status()
        assert status.device_id == "device-a"
        assert status.online is True
        assert status.pending == ()
        assert status.last_sync_time is None

        device.connectivity.is_online = False
        assert device.orchestrator.status().online is False
