from __future__ import annotations

import json

from bondapp.models.enums import SyncPhase


def _audit_rows(device) -> list[dict]:
    rows = device.db.sqlite.execute(
        "SELECT action, entity_type, entity_id, device_id, details FROM audit_log ORDER BY id"
    ).fetchall()
    return [dict(row) for row in rows]


def _load(device, *keys: str) -> None:
    for key in keys:
        device.orchestrator.load(key)


def test_assignment_propagates_to_member(device, remote) -> None:
    _load(device, "inventory", "members")
    device.orchestrator.save("members", [{"id": "m1", "name": "Ana"}])

    stored = device.orchestrator.save(
        "inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}],
    )

    assert stored == [{"id": "i1", "status": "assigned", "assignedTo": "m1"}]
    assert device.store.read("members").data == [
        {"id": "m1", "name": "Ana", "assignedInventory": ["i1"]},
    ]
    assert remote.records["members"].data[0]["assignedInventory"] == ["i1"]
    assert device.orchestrator.phase("members") == SyncPhase.SYNCED


def test_dangling_assignment_is_released(device) -> None:
    _load(device, "inventory", "members")
    device.orchestrator.save("members", [{"id": "m1"}])

    stored = device.orchestrator.save(
        "inventory",
        [{"id": "i1", "status": "assigned", "assignedTo": "m2", "assignmentDate": "2024-03-01"}],
    )

    assert stored == [{"id": "i1", "status": "available"}]
    assert device.store.read("inventory").data == stored
    assert device.store.read("members").data == [{"id": "m1"}]


def test_malformed_pointer_is_repaired_instead_of_failing_the_save(device, remote) -> None:
    _load(device, "inventory", "members")

    stored = device.orchestrator.save("members", [{"id": "m1", "assignedInventory": [{"id": "i1"}]}])

    assert stored == [{"id": "m1", "assignedInventory": []}]
    assert device.store.read("members").data == stored
    assert remote.records["members"].data == stored


def test_repairs_are_audited(device) -> None:
    _load(device, "inventory", "members")
    device.orchestrator.save("members", [{"id": "m1"}])
    device.orchestrator.save("inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m2"}])

    rows = _audit_rows(device)

    assert len(rows) == 1
    assert rows[0]["action"] == "REPAIR"
    assert rows[0]["entity_type"] == "inventory"
    assert rows[0]["entity_id"] == "i1"
    assert rows[0]["device_id"] == "device-a"
    assert json.loads(rows[0]["details"])["rule"] == "inventory_assignment"


def test_rule_waits_until_partner_is_loaded(device) -> None:
    # members sigue UNLOADED: no se puede saber si m1 existe.
    stored = device.orchestrator.save(
        "inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}],
    )

    assert stored[0]["status"] == "assigned"
    assert _audit_rows(device) == []


def test_repair_without_drift_returns_write_unchanged(device) -> None:
    _load(device, "inventory", "members")
    device.orchestrator.save("members", [{"id": "m1", "assignedInventory": []}])

    result = device.enforcer.repair("members", [{"id": "m1", "assignedInventory": []}])

    assert result == {"members": [{"id": "m1", "assignedInventory": []}]}


def test_repair_does_not_mutate_caller_data(device) -> None:
    _load(device, "inventory", "members")
    device.orchestrator.save("members", [{"id": "m1"}])
    items = [{"id": "i1", "status": "assigned", "assignedTo": "m1"}]

    result = device.enforcer.repair("inventory", items)

    assert items == [{"id": "i1", "status": "assigned", "assignedTo": "m1"}]
    assert result["members"] == [{"id": "m1", "assignedInventory": ["i1"]}]
    assert device.store.read("members").data == [{"id": "m1"}]


def test_enforce_heals_stored_state_after_sync(device, remote) -> None:
    device.store.write("inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}], 500)
    device.store.write("members", [{"id": "m1"}], 500)

    failures = device.orchestrator.sync_all()

    assert failures == {}
    assert device.store.read("members").data == [{"id": "m1", "assignedInventory": ["i1"]}]
    assert remote.records["members"].data == [{"id": "m1", "assignedInventory": ["i1"]}]
    assert remote.records["members"].timestamp == 1_000


def test_enforce_is_idempotent(device) -> None:
    device.store.write("inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}], 500)
    device.store.write("members", [{"id": "m1"}], 500)
    device.orchestrator.sync_all()

    assert device.enforcer.enforce() == {}


def test_enforce_skips_unloaded_collections(device) -> None:
    device.store.write("inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m1"}], 500)

    assert device.enforcer.enforce() == {}
    assert device.store.read("inventory").data[0]["status"] == "assigned"


def test_performance_save_generates_contract(device, remote) -> None:
    _load(device, "performances", "contracts", "members")
    performance = {
        "id": "p1",
        "title": "Gala",
        "venue": "Teatro",
        "date": "2024-05-10",
        "organizer": "Ayuntamiento",
        "contracts": [{"id": "f1", "name": "contrato.pdf"}],
        "attendance": [{"memberId": "m1", "status": "confirmed"}],
    }
    device.orchestrator.save("members", [{"id": "m1"}])

    device.orchestrator.save("performances", [performance])

    contracts = device.store.read("contracts").data
    assert [c["id"] for c in contracts] == ["perf-p1-f1"]
    assert contracts[0]["client"] == "Ayuntamiento"
    assert remote.records["contracts"].data == contracts
    member = device.store.read("members").data[0]
    assert member["attendedPerformances"] == ["p1"]
    assert member["performanceStats"]["attendanceRate"] == 100.0


def test_removing_performance_removes_generated_contract(device) -> None:
    _load(device, "performances", "contracts")
    device.orchestrator.save("contracts", [{"id": "manual"}])
    device.orchestrator.save(
        "performances", [{"id": "p1", "contracts": [{"id": "f1", "name": "a.pdf"}]}],
    )
    assert [c["id"] for c in device.store.read("contracts").data] == ["manual", "perf-p1-f1"]

    device.orchestrator.save("performances", [])

    assert device.store.read("contracts").data == [{"id": "manual"}]
