from __future__ import annotations

from bondapp.config import AppConfig
from bondapp.models.enums import CollectionKey
from bondapp.repositories.remote_mirror import SupabaseRemoteMirror
from bondapp.services import create_services
from bondapp.services.connectivity import ConnectivityMonitor
from tests.fakes import InlineExecutor, InMemoryRemoteMirror, StaticConnectivity


def test_default_wiring_runs_offline(db) -> None:
    services = create_services(db, AppConfig())
    try:
        assert isinstance(services["remote_mirror"], SupabaseRemoteMirror)
        assert isinstance(services["connectivity_monitor"], ConnectivityMonitor)
        assert services["connectivity_monitor"].is_online is False
        assert services["session"].owner_id == "admin"
        assert services["session"].device_id.startswith("device_")
        assert services["sync_orchestrator"].keys == AppConfig.KNOWN_COLLECTIONS
    finally:
        services["sync_orchestrator"].close()


def test_device_id_survives_rewiring(db) -> None:
    first = create_services(db, AppConfig(), remote=InMemoryRemoteMirror(), executor=InlineExecutor())
    second = create_services(db, AppConfig(), remote=InMemoryRemoteMirror(), executor=InlineExecutor())

    assert first["session"].device_id == second["session"].device_id


def test_wired_orchestrator_repairs_and_pushes(db) -> None:
    remote = InMemoryRemoteMirror()
    services = create_services(
        db, AppConfig(), remote=remote, connectivity=StaticConnectivity(True), executor=InlineExecutor(),
    )
    orchestrator = services["sync_orchestrator"]
    orchestrator.load("members")
    orchestrator.load("inventory")

    stored = orchestrator.save("inventory", [{"id": "i1", "status": "assigned", "assignedTo": "m9"}])

    assert stored == [{"id": "i1", "status": "available"}]
    assert remote.records["inventory"].device_id == services["session"].device_id
    assert orchestrator.status().online is True


def test_known_collections_follow_the_enum() -> None:
    assert AppConfig.KNOWN_COLLECTIONS == tuple(CollectionKey)
    assert all(type(key) is str for key in AppConfig.KNOWN_COLLECTIONS)
