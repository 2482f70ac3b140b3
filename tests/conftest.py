from __future__ import annotations

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

os.environ.setdefault("LOG_FILE", str(Path(tempfile.gettempdir()) / "bondapp-tests.log"))

from bondapp.database import DatabaseManager  # noqa: E402
from bondapp.logger import StructuredLogger  # noqa: E402
from bondapp.models.sync_models import Session  # noqa: E402
from bondapp.repositories.snapshot_repository import SnapshotRepository  # noqa: E402
from bondapp.schema import initialize_schema  # noqa: E402
from bondapp.services.consistency_enforcer import ConsistencyEnforcer  # noqa: E402
from bondapp.services.logical_clock import LogicalClock  # noqa: E402
from bondapp.services.sync_orchestrator import SyncOrchestrator  # noqa: E402
from tests.fakes import (  # noqa: E402
    InlineExecutor,
    InMemoryRemoteMirror,
    ManualClock,
    StaticConnectivity,
)


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="bondapp.tests", level=logging.DEBUG, stream=io.StringIO())


def _open_db(logger: StructuredLogger) -> DatabaseManager:
    db = DatabaseManager(
        supabase_url="",
        supabase_key="",
        sqlite_path=Path(":memory:"),
        logger=logger,
    )
    initialize_schema(db.sqlite, logger)
    return db


@pytest.fixture
def db(logger: StructuredLogger) -> Iterator[DatabaseManager]:
    manager = _open_db(logger)
    yield manager
    manager.close()


@pytest.fixture
def store(db: DatabaseManager, logger: StructuredLogger) -> SnapshotRepository:
    return SnapshotRepository(db=db, logger=logger)


@pytest.fixture
def remote() -> InMemoryRemoteMirror:
    return InMemoryRemoteMirror()


@dataclass
class Device:
    db: DatabaseManager
    store: SnapshotRepository
    session: Session
    clock: ManualClock
    connectivity: StaticConnectivity
    orchestrator: SyncOrchestrator
    enforcer: ConsistencyEnforcer


@pytest.fixture
def make_device(
    logger: StructuredLogger, remote: InMemoryRemoteMirror,
) -> Iterator[Callable[..., Device]]:
    opened: list[Device] = []

    def _factory(
        device_id: str = "device-a",
        *,
        mirror: Optional[InMemoryRemoteMirror] = None,
        with_enforcer: bool = True,
        online: bool = True,
        now_ms: int = 1_000,
    ) -> Device:
        manager = _open_db(logger)
        snapshots = SnapshotRepository(db=manager, logger=logger)
        session = Session(owner_id="admin", device_id=device_id)
        clock = ManualClock(now_ms)
        connectivity = StaticConnectivity(online)
        orchestrator = SyncOrchestrator(
            store=snapshots,
            remote=mirror or remote,
            session=session,
            clock=LogicalClock(clock),
            connectivity=connectivity,
            logger=logger,
            executor=InlineExecutor(),
        )
        enforcer = ConsistencyEnforcer(
            store=snapshots, orchestrator=orchestrator, session=session, logger=logger,
        )
        if with_enforcer:
            orchestrator.attach_enforcer(enforcer)
        device = Device(manager, snapshots, session, clock, connectivity, orchestrator, enforcer)
        opened.append(device)
        return device

    yield _factory

    for device in opened:
        device.orchestrator.close()
        device.db.close()


@pytest.fixture
def device(make_device: Callable[..., Device]) -> Device:
    return make_device()
