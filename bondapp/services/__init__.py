"""
Sync Services Package.

The ``create_services()`` factory wires every repository and service
together, returning a typed dict that the application layer (screens,
headless runner, tests) can consume without knowing the internal
dependency graph.
"""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Optional, TypedDict

from bondapp.config import AppConfig
from bondapp.database import DatabaseManager
from bondapp.logger import get_logger
from bondapp.models.sync_models import Session
from bondapp.repositories.remote_mirror import RemoteMirror, SupabaseRemoteMirror
from bondapp.repositories.snapshot_repository import SnapshotRepository
from bondapp.services.app_settings_service import AppSettingsService
from bondapp.services.connectivity import ConnectivityMonitor
from bondapp.services.consistency_enforcer import ConsistencyEnforcer
from bondapp.services.device_identity import DeviceIdentityService
from bondapp.services.logical_clock import LogicalClock
from bondapp.services.sync_orchestrator import ConnectivitySignal, SyncOrchestrator
from bondapp.services.sync_worker import SyncWorkerService


class ServiceContainer(TypedDict):
    """Typed container for all sync services."""

    # --- Infrastructure ---
    app_settings_service: AppSettingsService
    device_identity_service: DeviceIdentityService
    connectivity_monitor: ConnectivitySignal
    session: Session

    # --- Storage ---
    snapshot_repository: SnapshotRepository
    remote_mirror: RemoteMirror

    # --- Sync ---
    sync_orchestrator: SyncOrchestrator
    consistency_enforcer: ConsistencyEnforcer
    sync_worker_service: SyncWorkerService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    remote: Optional[RemoteMirror] = None,
    connectivity: Optional[ConnectivitySignal] = None,
    executor: Optional[Executor] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the sync layer.  The entry
    point calls this once at startup, after the schema is initialised.

    Args:
        db: Initialised DatabaseManager with SQLite ready (Supabase optional).
        config: Application configuration.
        remote: Remote mirror override; the Supabase adapter by default.
        connectivity: Network signal override; a TCP check of the
            Supabase host by default.
        executor: Push executor override; a single background thread by
            default.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Identity
    # ------------------------------------------------------------------
    app_settings_service = AppSettingsService(db=db, logger=logger)
    device_identity_service = DeviceIdentityService(settings=app_settings_service, logger=logger)
    session = Session(
        owner_id=config.OWNER_ID,
        device_id=device_identity_service.get_or_create(),
    )

    # ------------------------------------------------------------------
    # 2. Storage (local snapshots + remote mirror)
    # ------------------------------------------------------------------
    snapshot_repository = SnapshotRepository(
        db=db, logger=logger, namespace=config.STORAGE_NAMESPACE,
    )
    remote_mirror: RemoteMirror = remote or SupabaseRemoteMirror(
        db=db,
        logger=logger,
        owner_id=session.owner_id,
        table=config.SYNC_TABLE,
        push_function=config.SYNC_PUSH_FUNCTION,
        poll_interval_s=config.SUBSCRIPTION_POLL_INTERVAL_S,
    )
    connectivity_monitor: ConnectivitySignal = connectivity or ConnectivityMonitor(
        check_url=db.supabase_url if db.has_remote else "",
        logger=logger,
        check_timeout_s=config.CONNECTIVITY_CHECK_TIMEOUT_S,
        cache_s=config.CONNECTIVITY_CACHE_S,
    )

    # ------------------------------------------------------------------
    # 3. Sync (orchestrator, enforcer, retry worker)
    # ------------------------------------------------------------------
    sync_orchestrator = SyncOrchestrator(
        store=snapshot_repository,
        remote=remote_mirror,
        session=session,
        clock=LogicalClock(),
        connectivity=connectivity_monitor,
        logger=logger,
        keys=config.KNOWN_COLLECTIONS,
        executor=executor,
    )
    consistency_enforcer = ConsistencyEnforcer(
        store=snapshot_repository,
        orchestrator=sync_orchestrator,
        session=session,
        logger=logger,
    )
    sync_orchestrator.attach_enforcer(consistency_enforcer)

    sync_worker_service = SyncWorkerService(
        orchestrator=sync_orchestrator,
        connectivity=connectivity_monitor,
        config=config,
        logger=logger,
    )

    return ServiceContainer(
        app_settings_service=app_settings_service,
        device_identity_service=device_identity_service,
        connectivity_monitor=connectivity_monitor,
        session=session,
        snapshot_repository=snapshot_repository,
        remote_mirror=remote_mirror,
        sync_orchestrator=sync_orchestrator,
        consistency_enforcer=consistency_enforcer,
        sync_worker_service=sync_worker_service,
    )
