"""
Sync Orchestrator.

The façade every screen goes through.  For each collection key it keeps a
phase (:class:`~bondapp.models.enums.SyncPhase`) and resolves divergence
between the local store and the remote mirror automatically:

- **save** writes locally first, then pushes in the background.  A failed
  push leaves the local write in place and marks the key as a pending push,
  retried by :meth:`SyncOrchestrator.sync_all`, :meth:`retry_pending` or
  the :class:`~bondapp.services.sync_worker.SyncWorkerService`.
- **load** pulls, compares timestamps and keeps the strictly newer side
  (local wins a tie).  An unreachable remote degrades to the local
  snapshot.
- **subscribe** applies peer records that are newer than the local
  snapshot and drops this device's own echoes.

Ordering comes from timestamps alone: every local write is stamped by the
:class:`~bondapp.services.logical_clock.LogicalClock`, every remote record
by the server, and applying the same record twice is a no-op.  The sync
layer takes no locks of its own; the database write lock only serialises
access to the shared SQLite connection.
"""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Protocol,
)

from bondapp.errors import NetworkFailure, StorageFailure, SyncError
from bondapp.logger import StructuredLogger
from bondapp.models.enums import CollectionKey, SyncPhase
from bondapp.models.sync_models import Collection, LocalSnapshot, Session, SyncRecord, SyncStatus
from bondapp.repositories.remote_mirror import RemoteMirror, Subscription
from bondapp.repositories.snapshot_repository import SnapshotRepository
from bondapp.services.base_service import BaseService
from bondapp.services.logical_clock import LogicalClock
from bondapp.utils.general import convert_to_json_safe

if TYPE_CHECKING:
    from bondapp.services.consistency_enforcer import ConsistencyEnforcer

ChangeCallback = Callable[[Collection], None]


class ConnectivitySignal(Protocol):
    """Anything that can tell whether the network is available."""

    @property
    def is_online(self) -> bool: ...  # noqa: E704


class SyncOrchestrator(BaseService):
    """Per-key state machine coordinating local store and remote mirror.

    Parameters
    ----------
    store:
        Local snapshot store.
    remote:
        Remote mirror (Supabase adapter in production).
    session:
        Owner and device id tagging every push.
    clock:
        Logical clock stamping local writes.
    connectivity:
        Network signal reported by :meth:`status`.
    logger:
        Structured logger.
    keys:
        Collections covered by :meth:`sync_all`.
    executor:
        Runs remote pushes.  Defaults to a single background thread, so
        pushes for a key leave in the order they were written.
    """

    def __init__(
        self,
        store: SnapshotRepository,
        remote: RemoteMirror,
        session: Session,
        clock: LogicalClock,
        connectivity: ConnectivitySignal,
        logger: StructuredLogger,
        keys: Iterable[str] = tuple(CollectionKey),
        executor: Optional[Executor] = None,
    ) -> None:
        super().__init__(logger)
        self._store = store
        self._remote = remote
        self._session = session
        self._clock = clock
        self._connectivity = connectivity
        self._keys: tuple[str, ...] = tuple(str(key) for key in keys)
        self._owns_executor: bool = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="RemotePush",
        )
        self._enforcer: Optional["ConsistencyEnforcer"] = None
        self._phases: dict[str, SyncPhase] = {}
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._deferred: dict[str, SyncRecord] = {}
        self._last_sync_time: Optional[datetime] = None
        self._closed: bool = False

    # ------------------------------------------------------------------
    # Wiring & introspection
    # ------------------------------------------------------------------

    def attach_enforcer(self, enforcer: "ConsistencyEnforcer") -> None:
        """Route every reconciled save through *enforcer*."""
        self._enforcer = enforcer

    @property
    def session(self) -> Session:
        return self._session

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    def phase(self, key: str) -> SyncPhase:
        """Current phase of *key* (``UNLOADED`` until first touched)."""
        return self._phases.get(key, SyncPhase.UNLOADED)

    def status(self) -> SyncStatus:
        """Report last sync time, device id, connectivity and pending keys."""
        try:
            pending = tuple(self._store.pending_keys())
        except StorageFailure as exc:
            self._logger.warning("Pending pushes unavailable for status: %s", exc)
            pending = ()
        return SyncStatus(
            last_sync_time=self._last_sync_time,
            device_id=self._session.device_id,
            online=self._connectivity.is_online,
            pending=pending,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, key: str, data: Collection, reconcile: bool = True) -> Collection:
        """Persist *data* as the new value of *key* and push it.

        Returns once the write (and any consistency repair it triggered) is
        durable locally; the push runs in the background.  Returns the
        value actually stored, which differs from *data* only when a repair
        corrected it.

        Raises:
            StorageFailure: If the local store cannot persist the write.
        """
        return self.save_many({key: data}, reconcile=reconcile)[key]

    def save_many(
        self, changes: Mapping[str, Collection], reconcile: bool = True,
    ) -> dict[str, Collection]:
        """Persist several collections in one local transaction, then push each.

        When *reconcile* is set and an enforcer is attached, the enforcer
        may add corrected partner collections to the batch.
        """
        batch: dict[str, Collection] = {
            key: convert_to_json_safe(list(data)) for key, data in changes.items()
        }
        with self._store.batch():
            if reconcile and self._enforcer is not None:
                batch = self._enforcer.repair_many(batch)
            written = self._write_local(batch)

        for key, timestamp in written.items():
            self._dispatch_push(key, batch[key], timestamp)
        return batch

    def save_local(self, key: str, data: Collection) -> Collection:
        """Persist *data* locally without pushing it or repairing partners.

        The key stays ``LOCAL_AHEAD`` until a later save, ``load`` or
        forced push sends it.
        """
        value = convert_to_json_safe(list(data))
        with self._store.batch():
            self._write_local({key: value})
        return value

    def _write_local(self, batch: Mapping[str, Collection]) -> dict[str, int]:
        written: dict[str, int] = {}
        for key, data in batch.items():
            timestamp = self._tick(key)
            self._store.write(key, data, timestamp)
            written[key] = timestamp
            self._phases[key] = SyncPhase.LOCAL_AHEAD
        return written

    def _tick(self, key: str) -> int:
        if self._clock.last(key) is None:
            snapshot = self._store.read(key)
            if snapshot is not None:
                self._clock.observe(key, snapshot.last_modified)
        return self._clock.tick(key)

    # ------------------------------------------------------------------
    # Pushes
    # ------------------------------------------------------------------

    def _dispatch_push(self, key: str, data: Collection, timestamp: int) -> None:
        if self._closed:
            self._mark_pending(key, "orchestrator closed")
            return
        try:
            self._executor.submit(self._push, key, data, timestamp)
        except RuntimeError as exc:
            self._mark_pending(key, str(exc))

    def _push(self, key: str, data: Collection, timestamp: int) -> bool:
        """Push one write; on failure mark it pending.  Returns success."""
        try:
            server_timestamp = self._remote.push(
                key, data, self._session.device_id, self._session.owner_id,
                min_timestamp=timestamp,
            )
        except NetworkFailure as exc:
            self._logger.warning("Push of '%s' failed, queued for retry: %s", key, exc)
            self._mark_pending(key, str(exc))
            return False

        self._clock.observe(key, server_timestamp)
        try:
            self._store.promote(key, timestamp, server_timestamp)
            snapshot = self._store.read(key)
            current = snapshot is not None and snapshot.last_modified in (timestamp, server_timestamp)
            if current:
                self._store.clear_pending(key)
        except StorageFailure as exc:
            self._logger.error("Push of '%s' succeeded but local bookkeeping failed: %s", key, exc)
            return True

        if not current:
            # The remote holds an older write of ours than the local snapshot.
            self._logger.info(
                "Push of '%s' @ %d superseded by a newer local write; kept pending.",
                key, server_timestamp,
            )
            self._mark_pending(key, "superseded by a newer local write")
            return True

        self._phases[key] = SyncPhase.SYNCED
        self._logger.debug("Push of '%s' accepted @ %d", key, server_timestamp)
        return True

    def _mark_pending(self, key: str, reason: str) -> None:
        self._phases[key] = SyncPhase.PENDING_PUSH
        try:
            self._store.mark_pending(key, reason)
        except StorageFailure as exc:
            self._logger.error("Could not record pending push for '%s': %s", key, exc)

    def retry_pending(self) -> int:
        """Push every key with a pending push.  Returns how many succeeded.

        Stops at the first network failure; the remaining keys stay pending.

        Raises:
            StorageFailure: If the pending set cannot be read.
        """
        pushed = 0
        for key in self._store.pending_keys():
            snapshot = self._store.read(key)
            if snapshot is None:
                self._store.clear_pending(key)
                continue
            if not self._push(key, snapshot.data, snapshot.last_modified):
                break
            pushed += 1
        if pushed:
            self._logger.info("Retried %d pending push(es).", pushed)
        return pushed

    def push_all_local(self) -> int:
        """Force a push of every local snapshot, ignoring timestamps.

        Makes this device authoritative for every collection it stores.
        Returns the number of collections accepted by the remote.
        """
        try:
            stored = self._store.keys()
        except StorageFailure as exc:
            self._logger.error("Cannot list local snapshots for forced push: %s", exc)
            return 0

        pushed = 0
        for key in stored:
            try:
                snapshot = self._store.read(key)
            except StorageFailure as exc:
                self._logger.error("Cannot read '%s' for forced push: %s", key, exc)
                continue
            if snapshot is None:
                continue
            if self._push(key, snapshot.data, snapshot.last_modified):
                pushed += 1
        self._logger.info("Forced push of local state: %d/%d collections.", pushed, len(stored))
        return pushed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self, key: str) -> Collection:
        """Return the current value of *key*, reconciling local and remote.

        Raises:
            StorageFailure: If the local store fails and the remote has no
                data to offer instead.
        """
        self._phases[key] = SyncPhase.LOADING
        self._deferred.pop(key, None)
        try:
            data, timestamp, remote_overwrite = self._resolve(key)
        except StorageFailure:
            self._phases[key] = SyncPhase.UNLOADED
            self._deferred.pop(key, None)
            raise

        deferred = self._deferred.pop(key, None)
        if deferred is not None and deferred.timestamp > timestamp:
            data, timestamp, remote_overwrite = list(deferred.data), deferred.timestamp, True

        if self.phase(key) == SyncPhase.LOADING:
            self._phases[key] = SyncPhase.SYNCED

        if remote_overwrite and self._enforcer is not None:
            repaired = self._enforcer.enforce([key])
            data = repaired.get(key, data)
        return data

    def _resolve(self, key: str) -> tuple[Collection, int, bool]:
        """Pick the winning side for *key*: ``(data, timestamp, remote_won)``."""
        record: Optional[SyncRecord] = None
        remote_ok = False
        try:
            record = self._remote.pull(key)
            remote_ok = True
        except NetworkFailure as exc:
            self._logger.warning("Remote unavailable for '%s', using local data: %s", key, exc)
        if record is not None:
            self._clock.observe(key, record.timestamp)

        try:
            with self._store.batch():
                local = self._store.read(key)
                superseded = self._is_own_superseded_push(key, record, local)
                if record is not None and not superseded and (
                    local is None or record.timestamp > local.last_modified
                ):
                    self._store.write(key, record.data, record.timestamp)
                    if local is not None:
                        self._logger.info(
                            "Remote '%s' is newer (%d > %d); local copy overwritten.",
                            key, record.timestamp, local.last_modified,
                        )
                    return list(record.data), record.timestamp, local is not None
        except StorageFailure as exc:
            if record is None:
                raise
            self._logger.error(
                "Local store unavailable for '%s'; serving remote data: %s", key, exc,
            )
            self._phases[key] = SyncPhase.REMOTE_AHEAD
            return list(record.data), record.timestamp, False

        if local is None:
            return [], 0, False

        self._clock.observe(key, local.last_modified)
        if remote_ok and (record is None or superseded or local.last_modified > record.timestamp):
            self._phases[key] = SyncPhase.LOCAL_AHEAD
            self._dispatch_push(key, local.data, local.last_modified)
        elif not remote_ok and key in self._safe_pending_keys():
            self._phases[key] = SyncPhase.PENDING_PUSH
        return list(local.data), local.last_modified, False

    def _is_own_superseded_push(
        self, key: str, record: Optional[SyncRecord], local: Optional[LocalSnapshot],
    ) -> bool:
        """``True`` when *record* is an older write of this device still awaiting its successor.

        A push accepted after a newer local write can carry a later server
        timestamp than that write.  While the key is pending, the local
        snapshot holds the newer write and must not be overwritten.
        """
        if record is None or local is None or record.timestamp <= local.last_modified:
            return False
        if record.device_id != self._session.device_id:
            return False
        if key not in self._safe_pending_keys():
            return False
        self._logger.info(
            "Remote '%s' @ %d is this device's superseded push; keeping local @ %d.",
            key, record.timestamp, local.last_modified,
        )
        return True

    def _safe_pending_keys(self) -> list[str]:
        try:
            return self._store.pending_keys()
        except StorageFailure:
            return []

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def subscribe(self, key: str, on_change: ChangeCallback) -> Subscription:
        """Invoke *on_change* with each peer update of *key*.

        Own echoes and records not newer than the local snapshot are
        dropped.  Several subscriptions per key are allowed.
        """
        def _handle(record: SyncRecord) -> None:
            self._on_remote_record(key, record, on_change)

        subscription = self._remote.subscribe(key, _handle)
        handles = [handle for handle in self._subscriptions.get(key, []) if handle.active]
        handles.append(subscription)
        self._subscriptions[key] = handles
        self._logger.debug("Subscribed to '%s' (%d active).", key, len(handles))
        return subscription

    def release(self, subscription: Subscription) -> None:
        """Unsubscribe one handle returned by :meth:`subscribe` and forget it."""
        subscription.unsubscribe()
        for key, handles in list(self._subscriptions.items()):
            if subscription in handles:
                handles.remove(subscription)
                if not handles:
                    del self._subscriptions[key]

    def unsubscribe(self, key: str) -> None:
        """Release every subscription opened for *key*."""
        for subscription in self._subscriptions.pop(key, []):
            subscription.unsubscribe()

    def _on_remote_record(self, key: str, record: SyncRecord, on_change: ChangeCallback) -> None:
        if record.device_id == self._session.device_id:
            self._logger.debug("Own echo of '%s' @ %d ignored.", key, record.timestamp)
            return

        try:
            applied = self.apply_remote(record)
        except StorageFailure as exc:
            self._logger.error("Could not apply remote '%s' @ %d: %s", key, record.timestamp, exc)
            return
        if applied is None:
            return
        on_change(applied)

    def apply_remote(self, record: SyncRecord) -> Optional[Collection]:
        """Apply a peer record if it is newer than the local snapshot.

        Returns the resulting collection (after any consistency repair), or
        ``None`` when the record was stale or a duplicate.

        Raises:
            StorageFailure: If the local store cannot be read or written.
        """
        key = record.key
        self._clock.observe(key, record.timestamp)
        loading = self.phase(key) == SyncPhase.LOADING
        if loading:
            newest = self._deferred.get(key)
            if newest is None or record.timestamp > newest.timestamp:
                self._deferred[key] = record

        written: dict[str, int] = {}
        repairs: dict[str, Collection] = {}
        with self._store.batch():
            local = self._store.read(key)
            if local is not None and record.timestamp <= local.last_modified:
                self._logger.debug(
                    "Stale record for '%s' ignored (%d <= %d).",
                    key, record.timestamp, local.last_modified,
                )
                return None
            self._store.write(key, record.data, record.timestamp)

            if self._enforcer is not None and not loading:
                repaired = self._enforcer.repair(key, record.data)
                repairs = {
                    other: data for other, data in repaired.items()
                    if other != key or data != list(record.data)
                }
                written = self._write_local(repairs)

        if not loading and key not in written:
            self._phases[key] = SyncPhase.SYNCED
        for other, timestamp in written.items():
            self._dispatch_push(other, repairs[other], timestamp)

        self._logger.info(
            "Applied remote '%s' @ %d from %s.", key, record.timestamp, record.device_id,
        )
        return repairs.get(key, list(record.data))

    # ------------------------------------------------------------------
    # Bulk operations & lifecycle
    # ------------------------------------------------------------------

    def sync_all(self) -> dict[str, SyncError]:
        """Load every known collection, retry pending pushes, enforce rules.

        Failures are logged and returned, never raised, so one broken
        collection does not stop the others.
        """
        failures: dict[str, SyncError] = {}
        for key in self._keys:
            try:
                self.load(key)
            except SyncError as exc:
                self._logger.error("Sync of '%s' failed: %s", key, exc)
                failures[key] = exc

        try:
            self.retry_pending()
        except StorageFailure as exc:
            self._logger.error("Pending pushes could not be retried: %s", exc)

        self._last_sync_time = datetime.now(timezone.utc)

        if self._enforcer is not None:
            try:
                self._enforcer.enforce()
            except StorageFailure as exc:
                self._logger.error("Consistency pass after sync failed: %s", exc)

        self._logger.info(
            "Full sync finished: %d/%d collections ok.",
            len(self._keys) - len(failures), len(self._keys),
        )
        return failures

    def close(self) -> None:
        """Unsubscribe every key and stop the push executor.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        for key in list(self._subscriptions):
            self.unsubscribe(key)
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        self._logger.info("Sync orchestrator closed.")
