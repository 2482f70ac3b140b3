"""
Remote Mirror Repository.

One document per ``(owner_id, key)`` in the Supabase table
``bondapp_sync`` holds the latest accepted snapshot of each collection::

    {owner_id, key, data: jsonb, timestamp: bigint, device_id}

Writes go through the ``push_sync_record`` Postgres function, which assigns
the timestamp server-side as
``greatest(now_ms, previous + 1, writer_timestamp)``, so the value is
strictly increasing per document and never behind the writer's clock (see
``supabase/migrations/0001_bondapp_sync.sql``).

Change delivery
---------------
The synchronous Supabase client has no realtime channel, so
:class:`SupabaseRemoteMirror` delivers changes by polling each subscribed
document on a daemon thread.  Every record newer than the last one seen is
handed to the callback, including this device's own writes; filtering
echoes is the caller's job.  Records superseded between two polls are
coalesced into the newest one, which is indistinguishable under
last-write-wins apply.

Failure model
-------------
Nothing here retries.  Any Supabase or transport error, and offline mode
itself, surfaces as :class:`~bondapp.errors.NetworkFailure`.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from bondapp.database import DatabaseManager
from bondapp.errors import NetworkFailure
from bondapp.logger import StructuredLogger
from bondapp.models.sync_models import Collection, SyncRecord
from bondapp.repositories.base_repository import BaseRepository
from bondapp.utils.general import convert_to_json_safe

RecordCallback = Callable[[SyncRecord], None]


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

@runtime_checkable
class Subscription(Protocol):
    """Handle returned by :meth:`RemoteMirror.subscribe`."""

    @property
    def active(self) -> bool:
        """``True`` until :meth:`unsubscribe` has been called."""
        ...

    def unsubscribe(self) -> None:
        """Stop delivery and release resources.  Idempotent."""
        ...


@runtime_checkable
class RemoteMirror(Protocol):
    """Per-collection document store used by the orchestrator.

    Structural so tests can substitute an in-memory mirror without
    inheriting from anything.
    """

    def pull(self, key: str) -> Optional[SyncRecord]:
        """Return the current remote record for *key*, or ``None``."""
        ...

    def push(
        self,
        key: str,
        data: Collection,
        device_id: str,
        owner_id: str,
        min_timestamp: int = 0,
    ) -> int:
        """Write a new record and return its server-assigned timestamp.

        The timestamp is at least *min_timestamp* (the writer's own
        logical time), so it never orders before the write it records.
        """
        ...

    def subscribe(self, key: str, on_record: RecordCallback) -> Subscription:
        """Deliver every record written to *key* from now on."""
        ...


# ---------------------------------------------------------------------------
# Supabase adapter
# ---------------------------------------------------------------------------

class SupabaseRemoteMirror(BaseRepository):
    """Supabase implementation of :class:`RemoteMirror`.

    Parameters
    ----------
    db:
        ``DatabaseManager`` providing the (optional) Supabase client.
    logger:
        Structured logger.
    owner_id:
        Owner whose documents this mirror reads and subscribes to.
    table:
        Name of the sync table.
    push_function:
        Name of the Postgres function assigning timestamps.
    poll_interval_s:
        Seconds between polls of a subscribed document.
    """

    _COLUMNS: str = "key, data, timestamp, device_id, owner_id"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        owner_id: str,
        table: str = "bondapp_sync",
        push_function: str = "push_sync_record",
        poll_interval_s: float = 5.0,
    ) -> None:
        super().__init__(db, logger)
        self.TABLE = table
        self._owner_id: str = owner_id
        self._push_function: str = push_function
        self._poll_interval_s: float = poll_interval_s

    # ------------------------------------------------------------------
    # RemoteMirror API
    # ------------------------------------------------------------------

    def pull(self, key: str) -> Optional[SyncRecord]:
        """Fetch the current record for *key*.

        Raises:
            NetworkFailure: If Supabase is unreachable or not configured.
        """
        try:
            response = (
                self.supabase.table(self.TABLE)
                .select(self._COLUMNS)
                .eq("owner_id", self._owner_id)
                .eq("key", key)
                .limit(1)
                .execute()
            )
        except NetworkFailure:
            raise
        except Exception as exc:
            raise NetworkFailure(
                f"Failed to pull '{key}': {exc}", key=key, original_error=exc,
            ) from exc

        rows = response.data or []
        if not rows:
            return None

        try:
            return SyncRecord(**rows[0])
        except ValidationError as exc:
            raise NetworkFailure(
                f"Malformed remote record for '{key}': {exc}", key=key, original_error=exc,
            ) from exc

    def push(
        self,
        key: str,
        data: Collection,
        device_id: str,
        owner_id: str,
        min_timestamp: int = 0,
    ) -> int:
        """Write *data* as the new record for *key*; return its timestamp.

        Raises:
            NetworkFailure: If Supabase is unreachable, not configured, or
                returns no timestamp.
        """
        params = {
            "p_owner_id": owner_id,
            "p_key": key,
            "p_data": convert_to_json_safe(data),
            "p_device_id": device_id,
            "p_min_timestamp": int(min_timestamp),
        }
        try:
            response = self.supabase.rpc(self._push_function, params).execute()
        except NetworkFailure:
            raise
        except Exception as exc:
            raise NetworkFailure(
                f"Failed to push '{key}': {exc}", key=key, original_error=exc,
            ) from exc

        timestamp = _parse_timestamp(response.data)
        if timestamp is None:
            raise NetworkFailure(
                f"Push of '{key}' returned no timestamp: {response.data!r}", key=key,
            )

        self._logger.debug("Pushed %s @ %d", key, timestamp)
        return timestamp

    def subscribe(self, key: str, on_record: RecordCallback) -> "PollingSubscription":
        """Start a polling subscription for *key*.  Never blocks."""
        subscription = PollingSubscription(
            key=key,
            fetch=self.pull,
            on_record=on_record,
            interval_s=self._poll_interval_s,
            logger=self._logger,
        )
        subscription.start()
        return subscription


def _parse_timestamp(payload: object) -> Optional[int]:
    """Extract the timestamp from an RPC response body.

    PostgREST returns a scalar function result as a bare value, but older
    deployments wrap it as ``[{"push_sync_record": n}]`` or ``{"timestamp": n}``.
    """
    if isinstance(payload, list):
        return _parse_timestamp(payload[0]) if payload else None
    if isinstance(payload, dict):
        for value in payload.values():
            return _parse_timestamp(value)
        return None
    if isinstance(payload, bool):
        return None
    if isinstance(payload, (int, float)):
        return int(payload)
    if isinstance(payload, str) and payload.strip().isdigit():
        return int(payload.strip())
    return None


# ---------------------------------------------------------------------------
# Polling subscription
# ---------------------------------------------------------------------------

class PollingSubscription:
    """Daemon thread that polls one document and reports new records.

    The first successful poll only establishes a baseline, so records
    written before the subscription started are not replayed.  If that
    first poll fails, the next successful one delivers whatever is current
    (at-least-once).
    """

    def __init__(
        self,
        key: str,
        fetch: Callable[[str], Optional[SyncRecord]],
        on_record: RecordCallback,
        interval_s: float,
        logger: StructuredLogger,
    ) -> None:
        self._key = key
        self._fetch = fetch
        self._on_record = on_record
        self._interval_s = interval_s
        self._logger = logger
        self._stop_event: threading.Event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_timestamp: Optional[int] = None
        self._baseline_taken: bool = False

    @property
    def active(self) -> bool:
        return not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"Subscription-{self._key}",
            daemon=True,
        )
        self._thread.start()
        self._logger.debug("Subscription started: %s", self._key)

    def unsubscribe(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._interval_s + 5.0)
        self._logger.debug("Subscription stopped: %s", self._key)

    # ------------------------------------------------------------------
    # Core loop
    # ------------------------------------------------------------------

    def _run_loop(self) -> None:
        try:
            self._poll_once()
            while not self._stop_event.wait(timeout=self._interval_s):
                self._poll_once()
        except Exception:
            self._logger.error(
                "Subscription thread for '%s' terminated due to unhandled exception.",
                self._key,
                exc_info=True,
            )

    def _poll_once(self) -> None:
        try:
            record = self._fetch(self._key)
        except NetworkFailure as exc:
            self._logger.debug("Poll of '%s' failed: %s", self._key, exc)
            # A failed first poll leaves an empty baseline.
            self._baseline_taken = True
            return

        if not self._baseline_taken:
            self._baseline_taken = True
            self._last_timestamp = record.timestamp if record is not None else None
            return

        if record is None:
            return
        if self._last_timestamp is not None and record.timestamp <= self._last_timestamp:
            return

        self._last_timestamp = record.timestamp
        if self._stop_event.is_set():
            return
        try:
            self._on_record(record)
        except Exception:
            self._logger.error(
                "Subscriber callback for '%s' raised.", self._key, exc_info=True,
            )
