"""
Local Snapshot Repository (the LocalStore).

Key/value persistence of whole-collection snapshots in the local SQLite
database.  Each row holds the JSON-serialised collection and the logical
timestamp it was last modified at.  Writes overwrite unconditionally:
deciding *whether* to overwrite is the orchestrator's job.  The stored
timestamp is the larger of the new and the previous one, so
``last_modified`` never moves backward.

The repository also keeps the set of collections whose latest local write
has not reached the remote mirror (``pending_pushes``).  That table plays
the role of an outbound sync queue, so retries survive a restart.

Every failure is raised as :class:`~bondapp.errors.StorageFailure`; nothing
is swallowed at this layer.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from pydantic import ValidationError

from bondapp.database import DatabaseManager
from bondapp.errors import StorageFailure
from bondapp.logger import StructuredLogger
from bondapp.models.sync_models import Collection, LocalSnapshot
from bondapp.repositories.base_repository import BaseRepository
from bondapp.utils.general import convert_to_json_safe


class SnapshotRepository(BaseRepository):
    """Namespaced store of :class:`LocalSnapshot` values.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager``; the schema must already exist.
    logger:
        Structured logger.
    namespace:
        Prefix isolating this application's keys inside the database.
    """

    TABLE = "local_snapshots"

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        namespace: str = "bondapp",
    ) -> None:
        super().__init__(db, logger)
        self._namespace: str = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def read(self, key: str) -> Optional[LocalSnapshot]:
        """Return the stored snapshot for *key*, or ``None`` if absent.

        Raises:
            StorageFailure: If the database cannot be queried or the stored
                payload is corrupt.
        """
        try:
            with self._db.write_lock:
                row = self.sqlite.execute(
                    f"""
                    SELECT data, last_modified FROM {self.TABLE}
                    WHERE namespace = ? AND key = ?
                    """,
                    (self._namespace, key),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(
                f"Failed to read local snapshot '{key}': {exc}", key=key, original_error=exc,
            ) from exc

        if row is None:
            return None

        try:
            return LocalSnapshot(
                data=json.loads(row["data"]),
                last_modified=int(row["last_modified"]),
            )
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise StorageFailure(
                f"Corrupt local snapshot '{key}': {exc}", key=key, original_error=exc,
            ) from exc

    def write(self, key: str, data: Collection, timestamp: int) -> None:
        """Persist *data* as the snapshot for *key*, stamped *timestamp*.

        Overwrites any existing snapshot's data; the stored timestamp is
        ``max(timestamp, previous)``.  Committed before returning unless a
        batch is active, in which case the batch commits it.

        Raises:
            StorageFailure: If the data cannot be serialised or stored.
        """
        try:
            payload = json.dumps(convert_to_json_safe(data), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StorageFailure(
                f"Collection '{key}' is not serialisable: {exc}", key=key, original_error=exc,
            ) from exc

        try:
            with self._db.write_lock:
                self.sqlite.execute(
                    f"""
                    INSERT INTO {self.TABLE} (namespace, key, data, last_modified)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        data          = excluded.data,
                        last_modified = MAX(excluded.last_modified, {self.TABLE}.last_modified),
                        updated_at    = CURRENT_TIMESTAMP
                    """,
                    (self._namespace, key, payload, int(timestamp)),
                )
                self._commit()
        except sqlite3.Error as exc:
            raise StorageFailure(
                f"Failed to write local snapshot '{key}': {exc}", key=key, original_error=exc,
            ) from exc

        self._logger.debug("Local snapshot written: %s @ %d", key, timestamp)

    def keys(self) -> list[str]:
        """Return every key with a stored snapshot in this namespace."""
        try:
            with self._db.write_lock:
                rows = self.sqlite.execute(
                    f"SELECT key FROM {self.TABLE} WHERE namespace = ? ORDER BY key",
                    (self._namespace,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to list local snapshots: {exc}", original_error=exc) from exc
        return [row["key"] for row in rows]

    def promote(self, key: str, expected: int, timestamp: int) -> bool:
        """Raise the timestamp of *key* to *timestamp* if it still equals *expected*.

        Used once the remote has accepted a write: the snapshot takes the
        server-assigned timestamp, unless a newer local write replaced it
        in the meantime.  Returns ``True`` when the row was updated.
        """
        try:
            with self._db.write_lock:
                cursor = self.sqlite.execute(
                    f"""
                    UPDATE {self.TABLE}
                    SET last_modified = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE namespace = ? AND key = ?
                      AND last_modified = ? AND last_modified < ?
                    """,
                    (int(timestamp), self._namespace, key, int(expected), int(timestamp)),
                )
                self._commit()
        except sqlite3.Error as exc:
            raise StorageFailure(
                f"Failed to promote local snapshot '{key}': {exc}", key=key, original_error=exc,
            ) from exc
        return cursor.rowcount > 0

    @contextmanager
    def batch(self) -> Generator[None, None, None]:
        """Group several writes into one transaction (see ``batch_write``).

        Raises:
            StorageFailure: If the grouped commit fails.
        """
        try:
            with self._db.batch_write():
                yield
        except sqlite3.Error as exc:
            raise StorageFailure(f"Batch write failed: {exc}", original_error=exc) from exc

    # ------------------------------------------------------------------
    # Pending pushes
    # ------------------------------------------------------------------

    def mark_pending(self, key: str, error_message: Optional[str] = None) -> None:
        """Record that *key* has a local write the remote has not accepted."""
        try:
            with self._db.write_lock:
                self.sqlite.execute(
                    """
                    INSERT INTO pending_pushes (namespace, key, attempts, last_error)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET
                        attempts   = pending_pushes.attempts + 1,
                        last_error = excluded.last_error
                    """,
                    (self._namespace, key, error_message),
                )
                self._commit()
        except sqlite3.Error as exc:
            raise StorageFailure(
                f"Failed to mark '{key}' as pending push: {exc}", key=key, original_error=exc,
            ) from exc
        self._logger.info("Queued pending push: %s", key)

    def clear_pending(self, key: str) -> None:
        """Forget the pending-push mark for *key* (no-op when absent)."""
        try:
            with self._db.write_lock:
                self.sqlite.execute(
                    "DELETE FROM pending_pushes WHERE namespace = ? AND key = ?",
                    (self._namespace, key),
                )
                self._commit()
        except sqlite3.Error as exc:
            raise StorageFailure(
                f"Failed to clear pending push for '{key}': {exc}", key=key, original_error=exc,
            ) from exc

    def pending_keys(self) -> list[str]:
        """Return keys waiting for a push, oldest mark first."""
        try:
            with self._db.write_lock:
                rows = self.sqlite.execute(
                    """
                    SELECT key FROM pending_pushes
                    WHERE namespace = ?
                    ORDER BY marked_at ASC, key ASC
                    """,
                    (self._namespace,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to list pending pushes: {exc}", original_error=exc) from exc
        return [row["key"] for row in rows]
