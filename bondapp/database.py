"""
Connections shared by the local store and the remote mirror.

A device always has a local SQLite file: it holds the collection
snapshots, the pending-push queue, the device identity and the audit
trail, and every save lands there before anything touches the network.

The Supabase client is optional.  Without credentials the device runs
local-only; the remote mirror then fails every call with
:class:`~bondapp.errors.NetworkFailure` and the orchestrator treats that
exactly like being offline.

Repositories never open connections themselves.  They receive one
:class:`DatabaseManager` built at startup::

    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=Path(config.SQLITE_PATH),
        logger=StructuredLogger(name="database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from supabase import Client as SupabaseClient
from supabase import create_client

from bondapp.errors import NetworkFailure
from bondapp.logger import StructuredLogger


def _create_remote_client(
    url: str, key: str, logger: StructuredLogger
) -> Optional[SupabaseClient]:
    """Build the Supabase client, or return ``None`` to run local-only."""
    if not (url and key):
        logger.warning("No Supabase credentials; this device syncs nowhere.")
        return None
    try:
        client = create_client(url, key)
    except (ValueError, TypeError) as exc:
        logger.warning("Rejected Supabase credentials (%s); running local-only.", exc)
        return None
    except Exception as exc:
        logger.error(
            "Supabase client could not be created (%s); running local-only.",
            exc,
            exc_info=True,
        )
        return None
    logger.info("Remote mirror available at %s", url)
    return client


def _open_local(path: Path, logger: StructuredLogger) -> sqlite3.Connection:
    """Open the SQLite file shared by every thread of this process.

    Raises
    ------
    PermissionError
        With a message naming *path* when the OS refuses access.
    """
    try:
        conn = sqlite3.connect(str(path), check_same_thread=False)
    except PermissionError as exc:
        message = (
            f"The local collection store '{path}' is read-only or locked by "
            "another process."
        )
        logger.error(message)
        raise PermissionError(message) from exc
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    logger.info("Local collection store opened at %s", path)
    return conn


class DatabaseManager:
    """Owner of the SQLite connection and the optional Supabase client.

    The single SQLite connection is used from the caller's thread, the push
    executor and the subscription pollers alike, so all access goes through
    :attr:`write_lock`.

    Parameters
    ----------
    supabase_url, supabase_key:
        Supabase project URL and anon key.  Either may be empty.
    sqlite_path:
        Database file, or ``:memory:``.  The parent directory must exist.
    logger:
        Structured logger.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Path,
        logger: StructuredLogger,
    ) -> None:
        self._logger = logger
        self._supabase_url = supabase_url
        self._write_lock = threading.RLock()
        self._batch_depth = 0
        self._supabase = _create_remote_client(supabase_url, supabase_key, logger)
        self._sqlite_conn = _open_local(sqlite_path, logger)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @property
    def supabase(self) -> SupabaseClient:
        """The Supabase client.

        Raises
        ------
        NetworkFailure
            When the device runs local-only.
        """
        if self._supabase is None:
            raise NetworkFailure("No remote mirror is configured for this device.")
        return self._supabase

    @property
    def supabase_url(self) -> str:
        return self._supabase_url

    @property
    def has_remote(self) -> bool:
        return self._supabase is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._sqlite_conn

    @property
    def write_lock(self) -> threading.RLock:
        """Re-entrant lock held around every SQLite statement and commit."""
        return self._write_lock

    # ------------------------------------------------------------------
    # Grouped writes
    # ------------------------------------------------------------------

    @property
    def in_batch(self) -> bool:
        """``True`` inside :meth:`batch_write`; repositories then skip commits."""
        return self._batch_depth > 0

    @contextmanager
    def batch_write(self) -> Generator[None, None, None]:
        """Commit everything written inside the block at once, or nothing.

        A consistency repair that rewrites several collections runs inside
        one of these.  Nested blocks join the outermost one.  The lock is
        held for the whole block, so no other thread interleaves writes.
        """
        with self._write_lock:
            self._batch_depth += 1
            outermost = self._batch_depth == 1
            try:
                yield
                if outermost:
                    self._sqlite_conn.commit()
            except Exception:
                if outermost:
                    self._logger.error("Grouped write failed; rolling back.", exc_info=True)
                    self._sqlite_conn.rollback()
                raise
            finally:
                self._batch_depth -= 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def get_pending_push_count(self) -> int:
        """Collections whose last local write has not reached the mirror.

        ``0`` if the queue cannot be read, e.g. before the schema exists.
        """
        with self._write_lock:
            try:
                (count,) = self._sqlite_conn.execute(
                    "SELECT COUNT(*) FROM pending_pushes"
                ).fetchone()
            except sqlite3.Error:
                self._logger.debug("Pending-push queue unreadable.", exc_info=True)
                return 0
        return int(count)

    def close(self) -> None:
        """Close the SQLite connection.  Idempotent."""
        with self._write_lock:
            try:
                self._sqlite_conn.close()
            except sqlite3.ProgrammingError:
                return
        self._logger.info("Local collection store closed.")
