"""Common plumbing for the local store and the remote mirror."""

from __future__ import annotations

import sqlite3

from supabase import Client as SupabaseClient

from bondapp.database import DatabaseManager
from bondapp.logger import StructuredLogger


class BaseRepository:
    """Holds the injected ``DatabaseManager`` and logger.

    Subclasses name their table in ``TABLE``.
    """

    TABLE: str = ""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def supabase(self) -> SupabaseClient:
        """Raises ``NetworkFailure`` when the device runs local-only."""
        return self._db.supabase

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._db.sqlite

    def _commit(self) -> None:
        # Inside batch_write the outermost block commits.
        if not self._db.in_batch:
            self.sqlite.commit()
