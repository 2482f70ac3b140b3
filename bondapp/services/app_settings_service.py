"""
Per-installation settings.

Values in ``app_settings`` describe this device (its id, for now) and are
never synchronised, so they live beside the snapshot store rather than in
it.  Lookups and writes report failure through their return value and a
log line; :class:`~bondapp.services.device_identity.DeviceIdentityService`
decides what a missing value means.
"""

from __future__ import annotations

import sqlite3
from typing import Optional

from bondapp.database import DatabaseManager
from bondapp.logger import StructuredLogger
from bondapp.services.base_service import BaseService

DEVICE_ID_SETTING: str = "device_id"

_UPSERT = """
    INSERT INTO app_settings (key, value) VALUES (?, ?)
    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
"""


class AppSettingsService(BaseService):
    """String settings keyed by name, stored in local SQLite."""

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._db = db

    def get(self, key: str) -> Optional[str]:
        """Return the value of *key*, or ``None`` if unset or unreadable."""
        try:
            with self._db.write_lock:
                row = self._db.sqlite.execute(
                    "SELECT value FROM app_settings WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as exc:
            self._logger.warning("Setting '%s' unreadable: %s", key, exc)
            return None
        return None if row is None else row["value"]

    def set(self, key: str, value: str) -> bool:
        """Store *value* under *key*; ``False`` if the write failed."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(_UPSERT, (key, value))
                if not self._db.in_batch:
                    self._db.sqlite.commit()
        except sqlite3.Error as exc:
            self._logger.error("Setting '%s' not stored: %s", key, exc)
            return False
        self._logger.debug("Setting '%s' stored.", key)
        return True

    def get_device_id(self) -> Optional[str]:
        return self.get(DEVICE_ID_SETTING)

    def set_device_id(self, device_id: str) -> bool:
        return self.set(DEVICE_ID_SETTING, device_id)
