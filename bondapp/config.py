"""
Sync-layer settings, read from the environment and an optional ``.env``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import ClassVar, Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings

from bondapp.models.enums import CollectionKey


class AppConfig(BaseSettings):
    """Settings for one device. Every field can be overridden by an env var."""

    # --- Supabase (remote authoritative store) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    SYNC_TABLE: str = "bondapp_sync"
    SYNC_PUSH_FUNCTION: str = "push_sync_record"

    # --- Identity ---
    # Single-ensemble deployment: every device writes under one owner.
    OWNER_ID: str = "admin"

    # --- Local persistence ---
    SQLITE_PATH: str = "bondapp_local.db"
    STORAGE_NAMESPACE: str = "bondapp"

    # --- Synchronised collections ---
    # ClassVar so pydantic-settings does not try to load it from the env.
    KNOWN_COLLECTIONS: ClassVar[tuple[str, ...]] = tuple(key.value for key in CollectionKey)

    # --- Change feed / retry ---
    SUBSCRIPTION_POLL_INTERVAL_S: float = Field(default=5.0, gt=0)
    RETRY_BASE_INTERVAL_S: float = Field(default=30.0, gt=0)
    RETRY_MAX_INTERVAL_S: float = Field(default=300.0, gt=0)

    # --- Connectivity check ---
    CONNECTIVITY_CHECK_TIMEOUT_S: float = 3.0
    CONNECTIVITY_CACHE_S: float = 15.0

    # --- Logging ---
    LOG_FILE: str = "bondapp.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _check_sync_settings(self) -> "AppConfig":
        """Reject inverted retry bounds; warn when this device cannot sync."""
        if self.RETRY_MAX_INTERVAL_S < self.RETRY_BASE_INTERVAL_S:
            raise ValueError("RETRY_MAX_INTERVAL_S must be >= RETRY_BASE_INTERVAL_S")

        if not (self.SUPABASE_URL and self.SUPABASE_ANON_KEY.get_secret_value()):
            logging.getLogger("bondapp.config").warning(
                "No Supabase project configured (.env %s); collections stay on "
                "this device until SUPABASE_URL and SUPABASE_ANON_KEY are set.",
                "present" if Path(".env").exists() else "missing",
            )
        return self


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Process-wide ``AppConfig``, built on first use.

    Services receive their config explicitly; this exists for the logger,
    which is created before anything is wired.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
