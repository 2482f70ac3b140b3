"""
BondApp Sync Entry Point.

Bootstraps the sync layer via constructor injection, initialises the local
SQLite schema, runs a full sync and keeps the retry worker and change
subscriptions alive until interrupted.  Screens embed the same wiring
through :func:`bondapp.services.create_services`.

Usage::

    python main.py
"""

from __future__ import annotations

import atexit
import sys
import threading
from pathlib import Path
from typing import Callable

from bondapp.config import get_config
from bondapp.database import DatabaseManager
from bondapp.logger import StructuredLogger, get_logger
from bondapp.models.sync_models import Collection
from bondapp.schema import initialize_schema
from bondapp.services import create_services


def main() -> None:
    """Application entry point: wire dependencies and keep the sync running."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting BondApp sync...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (offline-first: Supabase optional, SQLite always)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=Path(config.SQLITE_PATH),
        logger=StructuredLogger(name="database"),
    )
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. SQLite Schema Initialization (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    # ------------------------------------------------------------------
    # 4. Service Container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(db=db, config=config)
    orchestrator = services["sync_orchestrator"]
    worker = services["sync_worker_service"]
    logger.info("Device id: %s", services["session"].device_id)

    # ------------------------------------------------------------------
    # 5. Initial reconciliation, then background sync
    # ------------------------------------------------------------------
    failures = orchestrator.sync_all()
    if failures:
        logger.warning("Collections not synchronised: %s", ", ".join(sorted(failures)))

    for key in orchestrator.keys:
        orchestrator.subscribe(key, _change_logger(logger, key))
    worker.start()

    stop = threading.Event()
    try:
        stop.wait()
    except KeyboardInterrupt:
        pass
    finally:
        worker.stop()
        orchestrator.close()
        unsent = db.get_pending_push_count()
        if unsent:
            logger.warning("%d collection(s) not yet pushed; they go out on next start.", unsent)
        db.close()
        logger.info("BondApp sync shut down.")


def _change_logger(logger: StructuredLogger, key: str) -> Callable[[Collection], None]:
    def _on_change(data: Collection) -> None:
        logger.info("Peer update applied to %s (%d records).", key, len(data))
    return _on_change


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception:
        get_logger("main").critical("Fatal error during startup.", exc_info=True)
        sys.exit(1)
