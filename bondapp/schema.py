"""
Local SQLite schema.

:func:`initialize_schema` runs on every start.  It compares the version
stored in ``schema_version`` with :data:`CURRENT_SCHEMA_VERSION` and, when
behind, upgrades inside one transaction:

* every table in :data:`_TABLES` is created if missing;
* every column added after the stored version (:data:`_ADDED_COLUMNS`) is
  added to tables that predate it.

A failed upgrade rolls back to the stored version and is retried on the
next start.  To change the schema, bump the version, edit the DDL for fresh
installs, and list new columns under the new version.

Tables
------
``local_snapshots``
    One row per ``(namespace, key)``: the JSON collection and the logical
    time it was last modified at.
``pending_pushes``
    Collections whose latest local write the remote has not accepted yet.
``app_settings``
    Installation-level values such as the device identifier.
``audit_log``
    Referential repairs made by the consistency enforcer.
"""

from __future__ import annotations

import sqlite3

from bondapp.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 2

_VERSION_TABLE = """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_TABLES: dict[str, str] = {
    "local_snapshots": """
        CREATE TABLE IF NOT EXISTS local_snapshots (
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            data TEXT NOT NULL,
            last_modified INTEGER NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (namespace, key)
        )
    """,
    "pending_pushes": """
        CREATE TABLE IF NOT EXISTS pending_pushes (
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            marked_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            PRIMARY KEY (namespace, key)
        )
    """,
    "app_settings": """
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "audit_log": """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            device_id TEXT NOT NULL,
            details TEXT DEFAULT '{}',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

# version -> [(table, column, column definition)]
_ADDED_COLUMNS: dict[int, list[tuple[str, str, str]]] = {
    2: [
        ("pending_pushes", "attempts", "INTEGER NOT NULL DEFAULT 0"),
        ("pending_pushes", "last_error", "TEXT"),
    ],
}


def _stored_version(conn: sqlite3.Connection) -> int:
    conn.execute(_VERSION_TABLE)
    conn.commit()
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return int(row[0]) if row else 0


def _columns_of(conn: sqlite3.Connection, table: str) -> set[str]:
    # Only names from _TABLES reach this f-string.
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def _upgrade(conn: sqlite3.Connection, logger: StructuredLogger, stored: int) -> None:
    """Bring the tables from *stored* to the current version.  No commit."""
    for ddl in _TABLES.values():
        conn.execute(ddl)

    for version in sorted(v for v in _ADDED_COLUMNS if v > stored):
        for table, column, definition in _ADDED_COLUMNS[version]:
            if table not in _TABLES:
                raise ValueError(f"Unknown table {table!r} in schema v{version}")
            if column in _columns_of(conn, table):
                continue
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            logger.info("Schema v%d: added %s.%s", version, table, column)

    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET
            version = excluded.version,
            applied_at = CURRENT_TIMESTAMP
        """,
        (CURRENT_SCHEMA_VERSION,),
    )


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the local schema.  Idempotent.

    Raises
    ------
    sqlite3.Error
        If the upgrade fails.  The database is left at its previous version.
    """
    stored = _stored_version(conn)
    if stored >= CURRENT_SCHEMA_VERSION:
        logger.debug("Local schema at version %d.", stored)
        return

    try:
        _upgrade(conn, logger, stored)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Schema upgrade from version %d failed; rolled back.", stored)
        raise

    logger.info("Local schema upgraded from version %d to %d.", stored, CURRENT_SCHEMA_VERSION)
