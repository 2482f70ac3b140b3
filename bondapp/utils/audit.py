"""
Audit trail for changes the sync layer makes on the user's behalf.

A referential repair edits a collection nobody asked to edit.  Each one
is emitted as a JSON log line and, given a connection, stored in
``audit_log`` so a device can later show what was changed and why.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from bondapp.logger import StructuredLogger

__all__ = ["AuditEvent", "log_audit_event", "persist_audit_event"]

DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """One audit entry; ``entity_type`` is the collection key."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    action: str
    entity_type: str
    entity_id: str
    device_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)

    def as_row(self) -> tuple[str, str, str, str, str, str]:
        return (
            self.timestamp,
            self.action,
            self.entity_type,
            self.entity_id,
            self.device_id,
            json.dumps(self.details, default=str),
        )


def persist_audit_event(conn: sqlite3.Connection, event: AuditEvent) -> None:
    """Insert *event* into ``audit_log`` without committing.

    The row joins whatever transaction is open, normally the batch that
    writes the repaired collections.
    """
    conn.execute(
        "INSERT INTO audit_log "
        "(timestamp, action, entity_type, entity_id, device_id, details) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        event.as_row(),
    )


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    device_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> AuditEvent:
    """Log an audit event and, if *conn* is given, persist it.

    A failed insert is logged as a warning; the change being audited has
    already happened and is not undone.
    """
    event = AuditEvent(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        device_id=device_id,
        details=details or {},
    )
    logger.info(
        "AUDIT %s %s/%s", action, entity_type, entity_id,
        extra={"key": entity_type, "device_id": device_id, "audit": event.model_dump_json()},
    )

    if conn is not None:
        try:
            persist_audit_event(conn, event)
        except sqlite3.Error as exc:
            logger.warning("Audit row for %s/%s not stored: %s", entity_type, entity_id, exc)
    return event
