"""
Sync Value Objects.

Pydantic models for everything that crosses a component boundary in the
sync layer: the remote record, the local snapshot, the session identity
tagging every write, and the status reported to the UI.
"""

from __future__ import annotations

from datetime import datetime
from typing import NewType, Optional

from pydantic import BaseModel, Field, JsonValue

DeviceId = NewType("DeviceId", str)
"""Opaque per-installation identifier, e.g. ``device_1717171717171_k3j9x0a2q``."""

Collection = list[JsonValue]
"""An ordered list of entity records synchronised as one unit."""


class SyncRecord(BaseModel):
    """The remote representation of one collection snapshot plus provenance.

    ``timestamp`` is assigned by the server (milliseconds since the epoch,
    strictly increasing per document).
    """

    key: str
    data: Collection = Field(default_factory=list)
    timestamp: int
    device_id: str
    owner_id: str

    model_config = {"frozen": True}


class LocalSnapshot(BaseModel):
    """A collection as persisted in the local store."""

    data: Collection = Field(default_factory=list)
    last_modified: int

    model_config = {"frozen": True}


class Session(BaseModel):
    """Identity attached to every write made by this installation.

    Immutable: built once at startup from the persisted device id and the
    configured owner, then injected into the services that need it.
    """

    owner_id: str = Field(min_length=1)
    device_id: str = Field(min_length=1)

    model_config = {"frozen": True}


class SyncStatus(BaseModel):
    """Snapshot of the sync layer reported to the UI."""

    last_sync_time: Optional[datetime] = None
    device_id: str
    online: bool
    pending: tuple[str, ...] = ()
