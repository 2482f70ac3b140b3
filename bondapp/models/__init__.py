"""
Data Models Package.

Re-exports the sync value objects and enumerations:
    from bondapp.models import SyncRecord, LocalSnapshot, Session, SyncStatus
    from bondapp.models import CollectionKey, SyncPhase
"""

from bondapp.models.enums import (
    AttendanceStatus,
    Cardinality,
    CollectionKey,
    InventoryStatus,
    SyncPhase,
)
from bondapp.models.ensemble import ContractFile, DerivedContract, PerformanceHeader
from bondapp.models.sync_models import (
    Collection,
    DeviceId,
    LocalSnapshot,
    Session,
    SyncRecord,
    SyncStatus,
)

__all__ = [
    "AttendanceStatus",
    "Cardinality",
    "Collection",
    "CollectionKey",
    "ContractFile",
    "DerivedContract",
    "DeviceId",
    "InventoryStatus",
    "LocalSnapshot",
    "PerformanceHeader",
    "Session",
    "SyncPhase",
    "SyncRecord",
    "SyncStatus",
]
