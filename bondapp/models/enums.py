"""
Shared Enumerations for BondApp Models.

StrEnum values compare equal to their string equivalents, so records read
straight from JSON (``item["status"] == InventoryStatus.ASSIGNED``) work
without conversion.
"""

from __future__ import annotations

from enum import StrEnum


class CollectionKey(StrEnum):
    """The fixed set of synchronised collections.

    ``AppConfig.KNOWN_COLLECTIONS`` is derived from this enum.  A
    collection that takes part in a cross-reference also needs a rule in
    ``reference_rules``.
    """

    PERFORMANCES = "performances"
    MEMBERS = "members"
    CONTRACTS = "contracts"
    FINANCES = "finances"
    INVENTORY = "inventory"
    TASKS = "tasks"
    SCORES = "scores"
    INSTRUMENTS = "instruments"


class SyncPhase(StrEnum):
    """Per-collection lifecycle of the orchestrator.

    ``UNLOADED`` → ``LOADING`` → ``SYNCED`` ⇄ ``LOCAL_AHEAD`` ⇄
    ``REMOTE_AHEAD``.  ``PENDING_PUSH`` marks a local write whose push
    failed and is waiting for a retry.  Only ``SYNCED`` is quiescent.
    """

    UNLOADED = "UNLOADED"
    LOADING = "LOADING"
    SYNCED = "SYNCED"
    LOCAL_AHEAD = "LOCAL_AHEAD"
    REMOTE_AHEAD = "REMOTE_AHEAD"
    PENDING_PUSH = "PENDING_PUSH"


class Cardinality(StrEnum):
    """Shape of a cross-reference between two record sets."""

    MANY_TO_ONE = "MANY_TO_ONE"
    """Many forward records point at one back record, which lists them."""

    DERIVED = "DERIVED"
    """Each forward entry owns exactly one generated back record."""


class InventoryStatus(StrEnum):
    """Inventory item states."""

    AVAILABLE = "available"
    ASSIGNED = "assigned"
    REPAIR = "repair"
    LOST = "lost"


class AttendanceStatus(StrEnum):
    """Member attendance states for a performance."""

    CONFIRMED = "confirmed"
    ABSENT = "absent"
    PENDING = "pending"
