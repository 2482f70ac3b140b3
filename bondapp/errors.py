"""
Sync Layer Error Taxonomy.

``StorageFailure``
    Local persistence is unavailable.  Fatal to the single operation that
    hit it and always surfaced to the caller.
``NetworkFailure``
    The remote store is unreachable (or not configured).  Recovered locally:
    reads fall back to the last-known local snapshot and writes are marked
    for retry.
``ReferentialDrift``
    Two related collections disagree about a cross-reference.  Repaired
    silently by the consistency enforcer; the exception type only exists so
    drift can be described and logged uniformly.  It is never raised to
    the UI.

A conflict overwrite (remote newer than local) is an expected outcome of
timestamp comparison, not an error, and has no exception type.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for sync-layer failures."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        self.message: str = message
        self.key: Optional[str] = key
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)


class StorageFailure(SyncError):
    """Local persistence could not be read or written."""


class NetworkFailure(SyncError):
    """The remote mirror could not be reached."""


class ReferentialDrift(SyncError):
    """A cross-collection invariant was found violated."""

    def __init__(
        self,
        message: str,
        rule: str,
        collection: str,
        entity_id: str,
    ) -> None:
        super().__init__(message, key=collection)
        self.rule: str = rule
        self.collection: str = collection
        self.entity_id: str = entity_id
