"""
Repository Layer Package.

Provides data-access abstractions over SQLite (local snapshots) and
Supabase (remote mirror).  All storage flows through repositories;
services never access db.supabase or db.sqlite directly.

Usage:
    from bondapp.repositories.snapshot_repository import SnapshotRepository
    from bondapp.repositories.remote_mirror import SupabaseRemoteMirror
"""

from bondapp.repositories.base_repository import BaseRepository
from bondapp.repositories.remote_mirror import (
    PollingSubscription,
    RemoteMirror,
    Subscription,
    SupabaseRemoteMirror,
)
from bondapp.repositories.snapshot_repository import SnapshotRepository

__all__ = [
    "BaseRepository",
    "PollingSubscription",
    "RemoteMirror",
    "SnapshotRepository",
    "Subscription",
    "SupabaseRemoteMirror",
]
