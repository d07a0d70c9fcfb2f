# =============================================================================
# skilllab_core/offline/__init__.py
# Offline-First Sync Layer
# =============================================================================
"""
Offline-first sync layer for the SkillLab attendance tracker.

Components:
- LocalCacheStore: quota-limited local key-value cache
- ConnectionManager: tracks whether Supabase is reachable
- SyncReconciler: last-write-wins merge of local and remote snapshots
- DataAccessService: the single API the UI talks to

Usage:
------
from skilllab_core.offline.data_access import DataAccessService

service = DataAccessService.from_settings(load_settings())
service.initialize()
students = service.get_students()
"""

from skilllab_core.offline.connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
)

from skilllab_core.offline.local_cache import (
    LocalCacheStore,
    StorageKeys,
)

from skilllab_core.offline.reconciler import (
    SyncReconciler,
    CollectionState,
    ReconcileResult,
)

from skilllab_core.offline.migrations import (
    MigrationResult,
    run_unit_backfill,
)

__all__ = [
    # Connection Management
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    # Local Cache
    "LocalCacheStore",
    "StorageKeys",
    # Reconciliation
    "SyncReconciler",
    "CollectionState",
    "ReconcileResult",
    # Migrations
    "MigrationResult",
    "run_unit_backfill",
]
