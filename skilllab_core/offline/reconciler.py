# =============================================================================
# skilllab_core/offline/reconciler.py
# Last-Write-Wins Reconciliation between the local cache and Supabase
# =============================================================================
"""
SyncReconciler - merges local and remote snapshots of a collection.

Features:
- Last-write-wins merge keyed by record id (ties go to the remote copy)
- Per-collection state machine: EMPTY -> LOCAL_LOADED -> MERGING -> READY
- Retry queue of ids whose remote write has not been acknowledged
- Deletion tombstones so a stale remote copy does not resurrect a deleted record
- Best-effort write-back of the merged collection to the local cache
"""

from __future__ import annotations
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

from skilllab_core.errors import RemoteUnavailableError
from skilllab_core.models.records import Collection
from skilllab_core.offline.local_cache import LocalCacheStore, StorageKeys
from skilllab_core.services.base_service import BaseService


if TYPE_CHECKING:
    from skilllab_core.data.supabase_client import RemoteCollection, RemoteSnapshot

# Bare digit strings shorter than this are years ("2024"), not epoch ms
EPOCH_MS_PATTERN = re.compile(r"^-?\d{5,}(\.\d+)?$")


class CollectionState(Enum):
    """Lifecycle of one collection in memory."""
    EMPTY = "empty"
    LOCAL_LOADED = "local_loaded"
    MERGING = "merging"
    READY = "ready"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass."""
    collection: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    source: str = "local"           # local, remote or delta
    retry_ids: List[str] = field(default_factory=list)
    dropped_ids: List[str] = field(default_factory=list)
    persisted: bool = True


def timestamp_ms(value: Any) -> float:
    """
    Convert an ISO-8601 string or epoch-millisecond number to milliseconds.

    Missing or unparseable values map to 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return 0.0 if math.isnan(value) else float(value)
    if isinstance(value, datetime):
        value = value.isoformat()

    text = str(value).strip()
    if not text:
        return 0.0
    if EPOCH_MS_PATTERN.match(text):
        return float(text)
    try:
        ts = pd.Timestamp(text)
    except (ValueError, TypeError, OverflowError):
        return 0.0
    if pd.isna(ts):
        return 0.0
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.value / 1_000_000


def record_timestamp(record: Mapping[str, Any], timestamp_field: str) -> float:
    """Timestamp of a record, falling back to the other timestamp field."""
    fallback = "timestamp" if timestamp_field == "updatedAt" else "updatedAt"
    value = record.get(timestamp_field)
    if value in (None, ""):
        value = record.get(fallback)
    return timestamp_ms(value)


def _key(collection: Union[Collection, str]) -> str:
    return collection.value if isinstance(collection, Collection) else collection


class SyncReconciler(BaseService):
    """
    Merge engine for local and remote record sets.

    Usage:
        reconciler = SyncReconciler(cache)
        local = reconciler.load_local(Collection.STUDENTS)
        result = reconciler.sync_collection(Collection.STUDENTS, remote.collection(Collection.STUDENTS), local)
        students = result.records
    """

    def __init__(self, cache: LocalCacheStore):
        super().__init__()
        self.cache = cache
        self._states: Dict[str, CollectionState] = {c.value: CollectionState.EMPTY for c in Collection}
        self._lock = threading.RLock()

        # In-memory copies are authoritative; the cache only mirrors them
        self._retry: Dict[str, List[str]] = {
            name: list(ids) for name, ids in cache.get_mapping(StorageKeys.RETRY_QUEUE).items()
        }
        self._tombstones: Dict[str, Dict[str, float]] = {
            name: dict(entries) for name, entries in cache.get_mapping(StorageKeys.TOMBSTONES).items()
        }

    # =========================================================================
    # STATE
    # =========================================================================

    def get_state(self, collection: Union[Collection, str]) -> CollectionState:
        return self._states.get(_key(collection), CollectionState.EMPTY)

    def _set_state(self, collection: str, state: CollectionState) -> None:
        old = self._states.get(collection, CollectionState.EMPTY)
        self._states[collection] = state
        if old != state:
            self.logger.debug(f"{collection}: {old.value} -> {state.value}")

    def reset(self) -> None:
        """Forget states, retry queue and tombstones (memory and cache)."""
        with self._lock:
            for name in self._states:
                self._states[name] = CollectionState.EMPTY
            self._retry = {}
            self._tombstones = {}
            self._save_retry_queue()
            self._save_tombstones()

    # =========================================================================
    # MERGE
    # =========================================================================

    @staticmethod
    def merge_records(
        local: Iterable[Mapping[str, Any]],
        remote: Iterable[Mapping[str, Any]],
        timestamp_field: str,
        tombstones: Optional[Mapping[str, float]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Merge two record lists by id with last-write-wins.

        Local order is kept; remote-only records are appended. When both sides
        carry an id, the remote copy replaces the local one unless the local
        timestamp is strictly greater. Remote records deleted locally at or
        after their own timestamp are dropped.
        """
        tombstones = tombstones or {}
        merged: Dict[str, Dict[str, Any]] = {}

        for record in local:
            record_id = record.get("id")
            if record_id:
                merged[record_id] = dict(record)

        for record in remote:
            record_id = record.get("id")
            if not record_id:
                continue
            remote_ts = record_timestamp(record, timestamp_field)
            deleted_at = tombstones.get(record_id)
            if deleted_at is not None and deleted_at >= remote_ts:
                continue
            existing = merged.get(record_id)
            if existing is None or remote_ts >= record_timestamp(existing, timestamp_field):
                merged[record_id] = dict(record)

        return list(merged.values())

    # =========================================================================
    # LOCAL SIDE
    # =========================================================================

    def load_local(self, collection: Union[Collection, str]) -> List[Dict[str, Any]]:
        """Read a collection from the cache and mark it LOCAL_LOADED."""
        name = _key(collection)
        records = self.cache.get(name)
        with self._lock:
            if self.get_state(name) == CollectionState.EMPTY:
                self._set_state(name, CollectionState.LOCAL_LOADED)
        self.logger.debug(f"Loaded {len(records)} {name} from local cache")
        return records

    def persist(self, collection: Union[Collection, str], records: List[Dict[str, Any]]) -> bool:
        """Best-effort write-back; a refused write is logged and ignored."""
        name = _key(collection)
        if not self.cache.set(name, records):
            self.logger.warning(f"Could not persist {name} to local cache - keeping in memory only")
            return False
        return True

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    def reconcile(
        self,
        collection: Union[Collection, str],
        local: List[Dict[str, Any]],
        snapshot: Optional["RemoteSnapshot"],
    ) -> ReconcileResult:
        """
        Merge a remote snapshot into the local records.

        Args:
            collection: Collection being reconciled
            local: Current local records (in-memory or freshly loaded)
            snapshot: Remote snapshot, or None when the remote was unavailable

        Returns:
            ReconcileResult with the merged records
        """
        name = _key(collection)
        timestamp_field = Collection(name).timestamp_field

        with self._lock:
            self._set_state(name, CollectionState.MERGING)

            if snapshot is None:
                self._set_state(name, CollectionState.READY)
                return ReconcileResult(
                    collection=name,
                    records=list(local),
                    source="local",
                    retry_ids=self.pending_retry(name),
                )

            if not snapshot.is_delta and not snapshot.records and local:
                self.logger.info(
                    f"Remote {name} is empty but {len(local)} local records exist - keeping local data"
                )

            tombstones = self.tombstones(name)
            merged = self.merge_records(local, snapshot.records, timestamp_field, tombstones)
            remote_ids = {r.get("id") for r in snapshot.records}
            merged_ids = {r["id"] for r in merged}
            dropped = sorted(i for i in remote_ids if i in tombstones and i not in merged_ids)

            if not snapshot.is_delta:
                retry_ids = self._local_only_unsynced(name, local, remote_ids)
                if retry_ids:
                    self.queue_retry(name, retry_ids)
                # The remote no longer has these ids, so the deletion has landed
                self._prune_tombstones(name, [i for i in tombstones if i not in remote_ids])

            persisted = self.persist(name, merged)
            self._mark_last_sync(name)
            self._set_state(name, CollectionState.READY)

        return ReconcileResult(
            collection=name,
            records=merged,
            source="delta" if snapshot.is_delta else "remote",
            retry_ids=self.pending_retry(name),
            dropped_ids=dropped,
            persisted=persisted,
        )

    def _local_only_unsynced(
        self,
        collection: str,
        local: Iterable[Mapping[str, Any]],
        remote_ids: set,
    ) -> List[str]:
        """Ids present only locally that still need a remote write."""
        tracks_synced = Collection(collection).tracks_synced
        queued = set(self.pending_retry(collection))
        ids = []
        for record in local:
            record_id = record.get("id")
            if not record_id or record_id in remote_ids:
                continue
            if (tracks_synced and not record.get("synced", False)) or record_id in queued:
                ids.append(record_id)
        return ids

    def sync_collection(
        self,
        collection: Union[Collection, str],
        remote: "RemoteCollection",
        local: Optional[List[Dict[str, Any]]] = None,
    ) -> ReconcileResult:
        """
        Full reconciliation of one collection against the remote table.

        A remote failure leaves the collection READY with the local records.
        """
        name = _key(collection)
        if local is None:
            local = self.load_local(name)
        return self.reconcile(name, local, self.fetch_snapshot(name, remote))

    def fetch_snapshot(
        self,
        collection: Union[Collection, str],
        remote: "RemoteCollection",
    ) -> Optional["RemoteSnapshot"]:
        """Full remote snapshot, or None when the remote is unavailable."""
        from skilllab_core.data.supabase_client import RemoteSnapshot

        name = _key(collection)
        try:
            return RemoteSnapshot(name, remote.fetch_all(), False)
        except RemoteUnavailableError as e:
            self.logger.warning(f"Using cached {name}: {e.message}")
            return None

    # =========================================================================
    # RETRY QUEUE
    # =========================================================================

    def _save_retry_queue(self) -> None:
        if not self.cache.set_mapping(StorageKeys.RETRY_QUEUE, self._retry):
            self.logger.warning("Could not persist sync retry queue - keeping in memory only")

    def pending_retry(self, collection: Union[Collection, str]) -> List[str]:
        """Ids whose remote write has not been acknowledged yet."""
        with self._lock:
            return list(self._retry.get(_key(collection), []))

    def queue_retry(self, collection: Union[Collection, str], ids: Iterable[str]) -> None:
        name = _key(collection)
        with self._lock:
            current = self._retry.setdefault(name, [])
            for record_id in ids:
                if record_id not in current:
                    current.append(record_id)
            if not current:
                del self._retry[name]
            self._save_retry_queue()

    def clear_retry(self, collection: Union[Collection, str], ids: Iterable[str]) -> None:
        name = _key(collection)
        remove = set(ids)
        with self._lock:
            if name not in self._retry:
                return
            remaining = [i for i in self._retry[name] if i not in remove]
            if remaining:
                self._retry[name] = remaining
            else:
                del self._retry[name]
            self._save_retry_queue()

    # =========================================================================
    # TOMBSTONES
    # =========================================================================

    def _save_tombstones(self) -> None:
        if not self.cache.set_mapping(StorageKeys.TOMBSTONES, self._tombstones):
            self.logger.warning("Could not persist deletion tombstones - keeping in memory only")

    def tombstones(self, collection: Union[Collection, str]) -> Dict[str, float]:
        with self._lock:
            return dict(self._tombstones.get(_key(collection), {}))

    def record_deletion(
        self,
        collection: Union[Collection, str],
        record_ids: Iterable[str],
        deleted_at_ms: Optional[float] = None,
    ) -> None:
        """Remember deleted ids so older remote copies are not merged back."""
        name = _key(collection)
        deleted_at = deleted_at_ms if deleted_at_ms is not None else time.time() * 1000
        with self._lock:
            entries = self._tombstones.setdefault(name, {})
            for record_id in record_ids:
                entries[record_id] = deleted_at
            self._save_tombstones()

    def _prune_tombstones(self, collection: str, candidate_ids: Iterable[str]) -> None:
        """Drop tombstones whose delete is no longer waiting on the remote."""
        with self._lock:
            entries = self._tombstones.get(collection)
            if not entries:
                return
            queued = set(self._retry.get(collection, []))
            removable = [i for i in candidate_ids if i in entries and i not in queued]
            if not removable:
                return
            for record_id in removable:
                del entries[record_id]
            if not entries:
                del self._tombstones[collection]
            self.logger.debug(f"Pruned {len(removable)} {collection} tombstones")
            self._save_tombstones()

    # =========================================================================
    # STATUS
    # =========================================================================

    def _mark_last_sync(self, collection: str) -> None:
        last_sync = self.cache.get_mapping(StorageKeys.LAST_SYNC)
        last_sync[collection] = datetime.now().isoformat()
        if not self.cache.set_mapping(StorageKeys.LAST_SYNC, last_sync):
            self.logger.warning(f"Could not persist last sync time for {collection}")

    def get_status(self) -> Dict[str, Any]:
        """Per-collection state, pending retries and last sync time."""
        last_sync = self.cache.get_mapping(StorageKeys.LAST_SYNC)
        with self._lock:
            return {
                name: {
                    "state": state.value,
                    "pending_retry": len(self._retry.get(name, [])),
                    "last_sync": last_sync.get(name),
                }
                for name, state in self._states.items()
            }
