# =============================================================================
# skilllab_core/offline/data_access.py
# Data Access Facade - Single API for students, groups, attendance, assessments
# =============================================================================
"""
DataAccessService - the only writer of in-memory collection state.

Every mutating call:
1. applies the change in memory (under the state lock, in call order)
2. writes the collection to the local cache (a refused write is logged)
3. submits a best-effort remote write to a single-worker executor

A remote write that succeeds marks the record synced and clears it from the
retry queue; a failed one leaves it unsynced and queued for retry_unsynced().

Usage:
------
from skilllab_core.offline.data_access import DataAccessService

service = DataAccessService.from_settings(load_settings())
service.initialize()

student = service.add_student({"name": "Amina Yusuf", "year": 2, "groupId": "group-3"})
service.add_attendance_record({
    "studentId": student.id, "date": "2024-03-04", "status": "present",
    "trainerId": "trainer1", "year": 2, "groupId": "group-3",
})

print(service.get_status()["connection"]["status"])
print(service.get_unsynced_records())
"""

from __future__ import annotations
import concurrent.futures
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union
import logging

import pandas as pd

from skilllab_core.config import SyncSettings
from skilllab_core.data.supabase_client import RemoteSnapshot, RemoteStoreClient, Subscription
from skilllab_core.errors import RecordNotFoundError, RemoteUnavailableError, ValidationError
from skilllab_core.models.records import (
    RECORD_TYPES,
    YEAR_UNITS,
    AssessmentRecord,
    AttendanceRecord,
    Collection,
    Group,
    Student,
    generate_id,
    now_iso,
)
from skilllab_core.offline.local_cache import LocalCacheStore, StorageKeys
from skilllab_core.offline.migrations import run_unit_backfill
from skilllab_core.offline.reconciler import SyncReconciler
from skilllab_core.services.base_service import BaseService, ServiceResult

logger = logging.getLogger(__name__)

DEFAULT_GROUP_COUNT = 30

Listener = Callable[[str, List[Dict[str, Any]]], None]


@dataclass
class ImportResult:
    """Outcome of a bulk student import."""
    added: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def _name_key(name: Any) -> str:
    return str(name or "").strip().lower()


class DataAccessService(BaseService):
    """
    Data access facade over the local cache and the Supabase tables.

    Reads are served from memory and never touch the network. Writes go to
    memory and the cache synchronously and to Supabase in the background.
    """

    def __init__(
        self,
        cache: LocalCacheStore,
        remote: RemoteStoreClient,
        reconciler: Optional[SyncReconciler] = None,
    ):
        super().__init__()
        self.cache = cache
        self.remote = remote
        self.reconciler = reconciler or SyncReconciler(cache)

        self._data: Dict[str, List[Dict[str, Any]]] = {c.value: [] for c in Collection}
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="RemoteWrite")
        self._pending: Set[Future] = set()
        self._initialized = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> DataAccessService:
        cache = LocalCacheStore(settings.cache_path, settings.cache_capacity_chars)
        return cls(cache, RemoteStoreClient.from_settings(settings))

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def initialize(self, live_updates: bool = False) -> ServiceResult:
        """
        Load cached data, reconcile with Supabase and run pending migrations.

        Args:
            live_updates: Start polling subscriptions for all collections

        Returns:
            ServiceResult from the full load
        """
        with self.log_operation("Initializing data access"):
            with self._lock:
                for collection in Collection:
                    self._data[collection.value] = self.reconciler.load_local(collection)
            self._update_progress(10, "Local data loaded")

            result = self.load_full_data()
            self._run_migrations()
            self.ensure_all_groups_exist()

            if live_updates:
                self.start_live_updates()

            self._initialized = True
            self._update_progress(100, "Ready")
        return result

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop subscriptions and drain queued remote writes."""
        if self._closed:
            return
        self.stop_live_updates()
        self.wait_for_pending_writes(timeout)
        self._executor.shutdown(wait=False)
        self.remote.connection.stop_monitoring()
        self._closed = True
        self.logger.info("Data access service closed")

    def wait_for_pending_writes(self, timeout: Optional[float] = None) -> bool:
        """
        Block until queued remote writes have completed.

        Returns:
            True if every write finished within the timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    # =========================================================================
    # LISTENERS AND LIVE UPDATES
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with (collection, records) after each change.

        Returns:
            Function that removes the listener
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        records = [dict(r) for r in self._data[collection]]
        for listener in list(self._listeners):
            try:
                listener(collection, records)
            except Exception as e:
                self.logger.error(f"Error in data listener: {e}")

    def start_live_updates(self) -> None:
        """Poll every Supabase table and merge changes as they arrive."""
        if not self.remote.is_configured or self._subscriptions:
            return
        for collection in Collection:
            subscription = self.remote.collection(collection).subscribe(self._on_remote_snapshot)
            self._subscriptions.append(subscription)
        self.logger.info("Live updates started")

    def stop_live_updates(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def _on_remote_snapshot(self, snapshot: RemoteSnapshot) -> None:
        self._apply_snapshot(snapshot.collection, snapshot)

    def _apply_snapshot(self, name: str, snapshot: Optional[RemoteSnapshot]) -> int:
        """Merge a fetched snapshot into memory. Only the merge holds the lock."""
        with self._lock:
            result = self.reconciler.reconcile(name, list(self._data[name]), snapshot)
            self._data[name] = result.records
            self._notify(name)
            return len(result.records)

    # =========================================================================
    # LOAD / REFRESH
    # =========================================================================

    def load_full_data(self) -> ServiceResult:
        """Reconcile every collection against the full remote tables."""
        return self.safe_execute("Loading full data", self._load_full_data)

    def _load_full_data(self) -> Dict[str, int]:
        names = [c.value for c in Collection]
        counts = {}
        for index, name in enumerate(names):
            self._update_progress(int(100 * index / len(names)), f"Syncing {name}")
            snapshot = self.reconciler.fetch_snapshot(name, self.remote.collection(name))
            counts[name] = self._apply_snapshot(name, snapshot)
        self._update_progress(100, "Sync complete")
        return counts

    def refresh(self, collection: Union[Collection, str, None] = None) -> Dict[str, int]:
        """
        Re-reconcile one collection, or all of them, with Supabase.

        Network fetches run without holding the data lock, so local reads
        and writes are not blocked by a slow remote.

        Returns:
            Record count per refreshed collection
        """
        names = [Collection(collection).value] if collection else [c.value for c in Collection]
        counts = {}
        for name in names:
            snapshot = self.reconciler.fetch_snapshot(name, self.remote.collection(name))
            counts[name] = self._apply_snapshot(name, snapshot)
        return counts

    def _run_migrations(self) -> None:
        with self._lock:
            migration = run_unit_backfill(
                self.cache,
                self._data[Collection.GROUPS.value],
                self._data[Collection.ATTENDANCE.value],
                self._data[Collection.ASSESSMENTS.value],
            )
            for name, ids in migration.changed.items():
                if ids:
                    id_set = set(ids)
                    changed = [r for r in self._data[name] if r["id"] in id_set]
                    self._commit(name, changed)

    # =========================================================================
    # INTERNAL WRITE PATH
    # =========================================================================

    def _find(self, collection: str, record_id: Optional[str]) -> Optional[Dict[str, Any]]:
        for record in self._data[collection]:
            if record.get("id") == record_id:
                return record
        return None

    def _require(self, collection: str, record_id: str) -> Dict[str, Any]:
        record = self._find(collection, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"{collection} record '{record_id}' not found",
                collection=collection,
                record_id=record_id,
            )
        return record

    def _replace(self, collection: str, record: Dict[str, Any]) -> None:
        records = self._data[collection]
        for index, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[index] = record
                return
        records.append(record)

    def _commit(
        self,
        collection: str,
        changed: Iterable[Dict[str, Any]] = (),
        deleted_ids: Iterable[str] = (),
    ) -> None:
        """Persist a collection, notify listeners and queue remote writes."""
        changed = list(changed)
        deleted_ids = list(deleted_ids)
        if deleted_ids:
            self.reconciler.record_deletion(collection, deleted_ids)

        self.reconciler.persist(collection, self._data[collection])
        self._notify(collection)

        for record in changed:
            self._submit(collection, record["id"], dict(record))
        for record_id in deleted_ids:
            self._submit(collection, record_id, None)

    def _submit(self, collection: str, record_id: str, payload: Optional[Dict[str, Any]]) -> None:
        if self._closed or not self.remote.is_configured:
            self.reconciler.queue_retry(collection, [record_id])
            return
        future = self._executor.submit(self._remote_write, collection, record_id, payload)
        self._pending.add(future)
        future.add_done_callback(self._forget_write)

    def _forget_write(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _remote_write(self, collection: str, record_id: str, payload: Optional[Dict[str, Any]]) -> bool:
        """Runs on the write executor. payload None means delete."""
        remote = self.remote.collection(collection)
        tracks_synced = Collection(collection).tracks_synced
        try:
            if payload is None:
                remote.delete_one(record_id)
            else:
                body = dict(payload)
                if tracks_synced:
                    body["synced"] = True
                remote.write_one(body)
        except RemoteUnavailableError as e:
            self.logger.warning(f"Remote write deferred for {collection}/{record_id}: {e.message}")
            self.reconciler.queue_retry(collection, [record_id])
            return False
        except Exception as e:
            self.logger.error(f"Remote write failed for {collection}/{record_id}: {e}", exc_info=True)
            self.reconciler.queue_retry(collection, [record_id])
            return False

        with self._lock:
            self.reconciler.clear_retry(collection, [record_id])
            if payload is not None and tracks_synced:
                current = self._find(collection, record_id)
                ts_field = Collection(collection).timestamp_field
                if current is not None and current.get(ts_field) == payload.get(ts_field):
                    current["synced"] = True
                    self.reconciler.persist(collection, self._data[collection])
                    self._notify(collection)
        self.logger.debug(f"Synced {collection}/{record_id}")
        return True

    def _apply_unit_scope(self, data: Dict[str, Any]) -> None:
        """Default ``unit`` from the group for years 2/3; strip it otherwise."""
        try:
            year = int(data.get("year"))
        except (TypeError, ValueError):
            return
        if year not in YEAR_UNITS:
            data.pop("unit", None)
            return
        if data.get("unit"):
            return
        group = self._find(Collection.GROUPS.value, data.get("groupId"))
        unit = group.get("currentUnit") if group else None
        if unit in YEAR_UNITS[year]:
            data["unit"] = unit
        else:
            data.pop("unit", None)

    @staticmethod
    def _typed(collection: Collection, records: Iterable[Mapping[str, Any]]) -> list:
        record_type = RECORD_TYPES[collection]
        typed = []
        for record in records:
            try:
                typed.append(record_type.from_dict(record))
            except TypeError as e:
                logger.warning(
                    f"Skipping malformed {collection.value} record {record.get('id')}: {e}"
                )
        return typed

    # =========================================================================
    # STUDENTS
    # =========================================================================

    def _duplicate_student_reason(
        self,
        data: Mapping[str, Any],
        existing: Iterable[Mapping[str, Any]],
    ) -> Optional[str]:
        name_key = _name_key(data.get("name"))
        for student in existing:
            if (
                _name_key(student.get("name")) == name_key
                and student.get("year") == data.get("year")
                and student.get("groupId") == data.get("groupId")
            ):
                group = self._find(Collection.GROUPS.value, data.get("groupId"))
                group_name = group.get("name") if group else data.get("groupId")
                return f'"{data.get("name")}" already exists in Year {data.get("year")}, {group_name}'
        student_id = data.get("studentId")
        if student_id:
            for student in existing:
                if student.get("studentId") == student_id:
                    return f'Student ID "{student_id}" already exists'
        return None

    def add_student(self, data: Mapping[str, Any]) -> Student:
        """
        Add one student.

        Raises:
            ValidationError: Invalid payload or duplicate name/student ID
        """
        clean = Student.validate(data)
        with self._lock:
            reason = self._duplicate_student_reason(clean, self._data[Collection.STUDENTS.value])
            if reason:
                raise ValidationError(f"Student {reason}", field="name", actual=clean["name"])

            now = now_iso()
            record = {**clean, "id": generate_id(Collection.STUDENTS), "createdAt": now, "updatedAt": now}
            self._data[Collection.STUDENTS.value].append(record)
            self._commit(Collection.STUDENTS.value, [record])
        return Student.from_dict(record)

    def add_students(self, students: Iterable[Mapping[str, Any]]) -> ImportResult:
        """
        Bulk import with duplicate detection.

        A student is skipped when the same name (case-insensitive) already
        exists in the same year and group, when its student ID is taken, or
        when it duplicates an earlier row of the same batch.
        """
        result = ImportResult()
        added: List[Dict[str, Any]] = []

        with self._lock:
            existing = self._data[Collection.STUDENTS.value]
            for data in students:
                name = data.get("name")
                try:
                    clean = Student.validate(data)
                except ValidationError as e:
                    result.skipped += 1
                    result.errors.append(f'Error adding "{name}": {e.message}')
                    continue

                reason = self._duplicate_student_reason(clean, existing)
                if reason:
                    result.skipped += 1
                    result.errors.append(f'Skipped "{name}" - {reason}')
                    continue

                if self._duplicate_student_reason(clean, added):
                    result.skipped += 1
                    result.errors.append(f'Skipped "{name}" - duplicate in import file')
                    continue

                now = now_iso()
                added.append({**clean, "id": generate_id(Collection.STUDENTS), "createdAt": now, "updatedAt": now})

            if added:
                existing.extend(added)
                self._commit(Collection.STUDENTS.value, added)

        result.added = len(added)
        self.logger.info(f"Imported {result.added} students, skipped {result.skipped}")
        return result

    def update_student(self, student_id: str, updates: Mapping[str, Any]) -> Student:
        with self._lock:
            existing = self._require(Collection.STUDENTS.value, student_id)
            clean = Student.validate({**existing, **updates})
            record = {**clean, "id": existing["id"], "createdAt": existing.get("createdAt"), "updatedAt": now_iso()}
            self._replace(Collection.STUDENTS.value, record)
            self._commit(Collection.STUDENTS.value, [record])
        return Student.from_dict(record)

    def delete_student(self, student_id: str) -> None:
        """Delete a student together with its attendance and assessment records."""
        with self._lock:
            self._require(Collection.STUDENTS.value, student_id)
            self._remove_where(Collection.STUDENTS.value, lambda r: r.get("id") == student_id)
            self._remove_where(Collection.ATTENDANCE.value, lambda r: r.get("studentId") == student_id)
            self._remove_where(Collection.ASSESSMENTS.value, lambda r: r.get("studentId") == student_id)

    def _remove_where(self, collection: str, predicate: Callable[[Mapping[str, Any]], bool]) -> int:
        records = self._data[collection]
        removed = [r["id"] for r in records if predicate(r)]
        if not removed:
            return 0
        self._data[collection] = [r for r in records if not predicate(r)]
        self._commit(collection, deleted_ids=removed)
        return len(removed)

    def get_students(self) -> List[Student]:
        with self._lock:
            return self._typed(Collection.STUDENTS, self._data[Collection.STUDENTS.value])

    def get_student(self, student_id: str) -> Optional[Student]:
        with self._lock:
            record = self._find(Collection.STUDENTS.value, student_id)
        return Student.from_dict(record) if record else None

    def get_students_by_group(self, group_id: str) -> List[Student]:
        students = [s for s in self.get_students() if s.group_id == group_id]
        return sorted(students, key=lambda s: s.name.lower())

    def get_students_by_year(self, year: int) -> List[Student]:
        students = [s for s in self.get_students() if s.year == year]
        return sorted(students, key=lambda s: s.name.lower())

    def get_students_summary(self) -> Dict[str, Any]:
        """Student counts in total, per year and per group."""
        by_year: Dict[int, int] = {}
        by_group: Dict[str, int] = {}
        students = self.get_students()
        for student in students:
            by_year[student.year] = by_year.get(student.year, 0) + 1
            by_group[student.group_id] = by_group.get(student.group_id, 0) + 1
        return {"total": len(students), "by_year": by_year, "by_group": by_group}

    # =========================================================================
    # GROUPS
    # =========================================================================

    def add_group(self, data: Mapping[str, Any]) -> Group:
        clean = Group.validate(data)
        with self._lock:
            now = now_iso()
            record = {**clean, "id": clean.get("id") or generate_id(Collection.GROUPS), "createdAt": now, "updatedAt": now}
            if self._find(Collection.GROUPS.value, record["id"]):
                raise ValidationError(f"Group '{record['id']}' already exists", field="id", actual=record["id"])
            self._data[Collection.GROUPS.value].append(record)
            self._commit(Collection.GROUPS.value, [record])
        return Group.from_dict(record)

    def update_group(self, group_id: str, updates: Mapping[str, Any]) -> Group:
        with self._lock:
            existing = self._require(Collection.GROUPS.value, group_id)
            clean = Group.validate({**existing, **updates})
            if "currentUnit" in updates and not updates["currentUnit"]:
                clean.pop("currentUnit", None)
            record = {**clean, "id": existing["id"], "createdAt": existing.get("createdAt"), "updatedAt": now_iso()}
            self._replace(Collection.GROUPS.value, record)
            self._commit(Collection.GROUPS.value, [record])
        return Group.from_dict(record)

    def delete_group(self, group_id: str) -> None:
        """
        Clear a group's students, attendance and assessments.

        The group record itself is kept, and the default group set is
        re-ensured afterwards.
        """
        with self._lock:
            self._require(Collection.GROUPS.value, group_id)
            self._remove_where(Collection.STUDENTS.value, lambda r: r.get("groupId") == group_id)
            self._remove_where(Collection.ATTENDANCE.value, lambda r: r.get("groupId") == group_id)
            self._remove_where(Collection.ASSESSMENTS.value, lambda r: r.get("groupId") == group_id)
            self.ensure_all_groups_exist()

    def get_groups(self) -> List[Group]:
        with self._lock:
            return self._typed(Collection.GROUPS, self._data[Collection.GROUPS.value])

    def get_groups_by_year(self, year: int) -> List[Group]:
        return [g for g in self.get_groups() if g.year == year]

    def ensure_all_groups_exist(self) -> int:
        """
        Create any missing default group ``group-1`` .. ``group-30``.

        Returns:
            Number of groups created
        """
        with self._lock:
            existing_ids = {g.get("id") for g in self._data[Collection.GROUPS.value]}
            created = []
            for i in range(1, DEFAULT_GROUP_COUNT + 1):
                group_id = f"group-{i}"
                if group_id in existing_ids:
                    continue
                now = now_iso()
                created.append({
                    "id": group_id,
                    "name": f"Group{i}",
                    "year": 1,
                    "description": f"Group {i} - Available for all years",
                    "createdAt": now,
                    "updatedAt": now,
                })
            if created:
                self._data[Collection.GROUPS.value].extend(created)
                self._commit(Collection.GROUPS.value, created)
                self.logger.info(f"Created {len(created)} default groups")
        return len(created)

    def bulk_update_current_unit(self, year: int, unit: str) -> int:
        """
        Set ``currentUnit`` on every group of a year.

        Returns:
            Number of groups updated
        """
        if year not in YEAR_UNITS or unit not in YEAR_UNITS[year]:
            raise ValidationError(
                f"Unit '{unit}' is not valid for year {year}",
                field="currentUnit",
                expected=", ".join(YEAR_UNITS.get(year, ())),
                actual=unit,
            )
        with self._lock:
            changed = []
            now = now_iso()
            for group in self._data[Collection.GROUPS.value]:
                if group.get("year") == year:
                    group["currentUnit"] = unit
                    group["updatedAt"] = now
                    changed.append(group)
            if changed:
                self._commit(Collection.GROUPS.value, changed)
        return len(changed)

    # =========================================================================
    # ATTENDANCE
    # =========================================================================

    def add_attendance_record(self, data: Mapping[str, Any]) -> AttendanceRecord:
        payload = dict(data)
        with self._lock:
            self._apply_unit_scope(payload)
            clean = AttendanceRecord.validate(payload)
            record = {
                **clean,
                "id": generate_id(Collection.ATTENDANCE),
                "timestamp": now_iso(),
                "synced": False,
            }
            self._data[Collection.ATTENDANCE.value].append(record)
            self._commit(Collection.ATTENDANCE.value, [record])
        return AttendanceRecord.from_dict(record)

    def update_attendance_record(self, record_id: str, updates: Mapping[str, Any]) -> AttendanceRecord:
        with self._lock:
            existing = self._require(Collection.ATTENDANCE.value, record_id)
            payload = {**existing, **updates}
            self._apply_unit_scope(payload)
            clean = AttendanceRecord.validate(payload)
            record = {**clean, "id": existing["id"], "timestamp": now_iso(), "synced": False}
            self._replace(Collection.ATTENDANCE.value, record)
            self._commit(Collection.ATTENDANCE.value, [record])
        return AttendanceRecord.from_dict(record)

    def delete_attendance_record(self, record_id: str) -> None:
        with self._lock:
            self._require(Collection.ATTENDANCE.value, record_id)
            self._remove_where(Collection.ATTENDANCE.value, lambda r: r.get("id") == record_id)

    def get_attendance_records(self) -> List[AttendanceRecord]:
        with self._lock:
            return self._typed(Collection.ATTENDANCE, self._data[Collection.ATTENDANCE.value])

    def get_attendance_by_date(self, day: str) -> List[AttendanceRecord]:
        return [r for r in self.get_attendance_records() if r.date == day]

    def get_attendance_by_student(self, student_id: str) -> List[AttendanceRecord]:
        return [r for r in self.get_attendance_records() if r.student_id == student_id]

    def get_attendance_by_group(self, group_id: str, day: Optional[str] = None) -> List[AttendanceRecord]:
        return [
            r for r in self.get_attendance_records()
            if r.group_id == group_id and (day is None or r.date == day)
        ]

    # =========================================================================
    # ASSESSMENTS
    # =========================================================================

    def add_assessment_record(self, data: Mapping[str, Any]) -> AssessmentRecord:
        payload = dict(data)
        with self._lock:
            self._apply_unit_scope(payload)
            clean = AssessmentRecord.validate(payload)
            record = {
                **clean,
                "id": generate_id(Collection.ASSESSMENTS),
                "timestamp": now_iso(),
                "synced": False,
            }
            self._data[Collection.ASSESSMENTS.value].append(record)
            self._commit(Collection.ASSESSMENTS.value, [record])
        return AssessmentRecord.from_dict(record)

    def update_assessment_record(
        self,
        record_id: str,
        updates: Mapping[str, Any],
        edited_by: Optional[str] = None,
    ) -> AssessmentRecord:
        """
        Update an assessment that has not been exported to the admin.

        Raises:
            RecordNotFoundError: Unknown id
            ValidationError: Invalid payload or the assessment is locked
        """
        with self._lock:
            existing = self._require(Collection.ASSESSMENTS.value, record_id)
            if existing.get("exportedToAdmin") is True:
                raise ValidationError(
                    "Assessment is exported to admin and locked",
                    field="exportedToAdmin",
                    actual=True,
                )
            payload = {**existing, **updates}
            self._apply_unit_scope(payload)
            clean = AssessmentRecord.validate(payload)
            now = now_iso()
            record = {
                **clean,
                "id": existing["id"],
                "timestamp": now,
                "synced": False,
                "lastEditedAt": now,
                "editCount": int(existing.get("editCount") or 0) + 1,
            }
            if edited_by:
                record["lastEditedBy"] = edited_by
            self._replace(Collection.ASSESSMENTS.value, record)
            self._commit(Collection.ASSESSMENTS.value, [record])
        return AssessmentRecord.from_dict(record)

    def delete_assessment_record(self, record_id: str) -> None:
        with self._lock:
            self._require(Collection.ASSESSMENTS.value, record_id)
            self._remove_where(Collection.ASSESSMENTS.value, lambda r: r.get("id") == record_id)

    def get_assessment_records(self) -> List[AssessmentRecord]:
        with self._lock:
            return self._typed(Collection.ASSESSMENTS, self._data[Collection.ASSESSMENTS.value])

    def get_assessments_by_student(self, student_id: str) -> List[AssessmentRecord]:
        return [r for r in self.get_assessment_records() if r.student_id == student_id]

    def get_assessments_by_group(self, group_id: str) -> List[AssessmentRecord]:
        return [r for r in self.get_assessment_records() if r.group_id == group_id]

    # -------------------------------------------------------------------------
    # Admin export workflow
    # -------------------------------------------------------------------------

    def _update_assessment_fields(self, record_id: str, fields: Mapping[str, Any]) -> AssessmentRecord:
        existing = self._require(Collection.ASSESSMENTS.value, record_id)
        record = {**existing, **fields, "timestamp": now_iso(), "synced": False}
        for key in [k for k, v in fields.items() if v is None]:
            record.pop(key, None)
        self._replace(Collection.ASSESSMENTS.value, record)
        self._commit(Collection.ASSESSMENTS.value, [record])
        return AssessmentRecord.from_dict(record)

    def export_assessment_to_admin(self, record_id: str, trainer_id: str) -> AssessmentRecord:
        """Lock an assessment and hand it to the admin. Only its creator may export."""
        with self._lock:
            existing = self._require(Collection.ASSESSMENTS.value, record_id)
            if existing.get("trainerId") != trainer_id:
                raise ValidationError(
                    "Only the creator can export this assessment",
                    field="trainerId", expected=existing.get("trainerId"), actual=trainer_id,
                )
            if existing.get("exportedToAdmin") is True:
                raise ValidationError("Assessment already exported", field="exportedToAdmin", actual=True)
            now = now_iso()
            record = self._update_assessment_fields(record_id, {
                "exportedToAdmin": True,
                "exportedAt": now,
                "exportedBy": trainer_id,
                "lastEditedAt": now,
                "lastEditedBy": trainer_id,
            })
        self.logger.info(f"Assessment {record_id} exported to admin (locked)")
        return record

    def export_multiple_assessments_to_admin(self, record_ids: Iterable[str], trainer_id: str) -> Dict[str, int]:
        success = failed = 0
        for record_id in record_ids:
            try:
                self.export_assessment_to_admin(record_id, trainer_id)
                success += 1
            except (RecordNotFoundError, ValidationError) as e:
                self.logger.error(f"Failed to export assessment {record_id}: {e.message}")
                failed += 1
        return {"success": success, "failed": failed}

    def unlock_assessment(self, record_id: str, admin_id: str) -> AssessmentRecord:
        with self._lock:
            existing = self._require(Collection.ASSESSMENTS.value, record_id)
            if existing.get("exportedToAdmin") is not True:
                raise ValidationError("Assessment is not locked", field="exportedToAdmin", actual=existing.get("exportedToAdmin"))
            return self._update_assessment_fields(record_id, {
                "exportedToAdmin": False,
                "exportedAt": None,
                "exportedBy": None,
                "lastEditedAt": now_iso(),
                "lastEditedBy": admin_id,
            })

    def mark_assessment_reviewed_by_admin(self, record_id: str, admin_id: str) -> AssessmentRecord:
        with self._lock:
            return self._update_assessment_fields(record_id, {
                "reviewedByAdmin": True,
                "reviewedAt": now_iso(),
                "reviewedBy": admin_id,
            })

    def get_exported_assessments(self) -> List[AssessmentRecord]:
        return [r for r in self.get_assessment_records() if r.exported_to_admin is True]

    def get_draft_assessments(self, trainer_id: str) -> List[AssessmentRecord]:
        return [
            r for r in self.get_assessment_records()
            if r.trainer_id == trainer_id and r.exported_to_admin is not True
        ]

    # =========================================================================
    # SYNC STATUS
    # =========================================================================

    def get_unsynced_records(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Records not yet acknowledged by Supabase, per collection.

        Attendance and assessments use their ``synced`` flag; students and
        groups are listed when their id is in the retry queue.
        """
        unsynced: Dict[str, List[Dict[str, Any]]] = {}
        with self._lock:
            for collection in Collection:
                name = collection.value
                queued = set(self.reconciler.pending_retry(name))
                unsynced[name] = [
                    dict(r) for r in self._data[name]
                    if r.get("id") in queued or (collection.tracks_synced and not r.get("synced", False))
                ]
        return unsynced

    def retry_unsynced(self) -> ServiceResult:
        """Resubmit every unsynced record and queued deletion."""
        return self.safe_execute("Retrying unsynced records", self._retry_unsynced)

    def _retry_unsynced(self) -> int:
        submitted = 0
        with self._lock:
            unsynced = self.get_unsynced_records()
            for collection in Collection:
                name = collection.value
                for record in unsynced[name]:
                    self._submit(name, record["id"], record)
                    submitted += 1
                present = {r.get("id") for r in self._data[name]}
                for record_id in self.reconciler.pending_retry(name):
                    if record_id not in present:
                        self._submit(name, record_id, None)
                        submitted += 1
        self.logger.info(f"Resubmitted {submitted} remote writes")
        return submitted

    def mark_synced(self, collection: Union[Collection, str], record_ids: Iterable[str]) -> int:
        """Mark records as acknowledged by Supabase."""
        name = Collection(collection).value
        ids = set(record_ids)
        count = 0
        with self._lock:
            if Collection(name).tracks_synced:
                for record in self._data[name]:
                    if record.get("id") in ids and not record.get("synced"):
                        record["synced"] = True
                        count += 1
                self.reconciler.persist(name, self._data[name])
            self.reconciler.clear_retry(name, ids)
            self._notify(name)
        return count

    def get_status(self) -> Dict[str, Any]:
        """Status information for UI display."""
        with self._lock:
            counts = {name: len(records) for name, records in self._data.items()}
            pending_writes = len(self._pending)
        unsynced = self.get_unsynced_records()
        return {
            "initialized": self._initialized,
            "remote_configured": self.remote.is_configured,
            "connection": self.remote.connection.get_status_display(),
            "live_updates": bool(self._subscriptions),
            "collections": self.reconciler.get_status(),
            "record_counts": counts,
            "unsynced_counts": {name: len(records) for name, records in unsynced.items()},
            "pending_writes": pending_writes,
            "cache": self.cache.usage(),
        }

    # =========================================================================
    # REPORTING / MAINTENANCE
    # =========================================================================

    def to_dataframe(self, collection: Union[Collection, str]) -> pd.DataFrame:
        """Snapshot of a collection as a DataFrame, with ``date`` parsed."""
        name = Collection(collection).value
        with self._lock:
            records = [dict(r) for r in self._data[name]]
        if not records:
            return pd.DataFrame()
        df = pd.DataFrame(records)
        if "date" in df.columns:
            df["date"] = pd.to_datetime(df["date"], errors="coerce")
        return df

    def clear_all_data(self) -> None:
        """
        Drop all local collection data. Users, passwords and migration
        flags are kept; nothing is deleted remotely.
        """
        with self._lock:
            for collection in Collection:
                self._data[collection.value] = []
                self.cache.remove(collection.value)
            for key in (StorageKeys.TOMBSTONES, StorageKeys.RETRY_QUEUE, StorageKeys.LAST_SYNC):
                self.cache.remove(key)
            self.reconciler.reset()
            for collection in Collection:
                self._notify(collection.value)
        self.logger.info("All local data cleared")
