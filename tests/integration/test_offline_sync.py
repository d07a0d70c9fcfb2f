# =============================================================================
# tests/integration/test_offline_sync.py
# Integration Tests for offline-first sync scenarios
# =============================================================================

import pytest

from skilllab_core.auth.credentials import AuthService
from skilllab_core.data.supabase_client import RemoteStoreClient
from skilllab_core.offline.connection_manager import ConnectionManager
from skilllab_core.offline.data_access import DataAccessService
from skilllab_core.offline.local_cache import LocalCacheStore


def _attendance(record_id, timestamp, status):
    return {
        "id": record_id, "studentId": "student-1", "date": "2024-03-04",
        "status": status, "trainerId": "trainer-1", "year": 1,
        "groupId": "group-1", "timestamp": timestamp, "synced": True,
    }


@pytest.fixture
def open_service():
    """Factory for services that are closed after the test."""
    services = []

    def factory(cache, remote):
        service = DataAccessService(cache, remote)
        services.append(service)
        return service

    yield factory
    for service in services:
        service.close(timeout=5)


class TestStartupReconcile:

    def test_newer_remote_record_replaces_local(self, cache, remote, fake_supabase, open_service):
        cache.set("attendance", [_attendance("A1", 100, "absent")])
        fake_supabase.tables["attendance"] = [_attendance("A1", 200, "present")]

        service = open_service(cache, remote)
        assert service.initialize().success

        records = service.get_attendance_records()
        assert len(records) == 1
        assert records[0].status == "present"
        assert cache.get("attendance")[0]["status"] == "present"

    def test_remote_down_at_startup_serves_cache(self, cache, remote, fake_supabase, open_service):
        cache.set("attendance", [_attendance("A1", 100, "absent")])
        fake_supabase.fail = True

        service = open_service(cache, remote)
        service.initialize()

        assert [r.id for r in service.get_attendance_records()] == ["A1"]
        assert len(service.get_groups()) == 30

    def test_local_only_records_survive_full_snapshot(self, cache, remote, fake_supabase, open_service):
        cache.set("attendance", [_attendance("A1", 100, "absent")])
        fake_supabase.tables["attendance"] = [_attendance("A2", 200, "present")]

        service = open_service(cache, remote)
        service.initialize()

        assert sorted(r.id for r in service.get_attendance_records()) == ["A1", "A2"]


class TestOfflineWrites:

    def test_fifty_students_offline_then_sync(self, cache, remote, fake_supabase, open_service):
        service = open_service(cache, remote)
        service.initialize()
        service.wait_for_pending_writes(5)

        fake_supabase.fail = True
        for i in range(50):
            service.add_student({"name": f"Student {i:02d}", "year": 1, "groupId": "group-1"})
        service.wait_for_pending_writes(10)

        assert len(service.get_students()) == 50
        assert len(service.get_unsynced_records()["students"]) == 50
        assert fake_supabase.rows("students") == []

        # Restart on the same cache: the queue survives
        service.close()
        restarted = open_service(cache, remote)
        restarted.initialize()
        assert len(restarted.get_unsynced_records()["students"]) == 50

        fake_supabase.fail = False
        result = restarted.retry_unsynced()
        restarted.wait_for_pending_writes(10)

        assert result.data >= 50
        assert restarted.get_unsynced_records()["students"] == []
        assert len(fake_supabase.rows("students")) == 50

    def test_offline_delete_is_not_resurrected(self, cache, remote, fake_supabase, connection, open_service):
        fake_supabase.tables["students"] = [{
            "id": "student-1", "name": "Amina Yusuf", "studentId": "", "year": 1,
            "groupId": "group-1", "updatedAt": "2024-01-01T00:00:00.000Z",
        }]
        service = open_service(cache, remote)
        service.initialize()
        assert service.get_student("student-1") is not None

        connection.force_offline()
        service.delete_student("student-1")
        service.wait_for_pending_writes(5)

        connection.report_success()
        service.refresh("students")
        assert service.get_student("student-1") is None

        service.retry_unsynced()
        service.wait_for_pending_writes(5)
        assert fake_supabase.rows("students") == []

    def test_live_update_merges_remote_change(self, cache, remote, fake_supabase, open_service):
        cache.set("attendance", [_attendance("A1", 100, "absent")])
        service = open_service(cache, remote)
        service.initialize()

        events = []
        service.subscribe(lambda name, records: events.append(name))

        fake_supabase.tables["attendance"] = [_attendance("A1", 9_999_999_999_999, "late")]
        subscription = remote.collection("attendance").subscribe(service._on_remote_snapshot, start=False)
        subscription.poll_once()

        assert service.get_attendance_records()[0].status == "late"
        assert "attendance" in events


class TestCacheQuota:

    def test_eight_mb_write_is_refused(self):
        store = LocalCacheStore(":memory:")
        assert store.set("students", [{"id": "s1"}])

        big = [{"id": f"s{i}", "notes": "x" * 1000} for i in range(8 * 1024)]
        assert store.set("students", big) is False
        assert store.get("students") == [{"id": "s1"}]
        store.close()

    def test_service_keeps_data_in_memory_when_cache_is_full(self, unconfigured_remote, open_service):
        tiny = LocalCacheStore(":memory:", capacity_chars=1000)
        service = open_service(tiny, unconfigured_remote)

        for i in range(10):
            service.add_student({"name": f"Student {i:02d}", "year": 1, "groupId": "group-1"})

        assert len(service.get_students()) == 10
        assert 0 < len(tiny.get("students")) < 10
        tiny.close()

    def test_unsynced_student_listed_when_cache_is_full(self, unconfigured_remote, open_service):
        store = LocalCacheStore(":memory:", capacity_chars=300)
        _fill(store)
        service = open_service(store, unconfigured_remote)

        student = service.add_student({"name": "Amina Yusuf", "year": 1, "groupId": "group-1"})

        assert store.get_mapping("syncRetryQueue") == {}
        assert [r["id"] for r in service.get_unsynced_records()["students"]] == [student.id]
        store.close()

    def test_delete_with_full_cache_is_not_resurrected(self, remote, fake_supabase, open_service):
        fake_supabase.tables["students"] = [{
            "id": "student-1", "name": "Amina Yusuf", "studentId": "", "year": 1,
            "groupId": "group-1", "updatedAt": "2024-01-01T00:00:00.000Z",
        }]
        store = LocalCacheStore(":memory:", capacity_chars=50_000)
        service = open_service(store, remote)
        service.initialize()
        service.wait_for_pending_writes(5)

        fake_supabase.fail = True
        _fill(store)
        service.delete_student("student-1")
        service.wait_for_pending_writes(5)
        assert store.get_mapping("tombstones") == {}

        fake_supabase.fail = False
        service.refresh("students")
        assert service.get_student("student-1") is None

        service.retry_unsynced()
        service.wait_for_pending_writes(5)
        assert fake_supabase.rows("students") == []
        store.close()


def _fill(store, leave=2):
    """Use up all but ``leave`` characters of the cache."""
    free = store.usage()["free_chars"]
    assert store.set_item("filler", "x" * (free - len("filler") - leave))


class TestCrossDeviceLogin:

    @pytest.mark.parametrize("variant", ["trainer4", "Trainer4", "trainer4 ", "TRAINER4"])
    def test_account_created_on_one_device_logs_in_on_another(self, make_supabase, monkeypatch, variant):
        monkeypatch.setattr(AuthService, "BCRYPT_ROUNDS", 4)
        shared = make_supabase()

        device_a = LocalCacheStore(":memory:")
        remote_a = RemoteStoreClient(shared, ConnectionManager("https://example.supabase.co"))
        AuthService(device_a, remote_a).create_user({"username": "Trainer4"}, "pass-4")

        device_b = LocalCacheStore(":memory:")
        remote_b = RemoteStoreClient(shared, ConnectionManager("https://example.supabase.co"))
        user = AuthService(device_b, remote_b).login(variant, "pass-4")

        assert user.username == "Trainer4"
        device_a.close()
        device_b.close()
