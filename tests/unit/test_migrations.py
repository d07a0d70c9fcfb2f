# =============================================================================
# tests/unit/test_migrations.py
# Unit Tests for one-time cache migrations
# =============================================================================

import pytest

from skilllab_core.offline.migrations import (
    UNIT_BACKFILL_FLAG,
    backfill_units,
    run_unit_backfill,
)


@pytest.fixture
def groups():
    return [
        {"id": "group-1", "name": "Group1", "year": 2, "currentUnit": "MSK"},
        {"id": "group-2", "name": "Group2", "year": 3},
    ]


def _attendance(record_id, year, group_id, **extra):
    return {
        "id": record_id, "studentId": "student-1", "date": "2024-03-04",
        "status": "present", "trainerId": "trainer-1", "year": year,
        "groupId": group_id, "timestamp": "2024-03-04T08:00:00.000Z",
        "synced": True, **extra,
    }


def test_backfill_sets_unit_from_group(groups):
    records = [_attendance("a1", 2, "group-1")]
    changed = backfill_units(records, {g["id"]: g for g in groups})

    assert changed == ["a1"]
    assert records[0]["unit"] == "MSK"
    assert records[0]["synced"] is False
    assert records[0]["timestamp"] != "2024-03-04T08:00:00.000Z"


def test_backfill_skips_records_it_cannot_scope(groups):
    records = [
        _attendance("a1", 1, "group-1"),                # year without units
        _attendance("a2", 2, "group-1", unit="HEM"),    # already scoped
        _attendance("a3", 3, "group-2"),                # group has no current unit
        _attendance("a4", 3, "group-1"),                # MSK is not a year-3 unit
        _attendance("a5", 2, "group-missing"),
    ]
    assert backfill_units(records, {g["id"]: g for g in groups}) == []
    assert records[1]["unit"] == "HEM"


def test_runs_once(cache, groups):
    attendance = [_attendance("a1", 2, "group-1")]
    assessments = [_attendance("x1", 2, "group-1")]

    first = run_unit_backfill(cache, groups, attendance, assessments)
    assert first.applied
    assert first.total_changed == 2
    assert cache.get_flag(UNIT_BACKFILL_FLAG)

    late = [_attendance("a2", 2, "group-1")]
    second = run_unit_backfill(cache, groups, late, [])
    assert second.applied is False
    assert "unit" not in late[0]


def test_service_initialize_backfills_and_pushes(cache, remote, fake_supabase, groups):
    from skilllab_core.offline.data_access import DataAccessService

    cache.set("groups", groups)
    cache.set("attendance", [_attendance("a1", 2, "group-1")])

    service = DataAccessService(cache, remote)
    try:
        service.initialize()
        service.wait_for_pending_writes(5)

        assert service.get_attendance_records()[0].unit == "MSK"
        assert fake_supabase.rows("attendance")[0]["unit"] == "MSK"
    finally:
        service.close()
