# =============================================================================
# tests/unit/test_local_cache.py
# Unit Tests for LocalCacheStore
# =============================================================================

import json

import numpy as np
import pytest

from skilllab_core.offline.local_cache import LocalCacheStore, StorageKeys


class TestLocalCacheRoundTrip:
    """Reading back what was written"""

    def test_set_then_get_returns_records(self, cache):
        records = [{"id": "s1", "name": "Amina"}, {"id": "s2", "name": "Brian"}]

        assert cache.set("students", records)
        assert cache.get("students") == records

    def test_missing_key_reads_empty(self, cache):
        assert cache.get("attendance") == []
        assert cache.get_mapping("userPasswords") == {}

    def test_corrupt_json_reads_empty(self, cache):
        cache.set_item("students", "{not json")
        assert cache.get("students") == []

    def test_non_array_payload_reads_empty(self, cache):
        cache.set_item("students", json.dumps({"id": "s1"}))
        assert cache.get("students") == []

    def test_numpy_values_are_serialized(self, cache):
        assert cache.set("assessments", [{"id": "a1", "score": np.int64(17), "pct": np.float64(0.85)}])
        assert cache.get("assessments") == [{"id": "a1", "score": 17, "pct": 0.85}]

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "cache.db"
        first = LocalCacheStore(path)
        first.set("groups", [{"id": "group-1"}])
        first.close()

        second = LocalCacheStore(path)
        assert second.get("groups") == [{"id": "group-1"}]
        second.close()


class TestLocalCacheCapacity:
    """Quota handling"""

    def test_over_capacity_write_returns_false_and_keeps_previous(self):
        store = LocalCacheStore(":memory:", capacity_chars=200)
        small = [{"id": "s1"}]
        assert store.set("students", small)

        big = [{"id": f"s{i}", "name": "x" * 50} for i in range(10)]
        assert store.set("students", big) is False
        assert store.get("students") == small

    def test_replacing_a_value_counts_only_the_new_size(self):
        store = LocalCacheStore(":memory:", capacity_chars=100)
        value = "x" * 80
        assert store.set_item("k", value)
        # Same size again fits because the old value is replaced
        assert store.set_item("k", "y" * 80)

    def test_capacity_is_shared_across_keys(self):
        store = LocalCacheStore(":memory:", capacity_chars=100)
        assert store.set_item("a", "x" * 60)
        assert store.set_item("b", "x" * 60) is False
        assert store.get_item("b") is None

    def test_usage_reports_characters(self):
        store = LocalCacheStore(":memory:", capacity_chars=1000)
        store.set_item("key", "value")

        usage = store.usage()
        assert usage["used_chars"] == len("key") + len("value")
        assert usage["free_chars"] == 1000 - 8


class TestLocalCacheFlagsAndKeys:
    """Flags, removal and clearing"""

    def test_flag_defaults_to_false(self, cache):
        assert cache.get_flag("unitBackfill") is False

    def test_set_flag(self, cache):
        assert cache.set_flag("unitBackfill")
        assert cache.get_flag("unitBackfill") is True
        assert "migration:unitBackfill" in cache.keys()

    def test_remove_and_clear(self, cache):
        cache.set(StorageKeys.STUDENTS, [{"id": "s1"}])
        cache.set_mapping(StorageKeys.USER_PASSWORDS, {"admin": "admin123"})

        cache.remove(StorageKeys.STUDENTS)
        assert cache.get(StorageKeys.STUDENTS) == []
        assert cache.keys() == [StorageKeys.USER_PASSWORDS]

        cache.clear()
        assert cache.keys() == []

    def test_unserializable_value_returns_false(self, cache):
        assert cache.set("students", [{"id": "s1", "obj": object()}]) is False
