# =============================================================================
# skilllab_core/offline/local_cache.py
# Quota-limited local key-value cache
# =============================================================================
"""
LocalCacheStore - string-only key-value store with a fixed capacity.

Features:
- One JSON document per collection key
- Capacity accounting in characters (key + value), like a browser origin quota
- Writes over capacity are refused and leave the previous value intact
- Corrupt or missing entries read back as empty collections
- SQLite persistence, single connection shared across threads
"""

from __future__ import annotations
import json
import sqlite3
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union
import logging

import numpy as np

from skilllab_core.errors import CapacityExceededError

logger = logging.getLogger(__name__)


class StorageKeys:
    """Fixed keys used in the local cache."""
    STUDENTS = "students"
    GROUPS = "groups"
    ATTENDANCE = "attendance"
    ASSESSMENTS = "assessments"
    USERS = "users"
    USER_PASSWORDS = "userPasswords"
    CURRENT_USER = "currentUser"
    TOMBSTONES = "tombstones"
    RETRY_QUEUE = "syncRetryQueue"
    LAST_SYNC = "lastSync"


FLAG_PREFIX = "migration:"


def _json_default(value: Any) -> Any:
    """Serialize numpy scalars and datetimes that arrive from pandas frames."""
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class LocalCacheStore:
    """
    Local cache with a fixed character quota.

    Usage:
        cache = LocalCacheStore(Path("local_data/cache.db"))
        if not cache.set("students", students):
            # over quota - keep working from memory
            ...
        students = cache.get("students")
    """

    DEFAULT_CAPACITY = 5 * 1024 * 1024

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT
        )
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        capacity_chars: int = DEFAULT_CAPACITY,
    ):
        """
        Initialize the cache.

        Args:
            db_path: SQLite file path, or ":memory:" for a process-local cache
            capacity_chars: Maximum total characters (keys + values)
        """
        self.db_path = str(db_path)
        self.capacity_chars = capacity_chars
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.execute(self.SCHEMA)
        self._connection.commit()
        logger.debug(f"Local cache opened at {self.db_path} (capacity {capacity_chars} chars)")

    # =========================================================================
    # RAW STRING ACCESS
    # =========================================================================

    def get_item(self, key: str) -> Optional[str]:
        """Return the raw string stored under key, or None."""
        with self._lock:
            try:
                row = self._connection.execute(
                    "SELECT value FROM kv_store WHERE key = ?", [key]
                ).fetchone()
            except sqlite3.Error as e:
                logger.error(f"Local cache read failed for '{key}': {e}")
                return None
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> bool:
        """
        Store a raw string.

        Returns:
            False when the write would exceed capacity or storage failed
        """
        with self._lock:
            try:
                required = self._usage_without(key) + len(key) + len(value)
                if required > self.capacity_chars:
                    error = CapacityExceededError(
                        f"Local cache quota exceeded for key '{key}'. Data will be kept in memory only.",
                        key=key,
                        required=required,
                        capacity=self.capacity_chars,
                    )
                    logger.error(str(error))
                    return False

                self._connection.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                    [key, value, datetime.now().isoformat()],
                )
                self._connection.commit()
                return True
            except sqlite3.Error as e:
                self._connection.rollback()
                logger.error(f"Error saving '{key}' to local cache: {e}")
                return False

    def remove(self, key: str) -> None:
        with self._lock:
            try:
                self._connection.execute("DELETE FROM kv_store WHERE key = ?", [key])
                self._connection.commit()
            except sqlite3.Error as e:
                logger.error(f"Error removing '{key}' from local cache: {e}")

    def keys(self) -> List[str]:
        with self._lock:
            rows = self._connection.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
        return [row[0] for row in rows]

    def clear(self) -> None:
        """Drop every key, migration flags included."""
        with self._lock:
            self._connection.execute("DELETE FROM kv_store")
            self._connection.commit()

    # =========================================================================
    # JSON COLLECTIONS
    # =========================================================================

    def get(self, key: str) -> List[Dict[str, Any]]:
        """
        Read a JSON array.

        A missing key, malformed JSON or a non-array payload all read as [].
        """
        raw = self.get_item(key)
        if raw is None:
            return []
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable cache entry '{key}': {e}")
            return []
        if not isinstance(value, list):
            logger.warning(f"Cache entry '{key}' is not an array - treating as empty")
            return []
        return value

    def set(self, key: str, records: Sequence[Any]) -> bool:
        """Serialize records as a JSON array and store them."""
        try:
            payload = json.dumps(list(records), default=_json_default)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize '{key}' for local cache: {e}")
            return False
        return self.set_item(key, payload)

    def get_mapping(self, key: str) -> Dict[str, Any]:
        """Read a JSON object; anything else reads as {}."""
        raw = self.get_item(key)
        if raw is None:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Discarding unreadable cache entry '{key}': {e}")
            return {}
        return value if isinstance(value, dict) else {}

    def set_mapping(self, key: str, mapping: Dict[str, Any]) -> bool:
        try:
            payload = json.dumps(mapping, default=_json_default)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize '{key}' for local cache: {e}")
            return False
        return self.set_item(key, payload)

    # =========================================================================
    # FLAGS
    # =========================================================================

    def get_flag(self, name: str) -> bool:
        return self.get_item(FLAG_PREFIX + name) == "true"

    def set_flag(self, name: str) -> bool:
        return self.set_item(FLAG_PREFIX + name, "true")

    # =========================================================================
    # CAPACITY
    # =========================================================================

    def _usage_without(self, key: str) -> int:
        row = self._connection.execute(
            "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(value)), 0) FROM kv_store WHERE key != ?",
            [key],
        ).fetchone()
        return int(row[0])

    def usage(self) -> Dict[str, Any]:
        """Characters used and remaining, for status display."""
        with self._lock:
            used = self._usage_without("")
        return {
            "used_chars": used,
            "capacity_chars": self.capacity_chars,
            "free_chars": max(self.capacity_chars - used, 0),
            "percent_used": round(100.0 * used / self.capacity_chars, 2) if self.capacity_chars else 0.0,
        }

    def close(self) -> None:
        with self._lock:
            self._connection.close()
