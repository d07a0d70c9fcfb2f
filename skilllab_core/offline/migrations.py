# =============================================================================
# skilllab_core/offline/migrations.py
# One-time data migrations over the cached collections
# =============================================================================
"""
Migrations run once per local cache, guarded by a ``migration:<name>`` flag.

unitBackfill:
    Attendance and assessment records of years 2 and 3 written before unit
    tracking existed have no ``unit``. The unit is taken from the owning
    group's ``currentUnit``. Records whose group has no valid current unit
    are left unscoped.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping
import logging

from skilllab_core.models.records import YEAR_UNITS, Collection, now_iso
from skilllab_core.offline.local_cache import LocalCacheStore

logger = logging.getLogger(__name__)

UNIT_BACKFILL_FLAG = "unitBackfill"


@dataclass
class MigrationResult:
    name: str
    applied: bool = False
    changed: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def total_changed(self) -> int:
        return sum(len(ids) for ids in self.changed.values())


def backfill_units(
    records: List[Dict[str, Any]],
    groups_by_id: Mapping[str, Mapping[str, Any]],
) -> List[str]:
    """
    Set ``unit`` on unit-less year 2/3 records, in place.

    Changed records get a fresh timestamp and ``synced = False`` so the
    update wins the next merge and is pushed to the remote store.

    Returns:
        Ids of changed records
    """
    changed = []
    for record in records:
        if record.get("unit"):
            continue
        try:
            year = int(record.get("year") or 0)
        except (TypeError, ValueError):
            continue
        if year not in YEAR_UNITS:
            continue

        group = groups_by_id.get(record.get("groupId"))
        unit = group.get("currentUnit") if group else None
        if unit not in YEAR_UNITS[year]:
            continue

        record["unit"] = unit
        record["timestamp"] = now_iso()
        record["synced"] = False
        changed.append(record["id"])
    return changed


def run_unit_backfill(
    cache: LocalCacheStore,
    groups: List[Dict[str, Any]],
    attendance: List[Dict[str, Any]],
    assessments: List[Dict[str, Any]],
) -> MigrationResult:
    """
    Run the unit backfill unless the flag says it already ran.

    The attendance and assessment lists are modified in place; persisting
    them is left to the caller.
    """
    result = MigrationResult(name=UNIT_BACKFILL_FLAG)
    if cache.get_flag(UNIT_BACKFILL_FLAG):
        logger.debug("Unit backfill already applied")
        return result

    groups_by_id = {g["id"]: g for g in groups if g.get("id")}
    result.changed = {
        Collection.ATTENDANCE.value: backfill_units(attendance, groups_by_id),
        Collection.ASSESSMENTS.value: backfill_units(assessments, groups_by_id),
    }
    result.applied = True

    if not cache.set_flag(UNIT_BACKFILL_FLAG):
        logger.warning("Could not persist unit backfill flag - migration will run again next start")

    logger.info(
        f"Unit backfill: {len(result.changed['attendance'])} attendance, "
        f"{len(result.changed['assessments'])} assessment records updated"
    )
    return result
