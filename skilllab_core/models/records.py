# =============================================================================
# skilllab_core/models/records.py
# Record types shared by the cache, the remote store and the facade
# =============================================================================
"""
Flat record types for students, groups, attendance and assessments.

Records travel as plain dicts with camelCase keys (the format stored in the
local cache and in the remote tables). The dataclasses here are the typed
view handed to callers, and the place where payloads are validated.

Unit scoping is explicit: a record is either ``Unscoped`` (years 1, 4, 5, 6)
or ``UnitScoped(unit)`` (years 2 and 3). On the wire an unscoped record simply
has no ``unit`` key.
"""

from __future__ import annotations
import re
import time
import uuid
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from skilllab_core.errors import ValidationError


class Collection(str, Enum):
    """Named collections, identical locally and remotely."""
    STUDENTS = "students"
    GROUPS = "groups"
    ATTENDANCE = "attendance"
    ASSESSMENTS = "assessments"

    @property
    def timestamp_field(self) -> str:
        """Field compared by last-write-wins."""
        if self in (Collection.ATTENDANCE, Collection.ASSESSMENTS):
            return "timestamp"
        return "updatedAt"

    @property
    def tracks_synced(self) -> bool:
        """Whether records of this collection carry a ``synced`` flag."""
        return self in (Collection.ATTENDANCE, Collection.ASSESSMENTS)

    @property
    def id_prefix(self) -> str:
        return {
            Collection.STUDENTS: "student",
            Collection.GROUPS: "group",
            Collection.ATTENDANCE: "attendance",
            Collection.ASSESSMENTS: "assessment",
        }[self]


ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")
ASSESSMENT_TYPES = ("exam", "quiz", "assignment", "project", "presentation")

YEAR_UNITS: Dict[int, tuple] = {
    2: ("MSK", "HEM", "CVS", "Resp"),
    3: ("GIT", "GUT", "Neuro", "END"),
}

MIN_YEAR, MAX_YEAR = 1, 6
MIN_WEEK, MAX_WEEK = 1, 10

STUDENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")


# =============================================================================
# UNIT SCOPE
# =============================================================================

class UnitScope:
    """Base of the two unit-scope variants."""

    @property
    def unit(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class Unscoped(UnitScope):
    """Record belongs to a year without unit structure."""


@dataclass(frozen=True)
class UnitScoped(UnitScope):
    """Record belongs to one curriculum unit of year 2 or 3."""
    name: str

    @property
    def unit(self) -> Optional[str]:
        return self.name


UNSCOPED = Unscoped()


def year_has_units(year: int) -> bool:
    return year in YEAR_UNITS


def scope_for(year: int, unit: Optional[str]) -> UnitScope:
    """
    Build the unit scope for a record of the given year.

    Years without units always yield ``Unscoped`` whatever ``unit`` says.
    """
    if not year_has_units(year) or not unit:
        return UNSCOPED
    return UnitScoped(unit)


# =============================================================================
# HELPERS
# =============================================================================

def now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_id(collection: Collection) -> str:
    """Generate an id such as ``student-1717171717171-3f9a0c2b1``."""
    return f"{collection.id_prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def normalize_username(username: str) -> str:
    """Usernames compare trimmed and case-insensitively."""
    return str(username).strip().lower()


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _require(data: Mapping[str, Any], key: str) -> Any:
    if key not in data or data[key] is None or data[key] == "":
        raise ValidationError(f"Missing required field '{key}'", field=key)
    return data[key]


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"Field '{key}' must be an integer", field=key, expected="int", actual=value)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{key}' must be an integer", field=key, expected="int", actual=value)


def _as_float(value: Any, key: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Field '{key}' must be a number", field=key, expected="number", actual=value)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{key}' must be a number", field=key, expected="number", actual=value)


def _check_year(year: int) -> None:
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValidationError(
            f"Year must be between {MIN_YEAR} and {MAX_YEAR}",
            field="year", expected=f"{MIN_YEAR}-{MAX_YEAR}", actual=year,
        )


def _check_date(value: str, key: str = "date") -> None:
    try:
        date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Field '{key}' must be an ISO date", field=key, expected="YYYY-MM-DD", actual=value)


def _check_scope(year: int, scope: UnitScope) -> None:
    if isinstance(scope, UnitScoped):
        if not year_has_units(year):
            raise ValidationError(
                f"Year {year} records cannot carry a unit", field="unit", actual=scope.name,
            )
        if scope.name not in YEAR_UNITS[year]:
            raise ValidationError(
                f"Unknown unit '{scope.name}' for year {year}",
                field="unit", expected=", ".join(YEAR_UNITS[year]), actual=scope.name,
            )


R = TypeVar("R", bound="BaseRecord")


# =============================================================================
# RECORD TYPES
# =============================================================================

@dataclass
class BaseRecord:
    """Shared dict conversion for all record dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation with camelCase keys; ``None`` values omitted."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "scope":
                if value.unit is not None:
                    data["unit"] = value.unit
                continue
            if value is None:
                continue
            data[to_camel(f.name)] = list(value) if isinstance(value, tuple) else value
        return data

    @classmethod
    def from_dict(cls: Type[R], data: Mapping[str, Any]) -> R:
        """Build from a wire dict; unknown keys are ignored."""
        kwargs = {}
        for f in fields(cls):
            if f.name == "scope":
                continue
            key = to_camel(f.name)
            if key in data:
                kwargs[f.name] = data[key]
        record = cls(**kwargs)
        if any(f.name == "scope" for f in fields(cls)):
            try:
                year = int(data.get("year") or 0)
            except (TypeError, ValueError):
                year = 0
            record.scope = scope_for(year, data.get("unit"))
        return record


@dataclass
class Student(BaseRecord):
    id: str
    name: str
    student_id: str
    year: int
    group_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @staticmethod
    def validate(data: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate and normalize a student payload; returns a new dict."""
        clean = dict(data)
        name = str(_require(clean, "name")).strip()
        if not 2 <= len(name) <= 100:
            raise ValidationError("Name must be 2-100 characters", field="name", actual=name)
        clean["name"] = name

        student_id = str(clean.get("studentId") or "").strip()
        if student_id and (len(student_id) > 20 or not STUDENT_ID_PATTERN.match(student_id)):
            raise ValidationError(
                "Student ID may only contain letters, digits and hyphens (max 20)",
                field="studentId", actual=student_id,
            )
        clean["studentId"] = student_id

        clean["year"] = _as_int(_require(clean, "year"), "year")
        _check_year(clean["year"])
        clean["groupId"] = str(_require(clean, "groupId"))

        email = clean.get("email")
        if email and "@" not in str(email):
            raise ValidationError("Invalid email address", field="email", actual=email)
        return clean


@dataclass
class Group(BaseRecord):
    id: str
    name: str
    year: int
    description: Optional[str] = None
    current_unit: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def scope(self) -> UnitScope:
        return scope_for(self.year, self.current_unit)

    @staticmethod
    def validate(data: Mapping[str, Any]) -> Dict[str, Any]:
        clean = dict(data)
        clean["name"] = str(_require(clean, "name")).strip()
        clean["year"] = _as_int(_require(clean, "year"), "year")
        _check_year(clean["year"])
        unit = clean.get("currentUnit")
        if unit:
            known = {u for units in YEAR_UNITS.values() for u in units}
            if unit not in known:
                raise ValidationError(f"Unknown unit '{unit}'", field="currentUnit", actual=unit)
        else:
            clean.pop("currentUnit", None)
        return clean


@dataclass
class AttendanceRecord(BaseRecord):
    id: str
    student_id: str
    date: str
    status: str
    trainer_id: str
    year: int
    group_id: str
    timestamp: Optional[str] = None
    synced: bool = False
    notes: Optional[str] = None
    scope: UnitScope = field(default=UNSCOPED)

    @property
    def unit(self) -> Optional[str]:
        return self.scope.unit

    @staticmethod
    def validate(data: Mapping[str, Any]) -> Dict[str, Any]:
        clean = dict(data)
        for key in ("studentId", "trainerId", "groupId"):
            clean[key] = str(_require(clean, key))
        _check_date(_require(clean, "date"))
        status = _require(clean, "status")
        if status not in ATTENDANCE_STATUSES:
            raise ValidationError(
                f"Invalid attendance status '{status}'",
                field="status", expected="|".join(ATTENDANCE_STATUSES), actual=status,
            )
        clean["year"] = _as_int(_require(clean, "year"), "year")
        _check_year(clean["year"])
        _check_scope(clean["year"], scope_for(clean["year"], clean.get("unit")))
        return clean


@dataclass
class AssessmentRecord(BaseRecord):
    id: str
    student_id: str
    assessment_name: str
    assessment_type: str
    score: float
    max_score: float
    date: str
    year: int
    group_id: str
    trainer_id: str
    week: Optional[int] = None
    notes: Optional[str] = None
    is_excused: bool = False
    timestamp: Optional[str] = None
    synced: bool = False
    exported_to_admin: Optional[bool] = None
    exported_at: Optional[str] = None
    exported_by: Optional[str] = None
    reviewed_by_admin: Optional[bool] = None
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    last_edited_at: Optional[str] = None
    last_edited_by: Optional[str] = None
    edit_count: Optional[int] = None
    scope: UnitScope = field(default=UNSCOPED)

    @property
    def unit(self) -> Optional[str]:
        return self.scope.unit

    @property
    def percentage(self) -> Optional[float]:
        if self.is_excused or not self.max_score:
            return None
        return round(100.0 * self.score / self.max_score, 2)

    @staticmethod
    def validate(data: Mapping[str, Any]) -> Dict[str, Any]:
        clean = dict(data)
        for key in ("studentId", "trainerId", "groupId"):
            clean[key] = str(_require(clean, key))
        clean["assessmentName"] = str(_require(clean, "assessmentName")).strip()
        assessment_type = clean.get("assessmentType") or "exam"
        if assessment_type not in ASSESSMENT_TYPES:
            raise ValidationError(
                f"Invalid assessment type '{assessment_type}'",
                field="assessmentType", expected="|".join(ASSESSMENT_TYPES), actual=assessment_type,
            )
        clean["assessmentType"] = assessment_type
        _check_date(_require(clean, "date"))

        max_score = _as_float(_require(clean, "maxScore"), "maxScore")
        score = _as_float(clean.get("score", 0), "score")
        if max_score <= 0:
            raise ValidationError("maxScore must be positive", field="maxScore", actual=max_score)
        if not 0 <= score <= max_score:
            raise ValidationError(
                "Score must be between 0 and maxScore", field="score",
                expected=f"0-{max_score:g}", actual=score,
            )
        clean["score"], clean["maxScore"] = score, max_score

        if clean.get("week") is not None:
            week = _as_int(clean["week"], "week")
            if not MIN_WEEK <= week <= MAX_WEEK:
                raise ValidationError(
                    f"Week must be between {MIN_WEEK} and {MAX_WEEK}", field="week", actual=week,
                )
            clean["week"] = week

        clean["year"] = _as_int(_require(clean, "year"), "year")
        _check_year(clean["year"])
        _check_scope(clean["year"], scope_for(clean["year"], clean.get("unit")))
        clean["isExcused"] = bool(clean.get("isExcused", False))
        return clean


@dataclass
class User(BaseRecord):
    id: str
    username: str
    email: str = ""
    role: str = "trainer"
    assigned_groups: List[str] = field(default_factory=list)
    assigned_years: List[int] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[str] = None
    last_login: Optional[str] = None


RECORD_TYPES = {
    Collection.STUDENTS: Student,
    Collection.GROUPS: Group,
    Collection.ATTENDANCE: AttendanceRecord,
    Collection.ASSESSMENTS: AssessmentRecord,
}
