from skilllab_core.models.records import (
    Collection,
    UnitScope,
    Unscoped,
    UnitScoped,
    UNSCOPED,
    Student,
    Group,
    AttendanceRecord,
    AssessmentRecord,
    User,
    RECORD_TYPES,
    YEAR_UNITS,
    ATTENDANCE_STATUSES,
    ASSESSMENT_TYPES,
    scope_for,
    year_has_units,
    now_iso,
    generate_id,
    normalize_username,
)

__all__ = [
    "Collection",
    "UnitScope",
    "Unscoped",
    "UnitScoped",
    "UNSCOPED",
    "Student",
    "Group",
    "AttendanceRecord",
    "AssessmentRecord",
    "User",
    "RECORD_TYPES",
    "YEAR_UNITS",
    "ATTENDANCE_STATUSES",
    "ASSESSMENT_TYPES",
    "scope_for",
    "year_has_units",
    "now_iso",
    "generate_id",
    "normalize_username",
]
