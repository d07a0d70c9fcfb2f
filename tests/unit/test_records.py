# =============================================================================
# tests/unit/test_records.py
# Unit Tests for record types and validation
# =============================================================================

import pytest

from skilllab_core.errors import ValidationError
from skilllab_core.models.records import (
    UNSCOPED,
    AssessmentRecord,
    AttendanceRecord,
    Collection,
    Group,
    Student,
    UnitScoped,
    generate_id,
    normalize_username,
    scope_for,
)


class TestCollection:

    def test_timestamp_fields(self):
        assert Collection.STUDENTS.timestamp_field == "updatedAt"
        assert Collection.GROUPS.timestamp_field == "updatedAt"
        assert Collection.ATTENDANCE.timestamp_field == "timestamp"
        assert Collection.ASSESSMENTS.timestamp_field == "timestamp"

    def test_generated_ids_are_prefixed_and_unique(self):
        ids = {generate_id(Collection.STUDENTS) for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("student-") for i in ids)


class TestUnitScope:

    def test_years_without_units_are_unscoped(self):
        assert scope_for(1, "MSK") is UNSCOPED
        assert scope_for(4, None) is UNSCOPED

    def test_year_two_with_unit(self):
        assert scope_for(2, "MSK") == UnitScoped("MSK")
        assert scope_for(2, "MSK").unit == "MSK"

    def test_unit_round_trips_through_dict(self):
        record = AttendanceRecord.from_dict({
            "id": "a1", "studentId": "s1", "date": "2024-03-04", "status": "present",
            "trainerId": "t1", "year": 3, "groupId": "group-1", "unit": "GIT",
        })
        assert record.unit == "GIT"
        assert record.to_dict()["unit"] == "GIT"

    def test_unscoped_record_has_no_unit_key(self):
        record = AttendanceRecord.from_dict({
            "id": "a1", "studentId": "s1", "date": "2024-03-04", "status": "present",
            "trainerId": "t1", "year": 1, "groupId": "group-1", "unit": "GIT",
        })
        assert record.scope is UNSCOPED
        assert "unit" not in record.to_dict()


class TestStudentValidation:

    def test_valid_student(self, student_payload):
        clean = Student.validate(student_payload)
        assert clean["name"] == "Amina Yusuf"
        assert clean["year"] == 2

    def test_name_too_short(self, student_payload):
        with pytest.raises(ValidationError) as exc:
            Student.validate({**student_payload, "name": "A"})
        assert exc.value.code == "DATA_001"

    def test_year_out_of_range(self, student_payload):
        with pytest.raises(ValidationError):
            Student.validate({**student_payload, "year": 7})

    def test_bad_student_id(self, student_payload):
        with pytest.raises(ValidationError):
            Student.validate({**student_payload, "studentId": "SL 001!"})

    def test_year_as_string_is_coerced(self, student_payload):
        assert Student.validate({**student_payload, "year": "3"})["year"] == 3

    def test_from_dict_ignores_unknown_keys(self):
        student = Student.from_dict({
            "id": "s1", "name": "Amina", "studentId": "", "year": 1,
            "groupId": "group-1", "legacyField": True,
        })
        assert student.group_id == "group-1"


class TestAttendanceValidation:

    def test_invalid_status(self, attendance_payload):
        with pytest.raises(ValidationError):
            AttendanceRecord.validate({**attendance_payload, "status": "sleeping"})

    def test_invalid_date(self, attendance_payload):
        with pytest.raises(ValidationError):
            AttendanceRecord.validate({**attendance_payload, "date": "04/03/2024"})

    def test_unit_not_allowed_for_year_one_scope_is_ignored(self, attendance_payload):
        # Unit on a year-1 record yields an unscoped record, not an error
        clean = AttendanceRecord.validate({**attendance_payload, "unit": "MSK"})
        assert clean["year"] == 1

    def test_unknown_unit_for_year(self, attendance_payload):
        with pytest.raises(ValidationError):
            AttendanceRecord.validate({**attendance_payload, "year": 2, "unit": "GIT"})


class TestAssessmentValidation:

    def test_score_above_max(self, assessment_payload):
        with pytest.raises(ValidationError):
            AssessmentRecord.validate({**assessment_payload, "score": 25})

    def test_week_out_of_range(self, assessment_payload):
        with pytest.raises(ValidationError):
            AssessmentRecord.validate({**assessment_payload, "week": 11})

    def test_default_type_is_exam(self, assessment_payload):
        payload = dict(assessment_payload)
        del payload["assessmentType"]
        assert AssessmentRecord.validate(payload)["assessmentType"] == "exam"

    def test_percentage(self, assessment_payload):
        record = AssessmentRecord.from_dict({**assessment_payload, "id": "x1"})
        assert record.percentage == 85.0

    def test_excused_has_no_percentage(self, assessment_payload):
        record = AssessmentRecord.from_dict({**assessment_payload, "id": "x1", "isExcused": True})
        assert record.percentage is None


class TestGroupValidation:

    def test_unknown_current_unit(self):
        with pytest.raises(ValidationError):
            Group.validate({"name": "Group1", "year": 2, "currentUnit": "XYZ"})

    def test_group_scope(self):
        group = Group.from_dict({"id": "group-1", "name": "Group1", "year": 2, "currentUnit": "HEM"})
        assert group.scope == UnitScoped("HEM")


def test_normalize_username():
    assert normalize_username("  Trainer4 ") == "trainer4"
