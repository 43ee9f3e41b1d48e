"""Tests for slot constraint checks."""

import pytest

from caseload_scheduler.config import SchedulingConstraints
from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, SchoolHours, SpecialActivity, Student
from caseload_scheduler.domain.slots import TimeSlot
from caseload_scheduler.engine.context import SchedulingContext
from caseload_scheduler.services.constraints import (
    BELL_SCHEDULE,
    BREAK,
    CAPACITY,
    CONSECUTIVE,
    OVERLAP,
    SCHOOL_HOURS,
    SPECIAL_ACTIVITY,
    ConstraintValidator,
    check_day_sequence,
)


def _student(student_id="s1", grade="3", teacher="Ms. Rivera"):
    return Student(id=student_id, provider_id="prov-1", initials="AB", grade_level=grade, teacher_name=teacher,
                   sessions_per_week=2, minutes_per_session=30, school_site="Lincoln")


def _session(student_id, day, start, end):
    return ScheduleSession(student_id=student_id, provider_id="prov-1", day_of_week=day,
                           start_time=start, end_time=end)


def _context(sessions=(), bells=None, activities=None, hours=()):
    return SchedulingContext(
        provider_id="prov-1",
        school_site="Lincoln",
        work_days=[1, 2, 3, 4, 5],
        bell_schedules=bells or {},
        special_activities=activities or {},
        school_hours=list(hours),
        existing_sessions=list(sessions),
    )


@pytest.fixture
def validator():
    return ConstraintValidator(SchedulingConstraints())


def test_school_hours_fallback_window(validator):
    """Without school-hours rows the configured 08:00-15:00 window applies."""
    student = _student()
    assert validator.validate_school_hours(TimeSlot(1, "14:30", "15:00"), student, []).valid
    result = validator.validate_school_hours(TimeSlot(1, "14:45", "15:15"), student, [])
    assert not result.valid
    assert result.constraint == SCHOOL_HOURS
    assert not validator.validate_school_hours(TimeSlot(1, "07:45", "08:15"), student, []).valid


def test_school_hours_default_row_for_regular_grades(validator):
    hours = [SchoolHours(day_of_week=1, grade_level="default", start_time="08:30", end_time="14:00")]
    student = _student(grade="3")
    assert not validator.validate_school_hours(TimeSlot(1, "08:00", "08:30"), student, hours).valid
    assert validator.validate_school_hours(TimeSlot(1, "08:30", "09:00"), student, hours).valid
    # Other days fall back to the configured window
    assert validator.validate_school_hours(TimeSlot(2, "08:00", "08:30"), student, hours).valid


def test_school_hours_kindergarten_am_pm(validator):
    """K rows are chosen by the slot's start hour; default rows do not apply to K."""
    hours = [
        SchoolHours(day_of_week=1, grade_level="K-AM", start_time="08:00:00", end_time="11:30:00"),
        SchoolHours(day_of_week=1, grade_level="K-PM", start_time="12:00:00", end_time="14:00:00"),
        SchoolHours(day_of_week=1, grade_level="default", start_time="09:00:00", end_time="10:00:00"),
    ]
    k = _student(grade="K")
    assert validator.validate_school_hours(TimeSlot(1, "08:00", "08:30"), k, hours).valid
    assert not validator.validate_school_hours(TimeSlot(1, "11:15", "11:45"), k, hours).valid
    assert validator.validate_school_hours(TimeSlot(1, "12:30", "13:00"), k, hours).valid
    assert not validator.validate_school_hours(TimeSlot(1, "13:45", "14:15"), k, hours).valid


def test_bell_conflict(validator):
    bell = BellSchedule(grade_level="K", day_of_week=1, start_time="08:00", end_time="08:30", period_name="Circle")
    context = _context(bells={"K": {1: [bell]}})
    k = _student(grade="K")

    result = validator.validate_bell_conflicts(TimeSlot(1, "08:15", "08:45"), k, context)
    assert not result.valid
    assert result.constraint == BELL_SCHEDULE
    assert "Circle" in result.reason
    assert validator.validate_bell_conflicts(TimeSlot(1, "08:30", "09:00"), k, context).valid
    assert validator.validate_bell_conflicts(TimeSlot(2, "08:00", "08:30"), k, context).valid
    assert validator.validate_bell_conflicts(TimeSlot(1, "08:00", "08:30"), _student(grade="3"), context).valid


def test_activity_conflict(validator):
    pe = SpecialActivity(teacher_name="Ms. Rivera", day_of_week=3, start_time="13:00", end_time="13:45",
                         activity_name="PE")
    context = _context(activities={"ms. rivera": {3: [pe]}})

    result = validator.validate_activity_conflicts(TimeSlot(3, "13:30", "14:00"), _student(), context)
    assert not result.valid
    assert result.constraint == SPECIAL_ACTIVITY
    assert validator.validate_activity_conflicts(TimeSlot(3, "13:45", "14:15"), _student(), context).valid
    assert validator.validate_activity_conflicts(
        TimeSlot(3, "13:30", "14:00"), _student(teacher="Mr. Chen"), context
    ).valid


def test_no_overlap_only_for_same_student(validator):
    context = _context([_session("s1", 1, "09:00", "09:30"), _session("s2", 1, "10:00", "10:30")])
    result = validator.validate_no_overlap(TimeSlot(1, "09:15", "09:45"), _student("s1"), context)
    assert not result.valid
    assert result.constraint == OVERLAP
    assert validator.validate_no_overlap(TimeSlot(1, "10:00", "10:30"), _student("s1"), context).valid


def test_consecutive_limit(validator):
    """Back-to-back sessions may total 60 minutes, not more."""
    context = _context([_session("s1", 1, "09:00", "09:30")])
    assert validator.validate_consecutive_limit(TimeSlot(1, "09:30", "10:00"), _student(), context).valid

    context = _context([_session("s1", 1, "09:00", "09:45")])
    result = validator.validate_consecutive_limit(TimeSlot(1, "09:45", "10:15"), _student(), context)
    assert not result.valid
    assert result.constraint == CONSECUTIVE
    assert result.details["block_minutes"] == 75


def test_consecutive_block_joins_both_sides(validator):
    context = _context([_session("s1", 1, "09:00", "09:20"), _session("s1", 1, "09:40", "10:00")])
    result = validator.validate_consecutive_limit(TimeSlot(1, "09:20", "09:40"), _student(), context)
    assert result.valid
    context = _context([_session("s1", 1, "09:00", "09:25"), _session("s1", 1, "09:45", "10:05")])
    assert not validator.validate_consecutive_limit(TimeSlot(1, "09:25", "09:45"), _student(), context).valid


def test_single_session_longer_than_limit(validator):
    result = validator.validate_consecutive_limit(TimeSlot(1, "09:00", "10:15"), _student(), _context())
    assert not result.valid
    assert result.constraint == CONSECUTIVE


def test_break_requirement(validator):
    context = _context([_session("s1", 1, "09:00", "09:30")])
    result = validator.validate_break_requirement(TimeSlot(1, "09:45", "10:15"), _student(), context)
    assert not result.valid
    assert result.constraint == BREAK
    assert result.details["gap_minutes"] == 15
    assert validator.validate_break_requirement(TimeSlot(1, "10:00", "10:30"), _student(), context).valid
    # Zero gap is a consecutive block, not a break
    assert validator.validate_break_requirement(TimeSlot(1, "09:30", "10:00"), _student(), context).valid
    # Other students do not count
    assert validator.validate_break_requirement(TimeSlot(1, "09:45", "10:15"), _student("s2"), context).valid


def test_capacity(validator):
    context = _context([_session("a", 1, "09:00", "09:30"), _session("b", 1, "09:15", "09:45")])
    result = validator.validate_capacity(TimeSlot(1, "09:10", "09:40"), context, max_capacity=2)
    assert not result.valid
    assert result.constraint == CAPACITY
    assert validator.validate_capacity(TimeSlot(1, "09:10", "09:40"), context, max_capacity=3).valid
    assert validator.validate_capacity(TimeSlot(1, "09:45", "10:15"), context, max_capacity=1).valid


def test_validate_all_reports_first_failure_in_order(validator):
    """Hours come before bells, bells before capacity."""
    bell = BellSchedule(grade_level="3", day_of_week=1, start_time="09:00", end_time="09:30")
    full = [_session(f"x{i}", 1, "09:00", "09:30") for i in range(6)]
    context = _context(full, bells={"3": {1: [bell]}})

    assert validator.validate_all(TimeSlot(1, "09:00", "09:30"), _student(), context).constraint == BELL_SCHEDULE
    assert validator.validate_all(TimeSlot(1, "14:50", "15:20"), _student(), context).constraint == SCHOOL_HOURS
    assert validator.validate_all(TimeSlot(2, "09:00", "09:30"), _student(), context).valid

    no_bells = _context(full)
    assert validator.validate_all(TimeSlot(1, "09:00", "09:30"), _student(), no_bells).constraint == CAPACITY


def test_validate_work_location(validator):
    assert validator.validate_work_location(TimeSlot(2, "09:00", "09:30"), [1, 2]).valid
    assert not validator.validate_work_location(TimeSlot(3, "09:00", "09:30"), [1, 2]).valid


def test_check_day_sequence():
    rules = SchedulingConstraints()
    assert check_day_sequence([(540, 570), (570, 600), (630, 660)], rules).valid
    assert check_day_sequence([(540, 570), (600, 630)], rules).valid
    assert check_day_sequence([(540, 570), (550, 580)], rules).constraint == OVERLAP
    assert check_day_sequence([(540, 570), (580, 610)], rules).constraint == BREAK
    assert check_day_sequence([(540, 570), (570, 600), (600, 620)], rules).constraint == CONSECUTIVE


def test_metrics_count_checks_and_failures(validator):
    context = _context([_session("s1", 1, "09:00", "09:30")])
    validator.validate_no_overlap(TimeSlot(1, "09:00", "09:30"), _student(), context)
    validator.validate_no_overlap(TimeSlot(1, "10:00", "10:30"), _student(), context)
    assert validator.metrics()["overlap"] == {"checks": 2, "failures": 1}
