"""Constraint checking for candidate session slots.

Every check returns a ValidationResult; a violation is a value, never an
exception. ``validate_all`` runs the checks cheapest first and stops at the
first failure.
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from caseload_scheduler.config import SchedulingConstraints
from caseload_scheduler.domain.slots import EARLY_GRADES, TimeSlot, ValidationResult, grade_key
from caseload_scheduler.services.timeplan import minute_ranges_overlap, time_to_minutes

if TYPE_CHECKING:
    from caseload_scheduler.domain.models import SchoolHours, Student
    from caseload_scheduler.engine.context import SchedulingContext

Interval = Tuple[int, int]

# Constraint names reported in ValidationResult.constraint
SCHOOL_HOURS = "school_hours"
BELL_SCHEDULE = "bell_schedule"
SPECIAL_ACTIVITY = "special_activity"
OVERLAP = "overlap"
CONSECUTIVE = "consecutive_limit"
BREAK = "break_requirement"
CAPACITY = "capacity"
WORK_LOCATION = "work_location"


def block_minutes(interval: Interval, others: Iterable[Interval]) -> int:
    """Length of the back-to-back run (gap 0 on either side) that ``interval`` belongs to."""
    start, end = interval
    before = sorted((o for o in others if o[1] <= start), key=lambda o: o[1], reverse=True)
    after = sorted((o for o in others if o[0] >= end), key=lambda o: o[0])

    total = end - start
    edge = start
    for other in before:
        if other[1] != edge:
            break
        total += other[1] - other[0]
        edge = other[0]
    edge = end
    for other in after:
        if other[0] != edge:
            break
        total += other[1] - other[0]
        edge = other[1]
    return total


def neighbour_gaps(interval: Interval, others: Iterable[Interval]) -> List[int]:
    """Minutes to the nearest session before and after ``interval`` (where there is one)."""
    start, end = interval
    others = list(others)
    gaps = []
    ends_before = [o[1] for o in others if o[1] <= start]
    starts_after = [o[0] for o in others if o[0] >= end]
    if ends_before:
        gaps.append(start - max(ends_before))
    if starts_after:
        gaps.append(min(starts_after) - end)
    return gaps


def _consecutive_result(interval: Interval, others: Iterable[Interval], constraints: SchedulingConstraints) -> ValidationResult:
    limit = constraints.max_consecutive_minutes
    duration = interval[1] - interval[0]
    if duration > limit:
        return ValidationResult.fail(
            CONSECUTIVE, f"Session of {duration} minutes exceeds {limit} consecutive minutes", block_minutes=duration
        )
    total = block_minutes(interval, others)
    if total > limit:
        return ValidationResult.fail(
            CONSECUTIVE, f"Back-to-back sessions total {total} minutes (max {limit})", block_minutes=total
        )
    return ValidationResult.ok()


def _break_result(interval: Interval, others: Iterable[Interval], constraints: SchedulingConstraints) -> ValidationResult:
    for gap in neighbour_gaps(interval, others):
        if 0 < gap < constraints.min_break_minutes:
            return ValidationResult.fail(
                BREAK,
                f"Only {gap} minutes between sessions (min break {constraints.min_break_minutes})",
                gap_minutes=gap,
            )
    return ValidationResult.ok()


def check_interval_against(
    interval: Interval,
    others: Iterable[Interval],
    constraints: SchedulingConstraints,
) -> ValidationResult:
    """
    Check one session interval against a student's other sessions that day.

    Only the candidate's own neighbourhood is judged: its overlaps, the
    back-to-back run it joins, and the gaps to the sessions directly before
    and after it.

    Args:
        interval: Candidate (start, end) in minutes
        others: The student's other (start, end) intervals on the same day
        constraints: Active scheduling constraints

    Returns:
        ValidationResult naming the first rule broken, if any
    """
    others = list(others)
    for other in others:
        if minute_ranges_overlap(interval, other):
            return ValidationResult.fail(OVERLAP, "Overlaps another session for this student", other=other)

    result = _consecutive_result(interval, others, constraints)
    if not result.valid:
        return result
    return _break_result(interval, others, constraints)


def check_day_sequence(intervals: Sequence[Interval], constraints: SchedulingConstraints) -> ValidationResult:
    """Check a whole day of one student's sessions by adding them one at a time in start order."""
    placed: List[Interval] = []
    for interval in sorted(intervals):
        result = check_interval_against(interval, placed, constraints)
        if not result.valid:
            return result
        placed.append(interval)
    return ValidationResult.ok()


class ConstraintValidator:
    """Stateless slot checks against a scheduling context."""

    def __init__(self, constraints: SchedulingConstraints | None = None):
        self.constraints = constraints or SchedulingConstraints()
        self.checks: Counter = Counter()
        self.failures: Counter = Counter()

    def _record(self, name: str, result: ValidationResult) -> ValidationResult:
        self.checks[name] += 1
        if not result.valid:
            self.failures[name] += 1
        return result

    def school_window(self, slot: TimeSlot, student: "Student", school_hours: Iterable["SchoolHours"]) -> Interval:
        """
        The school-day window that applies to a student on the slot's day.

        K/TK rows may be split into '-AM'/'-PM' variants, chosen by the slot's
        start hour. 'default' rows cover every other grade. Without a matching
        row the configured school start/end is used.
        """
        grade = grade_key(student.grade_level)
        rows = {grade_key(h.grade_level): h for h in school_hours if h.day_of_week == slot.day_of_week}

        row = None
        if grade in EARLY_GRADES:
            half = "AM" if slot.start_minutes < 12 * 60 else "PM"
            row = rows.get(f"{grade}-{half}") or rows.get(grade)
        else:
            row = rows.get(grade) or rows.get("DEFAULT")

        if row is None:
            return (
                time_to_minutes(self.constraints.school_start_time),
                time_to_minutes(self.constraints.school_end_time),
            )
        return (time_to_minutes(row.start_time), time_to_minutes(row.end_time))

    def validate_school_hours(
        self, slot: TimeSlot, student: "Student", school_hours: Iterable["SchoolHours"]
    ) -> ValidationResult:
        """Fail unless ``[start, end)`` lies inside the grade's school-day window."""
        window_start, window_end = self.school_window(slot, student, school_hours)
        if slot.start_minutes < window_start or slot.end_minutes > window_end:
            result = ValidationResult.fail(
                SCHOOL_HOURS,
                f"{slot.start_time}-{slot.end_time} is outside school hours for grade {student.grade_level}",
                window=(window_start, window_end),
            )
        else:
            result = ValidationResult.ok()
        return self._record(SCHOOL_HOURS, result)

    def validate_bell_conflicts(
        self, slot: TimeSlot, student: "Student", context: "SchedulingContext"
    ) -> ValidationResult:
        for bell in context.bells_for(student.grade_level, slot.day_of_week):
            if minute_ranges_overlap(slot.interval(), (time_to_minutes(bell.start_time), time_to_minutes(bell.end_time))):
                return self._record(
                    BELL_SCHEDULE,
                    ValidationResult.fail(
                        BELL_SCHEDULE,
                        f"Conflicts with {bell.period_name or 'bell schedule'} "
                        f"({bell.start_time}-{bell.end_time}) for grade {student.grade_level}",
                        period=bell.period_name,
                    ),
                )
        return self._record(BELL_SCHEDULE, ValidationResult.ok())

    def validate_activity_conflicts(
        self, slot: TimeSlot, student: "Student", context: "SchedulingContext"
    ) -> ValidationResult:
        for activity in context.activities_for(student.teacher_name, slot.day_of_week):
            if minute_ranges_overlap(
                slot.interval(), (time_to_minutes(activity.start_time), time_to_minutes(activity.end_time))
            ):
                return self._record(
                    SPECIAL_ACTIVITY,
                    ValidationResult.fail(
                        SPECIAL_ACTIVITY,
                        f"Conflicts with {activity.activity_name or 'special activity'} "
                        f"({activity.start_time}-{activity.end_time}) for {student.teacher_name}",
                        activity=activity.activity_name,
                    ),
                )
        return self._record(SPECIAL_ACTIVITY, ValidationResult.ok())

    def validate_no_overlap(
        self, slot: TimeSlot, student: "Student", context: "SchedulingContext"
    ) -> ValidationResult:
        for other in context.student_intervals(student.id, slot.day_of_week):
            if minute_ranges_overlap(slot.interval(), other):
                return self._record(
                    OVERLAP,
                    ValidationResult.fail(OVERLAP, "Overlaps another session for this student", other=other),
                )
        return self._record(OVERLAP, ValidationResult.ok())

    def validate_consecutive_limit(
        self, slot: TimeSlot, student: "Student", context: "SchedulingContext"
    ) -> ValidationResult:
        others = context.student_intervals(student.id, slot.day_of_week)
        return self._record(CONSECUTIVE, _consecutive_result(slot.interval(), others, self.constraints))

    def validate_break_requirement(
        self, slot: TimeSlot, student: "Student", context: "SchedulingContext"
    ) -> ValidationResult:
        others = context.student_intervals(student.id, slot.day_of_week)
        return self._record(BREAK, _break_result(slot.interval(), others, self.constraints))

    def validate_capacity(
        self, slot: TimeSlot, context: "SchedulingContext", max_capacity: Optional[int] = None
    ) -> ValidationResult:
        """Fail when the sessions already overlapping the slot reach the allowed capacity."""
        limit = max_capacity if max_capacity is not None else self.constraints.max_concurrent_sessions
        occupancy = context.count_overlapping(slot.day_of_week, slot.start_minutes, slot.end_minutes)
        if occupancy >= limit:
            result = ValidationResult.fail(
                CAPACITY,
                f"Slot {slot.start_time} on day {slot.day_of_week} is full ({occupancy}/{limit})",
                occupancy=occupancy,
                limit=limit,
            )
        else:
            result = ValidationResult.ok()
        return self._record(CAPACITY, result)

    def validate_work_location(self, slot: TimeSlot, work_days: Iterable[int]) -> ValidationResult:
        if slot.day_of_week in set(work_days):
            result = ValidationResult.ok()
        else:
            result = ValidationResult.fail(
                WORK_LOCATION, f"Provider is not at this school on day {slot.day_of_week}"
            )
        return self._record(WORK_LOCATION, result)

    def validate_all(
        self,
        slot: TimeSlot,
        student: "Student",
        context: "SchedulingContext",
        max_capacity: Optional[int] = None,
    ) -> ValidationResult:
        """
        Run every check in order: hours, bell, activity, overlap, consecutive, break, capacity.

        Returns:
            The first failing ValidationResult, or a passing one
        """
        checks = (
            lambda: self.validate_school_hours(slot, student, context.school_hours),
            lambda: self.validate_bell_conflicts(slot, student, context),
            lambda: self.validate_activity_conflicts(slot, student, context),
            lambda: self.validate_no_overlap(slot, student, context),
            lambda: self.validate_consecutive_limit(slot, student, context),
            lambda: self.validate_break_requirement(slot, student, context),
            lambda: self.validate_capacity(slot, context, max_capacity),
        )
        for check in checks:
            result = check()
            if not result.valid:
                return result
        return ValidationResult.ok()

    def metrics(self) -> Dict[str, Dict[str, int]]:
        return {
            name: {"checks": self.checks[name], "failures": self.failures[name]}
            for name in sorted(self.checks)
        }
