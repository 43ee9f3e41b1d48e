"""Scoring functions for slot combinations and student difficulty."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Sequence

from caseload_scheduler.config import ScoreWeights
from caseload_scheduler.domain.slots import EARLY_GRADES, TimeSlot, grade_key, group_slots_by_day
from caseload_scheduler.services.timeplan import minute_ranges_overlap, time_to_minutes

if TYPE_CHECKING:
    from caseload_scheduler.domain.models import ScheduleSession, Student

# (first hour, last hour exclusive, score)
TIME_OF_DAY_SCORES = (
    (8, 11, 0.8),
    (11, 13, 1.0),
    (13, 15, 0.6),
)


def score_combination(
    slots: Sequence[TimeSlot],
    grade: str,
    existing_sessions: Iterable["ScheduleSession"],
    grade_map: Mapping[str, str],
    weights: ScoreWeights,
    max_concurrent: int,
) -> float:
    """
    Calculate the weighted score of one candidate combination.

    Higher score = better combination.

    Args:
        slots: Slots making up the combination
        grade: Grade of the student being placed
        existing_sessions: Sessions already in the context
        grade_map: student_id -> grade for every known student
        weights: Score weights from config
        max_concurrent: Slot capacity, used to find the preferred occupancy

    Returns:
        Weighted sum of the four component scores (0.0 - 1.0 with default weights)
    """
    # 1. Co-location with same-grade students
    score = grade_grouping_score(slots, grade, existing_sessions, grade_map) * weights.grade_grouping

    # 2. Spread across days
    score += distribution_score(slots) * weights.even_distribution

    # 3. Time of day
    score += time_preference_score(slots) * weights.time_preference

    # 4. Moderate occupancy
    score += capacity_utilization_score(slots, max_concurrent) * weights.capacity_utilization

    return score


def grade_grouping_score(
    slots: Sequence[TimeSlot],
    grade: str,
    existing_sessions: Iterable["ScheduleSession"],
    grade_map: Mapping[str, str],
) -> float:
    """Average, over slots, of the same-grade share among sessions overlapping each slot."""
    if not slots:
        return 0.0
    target = grade_key(grade)
    scheduled = [s for s in existing_sessions if s.day_of_week is not None and s.start_time and s.end_time]

    total = 0.0
    for slot in slots:
        overlapping = [
            s
            for s in scheduled
            if s.day_of_week == slot.day_of_week
            and minute_ranges_overlap(slot.interval(), (time_to_minutes(s.start_time), time_to_minutes(s.end_time)))
        ]
        if overlapping:
            same = sum(1 for s in overlapping if grade_key(grade_map.get(s.student_id)) == target)
            total += same / len(overlapping)
    return total / len(slots)


def distribution_score(slots: Sequence[TimeSlot]) -> float:
    """1 - variance/mean of sessions per used day, floored at 0."""
    counts = [len(day_slots) for day_slots in group_slots_by_day(list(slots)).values()]
    if not counts:
        return 0.0
    avg = sum(counts) / len(counts)
    variance = sum((c - avg) ** 2 for c in counts) / len(counts)
    return max(0.0, 1 - variance / max(1.0, avg))


def time_preference_score(slots: Sequence[TimeSlot]) -> float:
    if not slots:
        return 0.0
    total = 0.0
    for slot in slots:
        hour = slot.start_minutes // 60
        for first, last, value in TIME_OF_DAY_SCORES:
            if first <= hour < last:
                total += value
                break
    return total / len(slots)


def capacity_utilization_score(slots: Sequence[TimeSlot], max_concurrent: int) -> float:
    """Prefer slots about half full: 1 at occupancy ``max_concurrent / 2``, falling off linearly."""
    if not slots:
        return 0.0
    optimal = max_concurrent / 2
    if optimal <= 0:
        return 0.0
    avg = sum(s.occupancy for s in slots) / len(slots)
    return max(0.0, 1 - abs(avg - optimal) / optimal)


def enumerate_combinations(pool: Sequence[TimeSlot], size: int, budget: int) -> List[List[TimeSlot]]:
    """
    Size-``size`` combinations of ``pool`` by include/exclude recursion.

    Stops once ``budget`` combinations have been produced; the first one is
    always ``pool[:size]``.
    """
    combinations: List[List[TimeSlot]] = []
    if size <= 0 or size > len(pool) or budget <= 0:
        return combinations

    def generate(current: List[TimeSlot], start: int, needed: int) -> None:
        if len(combinations) >= budget:
            return
        if needed == 0:
            combinations.append(list(current))
            return
        if len(pool) - start < needed:
            return
        current.append(pool[start])
        generate(current, start + 1, needed - 1)
        current.pop()
        generate(current, start + 1, needed)

    generate([], 0, size)
    return combinations


def scheduling_difficulty(student: "Student") -> float:
    """
    How hard a student is to place; harder students are scheduled first.

    2 per weekly session, 1 per 15 session minutes, 1 per 30 weekly minutes,
    and 5 extra for K/TK.
    """
    sessions = student.sessions_per_week or 0
    minutes = student.minutes_per_session or 30
    difficulty = sessions * 2 + minutes / 15 + (sessions * minutes) / 30
    if grade_key(student.grade_level) in EARLY_GRADES:
        difficulty += 5
    return difficulty


def summarize_scores(slots: Sequence[TimeSlot], grade: str, existing_sessions, grade_map, max_concurrent: int) -> Dict[str, float]:
    """Component scores for one combination, for logging and diagnostics."""
    existing = list(existing_sessions)
    return {
        "grade_grouping": grade_grouping_score(slots, grade, existing, grade_map),
        "distribution": distribution_score(slots),
        "time_preference": time_preference_score(slots),
        "capacity_utilization": capacity_utilization_score(slots, max_concurrent),
    }
