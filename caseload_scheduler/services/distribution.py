"""Slot distribution strategies: choose N slots from a validated pool."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from caseload_scheduler.config import (
    STRATEGY_AUTO,
    STRATEGY_COMPACT,
    STRATEGY_EVEN,
    STRATEGY_GRADE_GROUPED,
    STRATEGY_SPREAD,
    STRATEGY_TWO_PASS,
    DistributionConfig,
    SchedulingConstraints,
)
from caseload_scheduler.domain.slots import TimeSlot, grade_key, group_slots_by_day
from caseload_scheduler.services.constraints import check_interval_against
from caseload_scheduler.services.timeplan import minute_ranges_overlap, time_to_minutes

if TYPE_CHECKING:
    from caseload_scheduler.domain.models import ScheduleSession, Student

logger = logging.getLogger(__name__)

Interval = Tuple[int, int]
SlotKey = Callable[[TimeSlot], tuple]


def _earliest(slot: TimeSlot) -> tuple:
    return (slot.start_minutes,)


class SlotDistributor:
    """
    Picks session slots for one student from a pool of already-validated slots.

    Every strategy walks the student's available days and only accepts a slot
    that is compatible (no overlap, break and consecutive rules) with the
    student's sessions already on that day, including earlier picks. A day is
    closed once it holds ``max_sessions_per_day`` sessions for the student.
    """

    def __init__(
        self,
        constraints: SchedulingConstraints | None = None,
        distribution: DistributionConfig | None = None,
    ):
        self.constraints = constraints or SchedulingConstraints()
        self.distribution = distribution or DistributionConfig()

    @property
    def second_pass_limit(self) -> int:
        limit = self.distribution.second_pass_limit
        return limit if limit is not None else self.constraints.max_concurrent_sessions

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def distribute_evenly(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """
        Round-robin over days, earliest compatible slot on each day.

        Days are visited in order of the student's sessions that day, then total
        load that day, then day number.

        Args:
            count: Number of slots wanted
            slots: Validated candidate pool
            student_sessions: Student's existing intervals by day
            day_loads: Sessions already on each day (any student)

        Returns:
            Up to ``count`` slots in pick order
        """
        return self._walk(count, slots, _earliest, student_sessions, day_loads)

    def distribute_with_grade_grouping(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        grade: str,
        grade_map: Mapping[str, str],
        existing_sessions: Iterable["ScheduleSession"],
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """Like ``distribute_evenly``, but within a day prefer slots shared with same-grade sessions."""
        same_grade = self._same_grade_counter(grade, grade_map, existing_sessions)

        def in_day(slot: TimeSlot) -> tuple:
            return (slot.occupancy, -same_grade(slot), slot.start_minutes)

        return self._walk(count, slots, in_day, student_sessions, day_loads)

    def distribute_two_pass(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        first_pass_limit: Optional[int] = None,
        second_pass_limit: Optional[int] = None,
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """
        Fill lightly loaded slots first, then relax the capacity ceiling.

        Pass 1 only uses slots whose occupancy is below ``first_pass_limit``
        across all days. Pass 2 runs only if pass 1 came up short and may use
        any remaining slot with occupancy below ``second_pass_limit``.
        """
        first = first_pass_limit if first_pass_limit is not None else self.distribution.first_pass_limit
        second = second_pass_limit if second_pass_limit is not None else self.second_pass_limit

        light = [s for s in slots if s.occupancy < first]
        picks = self._walk(count, light, _earliest, student_sessions, day_loads)
        if len(picks) >= count:
            return picks

        logger.debug("Two-pass: first pass found %d of %d, relaxing capacity to %d", len(picks), count, second)
        taken = {s.key for s in picks}
        relaxed = [s for s in slots if s.key not in taken and s.occupancy < second]
        merged = _with_picks(student_sessions, picks)
        loads = _with_loads(day_loads, picks)
        return picks + self._walk(count - len(picks), relaxed, _earliest, merged, loads)

    def distribute_spread(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """Place sessions on days spaced as far apart as the week allows (Mon/Wed/Fri for three)."""
        days = sorted(group_slots_by_day(slots))
        if count > 1 and count < len(days):
            chosen = [days[round(i * (len(days) - 1) / (count - 1))] for i in range(count)]
        elif count == 1 and days:
            chosen = [days[len(days) // 2]]
        else:
            chosen = list(days)
        order = list(dict.fromkeys(chosen + days))
        return self._walk(count, slots, _earliest, student_sessions, day_loads, day_order=order)

    def distribute_compact(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """Use as few days as possible: fill each day up to the per-day cap before moving on."""
        sessions = student_sessions or {}
        loads = day_loads or {}
        days = sorted(group_slots_by_day(slots), key=lambda d: (-len(sessions.get(d, [])), loads.get(d, 0), d))
        return self._walk(count, slots, _earliest, student_sessions, day_loads, day_order=days, fill_day=True)

    # ------------------------------------------------------------------
    # Strategy selection
    # ------------------------------------------------------------------

    def get_distribution_strategy(
        self,
        student: "Student",
        slots: Sequence[TimeSlot],
        grade_map: Mapping[str, str],
    ) -> str:
        """
        Strategy for a student: the configured one, or (when ``auto``) two-pass
        for heavy schedules, grade-grouped for crowded grades, even otherwise.
        """
        configured = self.distribution.strategy
        if configured != STRATEGY_AUTO:
            return configured

        sessions = student.sessions_per_week or 0
        weekly_minutes = sessions * (student.minutes_per_session or 0)
        if (
            sessions > self.distribution.two_pass_min_sessions
            or weekly_minutes > self.distribution.two_pass_min_weekly_minutes
        ):
            return STRATEGY_TWO_PASS

        if self.constraints.require_grade_grouping:
            grade = grade_key(student.grade_level)
            same_grade = sum(1 for g in grade_map.values() if grade_key(g) == grade)
            if same_grade > self.distribution.grade_grouping_threshold:
                return STRATEGY_GRADE_GROUPED

        return STRATEGY_EVEN

    def distribute(
        self,
        strategy: str,
        count: int,
        slots: Sequence[TimeSlot],
        *,
        grade: str = "",
        grade_map: Optional[Mapping[str, str]] = None,
        existing_sessions: Iterable["ScheduleSession"] = (),
        student_sessions: Optional[Mapping[int, List[Interval]]] = None,
        day_loads: Optional[Mapping[int, int]] = None,
    ) -> List[TimeSlot]:
        """Dispatch to the named strategy."""
        if strategy == STRATEGY_TWO_PASS:
            return self.distribute_two_pass(count, slots, student_sessions=student_sessions, day_loads=day_loads)
        if strategy == STRATEGY_GRADE_GROUPED:
            return self.distribute_with_grade_grouping(
                count, slots, grade, grade_map or {}, existing_sessions, student_sessions, day_loads
            )
        if strategy == STRATEGY_SPREAD:
            return self.distribute_spread(count, slots, student_sessions, day_loads)
        if strategy == STRATEGY_COMPACT:
            return self.distribute_compact(count, slots, student_sessions, day_loads)
        if strategy == STRATEGY_EVEN:
            return self.distribute_evenly(count, slots, student_sessions, day_loads)
        raise ValueError(f"Unknown distribution strategy: {strategy}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _walk(
        self,
        count: int,
        slots: Sequence[TimeSlot],
        in_day_key: SlotKey,
        student_sessions: Optional[Mapping[int, List[Interval]]],
        day_loads: Optional[Mapping[int, int]],
        day_order: Optional[List[int]] = None,
        fill_day: bool = False,
    ) -> List[TimeSlot]:
        if count <= 0 or not slots:
            return []

        placed: Dict[int, List[Interval]] = {d: list(v) for d, v in (student_sessions or {}).items()}
        loads = day_loads or {}
        by_day = {day: sorted(day_slots, key=in_day_key) for day, day_slots in group_slots_by_day(slots).items()}

        if day_order is None:
            day_order = sorted(by_day, key=lambda d: (len(placed.get(d, [])), loads.get(d, 0), d))

        picks: List[TimeSlot] = []
        used = set()

        def take_one(day: int) -> bool:
            if len(placed.get(day, [])) >= self.constraints.max_sessions_per_day:
                return False
            for slot in by_day.get(day, []):
                if slot.key in used:
                    continue
                if check_interval_against(slot.interval(), placed.get(day, []), self.constraints).valid:
                    picks.append(slot)
                    used.add(slot.key)
                    placed.setdefault(day, []).append(slot.interval())
                    return True
            return False

        if fill_day:
            for day in day_order:
                while len(picks) < count and take_one(day):
                    pass
            return picks

        progressed = True
        while len(picks) < count and progressed:
            progressed = False
            for day in day_order:
                if len(picks) >= count:
                    break
                if take_one(day):
                    progressed = True
        return picks

    @staticmethod
    def _same_grade_counter(
        grade: str,
        grade_map: Mapping[str, str],
        existing_sessions: Iterable["ScheduleSession"],
    ) -> Callable[[TimeSlot], int]:
        target = grade_key(grade)
        by_day: Dict[int, List[Interval]] = {}
        for session in existing_sessions:
            if session.day_of_week is None or not session.start_time or not session.end_time:
                continue
            if grade_key(grade_map.get(session.student_id)) != target:
                continue
            by_day.setdefault(session.day_of_week, []).append(
                (time_to_minutes(session.start_time), time_to_minutes(session.end_time))
            )

        def count(slot: TimeSlot) -> int:
            return sum(1 for iv in by_day.get(slot.day_of_week, []) if minute_ranges_overlap(slot.interval(), iv))

        return count


def _with_picks(
    student_sessions: Optional[Mapping[int, List[Interval]]], picks: Sequence[TimeSlot]
) -> Dict[int, List[Interval]]:
    merged = {d: list(v) for d, v in (student_sessions or {}).items()}
    for slot in picks:
        merged.setdefault(slot.day_of_week, []).append(slot.interval())
    return merged


def _with_loads(day_loads: Optional[Mapping[int, int]], picks: Sequence[TimeSlot]) -> Dict[int, int]:
    loads = dict(day_loads or {})
    for slot in picks:
        loads[slot.day_of_week] = loads.get(slot.day_of_week, 0) + 1
    return loads
