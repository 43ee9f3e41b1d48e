"""The per-run scheduling context and its update rule."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from caseload_scheduler.config import SchedulerConfig
from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, SchoolHours, SpecialActivity
from caseload_scheduler.domain.slots import TimeSlot, grade_key, teacher_key
from caseload_scheduler.services.data_cache import CacheMetadata, DataCache
from caseload_scheduler.services.timeplan import (
    generate_time_grid,
    minute_ranges_overlap,
    minutes_to_time,
    time_to_minutes,
)

logger = logging.getLogger(__name__)

SlotKey = Tuple[int, str]
Interval = Tuple[int, int]


@dataclass
class SchedulingContext:
    """
    Mutable state shared by every student in one run for one provider/school.

    ``valid_slots`` maps each open grid cell ``(day, "HH:MM")`` to its remaining
    capacity. A cell is dropped as soon as its capacity reaches 0.

    ``other_provider_sessions`` are the same students' sessions with other
    providers. They block the student's own time but take no capacity here.
    ``cache_version`` is the cache version the context was built from.
    """

    provider_id: str
    school_site: str
    provider_role: Optional[str] = None
    work_days: List[int] = field(default_factory=list)
    bell_schedules: Dict[str, Dict[int, List[BellSchedule]]] = field(default_factory=dict)
    special_activities: Dict[str, Dict[int, List[SpecialActivity]]] = field(default_factory=dict)
    school_hours: List[SchoolHours] = field(default_factory=list)
    existing_sessions: List[ScheduleSession] = field(default_factory=list)
    other_provider_sessions: List[ScheduleSession] = field(default_factory=list)
    placed_sessions: List[ScheduleSession] = field(default_factory=list)
    valid_slots: Dict[SlotKey, int] = field(default_factory=dict)
    student_grades: Dict[str, str] = field(default_factory=dict)
    grid_times: List[str] = field(default_factory=list)
    granularity_minutes: int = 5
    max_concurrent: int = 6
    cache_metadata: Optional[CacheMetadata] = None
    cache_version: int = 0

    def __post_init__(self):
        self._by_day: Dict[int, List[ScheduleSession]] = {}
        for session in self.existing_sessions:
            self._by_day.setdefault(session.day_of_week, []).append(session)
        self._other_by_day: Dict[int, List[ScheduleSession]] = {}
        for session in self.other_provider_sessions:
            self._other_by_day.setdefault(session.day_of_week, []).append(session)

    # Lookups used by the constraint validator and the engine

    def bells_for(self, grade: Optional[str], day: int) -> List[BellSchedule]:
        return self.bell_schedules.get(grade_key(grade), {}).get(day, [])

    def activities_for(self, teacher: Optional[str], day: int) -> List[SpecialActivity]:
        if not teacher:
            return []
        return self.special_activities.get(teacher_key(teacher), {}).get(day, [])

    def sessions_on(self, day: int) -> List[ScheduleSession]:
        return list(self._by_day.get(day, []))

    def student_sessions(self, student_id: str) -> List[ScheduleSession]:
        return [s for s in self.existing_sessions if s.student_id == student_id]

    def student_intervals(self, student_id: str, day: int) -> List[Interval]:
        """Every session the student has that day, with any provider."""
        sessions = self._by_day.get(day, []) + self._other_by_day.get(day, [])
        return sorted(
            (time_to_minutes(s.start_time), time_to_minutes(s.end_time))
            for s in sessions
            if s.student_id == student_id
        )

    def student_intervals_by_day(self, student_id: str) -> Dict[int, List[Interval]]:
        """The student's sessions with this provider only; the daily cap counts these."""
        by_day: Dict[int, List[Interval]] = {}
        for session in self.student_sessions(student_id):
            by_day.setdefault(session.day_of_week, []).append(
                (time_to_minutes(session.start_time), time_to_minutes(session.end_time))
            )
        return {day: sorted(intervals) for day, intervals in by_day.items()}

    def count_overlapping(self, day: int, start: int, end: int) -> int:
        """Sessions (any student) overlapping ``[start, end)`` minutes on ``day``."""
        return sum(
            1
            for s in self._by_day.get(day, [])
            if minute_ranges_overlap((start, end), (time_to_minutes(s.start_time), time_to_minutes(s.end_time)))
        )

    def day_loads(self) -> Dict[int, int]:
        return {day: len(self._by_day.get(day, [])) for day in self.work_days}

    def cells_for(self, day: int, start: int, end: int) -> List[SlotKey]:
        """Grid cells on ``day`` whose span overlaps ``[start, end)``."""
        step = self.granularity_minutes
        cells = []
        for t in self.grid_times:
            cell_start = time_to_minutes(t)
            if minute_ranges_overlap((cell_start, cell_start + step), (start, end)):
                cells.append((day, t))
        return cells

    def add_session(self, session: ScheduleSession) -> None:
        self.existing_sessions.append(session)
        self._by_day.setdefault(session.day_of_week, []).append(session)


def build_context(
    cache: DataCache,
    config: SchedulerConfig,
    provider_role: Optional[str] = None,
) -> SchedulingContext:
    """
    Build the run context from an initialized cache.

    Every grid cell on a work day starts with ``max_concurrent`` minus the
    sessions already overlapping it; full cells are left out.
    """
    meta = cache.metadata
    grid = config.grid
    max_concurrent = config.constraints.max_concurrent_sessions

    context = SchedulingContext(
        provider_id=meta.provider_id,
        school_site=meta.school_site,
        provider_role=provider_role if provider_role is not None else meta.provider_role,
        work_days=cache.get_provider_work_days(meta.school_site),
        bell_schedules=cache.bells_by_grade,
        special_activities=cache.activities_by_teacher,
        school_hours=cache.get_school_hours(),
        existing_sessions=cache.get_existing_sessions(),
        other_provider_sessions=cache.get_other_provider_sessions(),
        student_grades={s.id: grade_key(s.grade_level) for s in cache.get_students() if s.id},
        grid_times=generate_time_grid(grid.start_time, grid.end_time, grid.granularity_minutes),
        granularity_minutes=grid.granularity_minutes,
        max_concurrent=max_concurrent,
        cache_metadata=cache.metadata,
        cache_version=cache.version,
    )

    for day in context.work_days:
        for t in context.grid_times:
            start = time_to_minutes(t)
            capacity = max_concurrent - context.count_overlapping(day, start, start + grid.granularity_minutes)
            if capacity > 0:
                context.valid_slots[(day, t)] = capacity

    logger.debug(
        "Context for %s @ %s: days=%s, %d open cells, %d existing sessions",
        context.provider_id,
        context.school_site,
        context.work_days,
        len(context.valid_slots),
        len(context.existing_sessions),
    )
    return context


def generate_candidate_slots(context: SchedulingContext, duration_minutes: int) -> List[TimeSlot]:
    """
    Raw candidate slots of ``duration_minutes`` on every work day and grid start.

    A candidate is dropped when any grid cell it covers is already full.
    Occupancy counts every session overlapping the candidate.
    """
    slots: List[TimeSlot] = []
    for day in context.work_days:
        for t in context.grid_times:
            if (day, t) not in context.valid_slots:
                continue
            start = time_to_minutes(t)
            end = start + duration_minutes
            if end >= 24 * 60:
                continue
            if any(key not in context.valid_slots for key in context.cells_for(day, start, end)):
                continue
            occupancy = context.count_overlapping(day, start, end)
            slots.append(
                TimeSlot(
                    day_of_week=day,
                    start_time=t,
                    end_time=minutes_to_time(end),
                    capacity=max(0, context.max_concurrent - occupancy),
                    occupancy=occupancy,
                )
            )
    return slots


def apply_placement(context: SchedulingContext, session: ScheduleSession) -> SchedulingContext:
    """
    Record a placed session in the context.

    Every grid cell the session overlaps on its day loses one unit of capacity;
    cells that reach 0 leave the valid-slot index. Callers hold the run lock.
    """
    start = time_to_minutes(session.start_time)
    end = time_to_minutes(session.end_time)
    for key in context.cells_for(session.day_of_week, start, end):
        remaining = context.valid_slots.get(key)
        if remaining is None:
            continue
        remaining -= 1
        if remaining <= 0:
            del context.valid_slots[key]
        else:
            context.valid_slots[key] = remaining

    context.add_session(session)
    context.placed_sessions.append(session)
    return context
