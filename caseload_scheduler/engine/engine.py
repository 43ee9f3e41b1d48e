"""Per-student placement: validate, distribute, optimize."""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from typing import Dict, List, Optional, Sequence

from caseload_scheduler.config import SchedulerConfig, SchedulingConstraints
from caseload_scheduler.domain.models import ScheduleSession, Student
from caseload_scheduler.domain.slots import TimeSlot, grade_key
from caseload_scheduler.services.constraints import ConstraintValidator, check_interval_against
from caseload_scheduler.services.distribution import SlotDistributor
from caseload_scheduler.services.scoring import (
    enumerate_combinations,
    score_combination,
    scheduling_difficulty,
    summarize_scores,
)

from .context import Interval, SchedulingContext
from .results import SchedulingResult

logger = logging.getLogger(__name__)


class SchedulingEngine:
    """
    Places one student at a time against a shared SchedulingContext.

    The engine never mutates the context; the coordinator applies placements.
    """

    def __init__(self, config: SchedulerConfig | None = None):
        self.config = config or SchedulerConfig()
        self.validator = ConstraintValidator(self.config.constraints)
        self.distributor = SlotDistributor(self.config.constraints, self.config.distribution)
        self.stats: Counter = Counter()

    def _tools_for(self, constraints: Optional[SchedulingConstraints]):
        if constraints is None or constraints is self.config.constraints:
            return self.validator, self.distributor
        return ConstraintValidator(constraints), SlotDistributor(constraints, self.config.distribution)

    def find_optimal_slots(
        self,
        student: Student,
        candidate_slots: Sequence[TimeSlot],
        constraints: Optional[SchedulingConstraints],
        context: SchedulingContext,
    ) -> SchedulingResult:
        """
        Choose the sessions still needed for a student.

        Args:
            student: Student to place
            candidate_slots: Raw candidates (one per day/start, sized to the student's session length)
            constraints: Constraints to apply (None -> engine config)
            context: Live run context

        Returns:
            SchedulingResult with exactly ``sessions_per_week - already_placed``
            sessions on success, or a failure describing the shortfall
        """
        constraints = constraints or self.config.constraints
        validator, distributor = self._tools_for(constraints)
        self.stats["students"] += 1

        already_placed = len(context.student_sessions(student.id))
        needed = (student.sessions_per_week or 0) - already_placed
        if needed <= 0:
            logger.debug("Student %s already has %d sessions", student.initials, already_placed)
            return SchedulingResult(success=True, student_id=student.id)

        # 1. Filter candidates
        valid: List[TimeSlot] = []
        rejections: Counter = Counter()
        for slot in candidate_slots:
            result = validator.validate_work_location(slot, context.work_days)
            if result.valid:
                result = validator.validate_all(slot, student, context, constraints.max_concurrent_sessions)
            if not result.valid:
                rejections[result.constraint] += 1
                continue
            slot.occupancy = context.count_overlapping(slot.day_of_week, slot.start_minutes, slot.end_minutes)
            slot.capacity = max(0, constraints.max_concurrent_sessions - slot.occupancy)
            valid.append(slot)

        base = dict(
            candidates_considered=len(candidate_slots),
            valid_candidates=len(valid),
            rejections=dict(rejections),
        )
        if len(valid) < needed:
            self.stats["shortfalls"] += 1
            return SchedulingResult.failure(student.id, f"found {len(valid)} of {needed} required slots", **base)

        # 2. Distribute
        strategy = distributor.get_distribution_strategy(student, valid, context.student_grades)
        options = dict(
            grade=grade_key(student.grade_level),
            grade_map=context.student_grades,
            existing_sessions=context.existing_sessions,
            student_sessions=context.student_intervals_by_day(student.id),
            day_loads=context.day_loads(),
        )
        opt = self.config.optimization
        pool_size = needed * opt.pool_factor if opt.enabled else needed
        pool = distributor.distribute(strategy, pool_size, valid, **options)
        if len(pool) < needed:
            self.stats["shortfalls"] += 1
            return SchedulingResult.failure(
                student.id, f"found {len(pool)} of {needed} required slots", strategy=strategy, **base
            )

        # 3. Optimize
        evaluated = 0
        if opt.enabled and len(pool) > needed:
            chosen, score, evaluated = self._optimize(pool, needed, student, context, constraints)
        else:
            chosen = pool[:needed]
            score = self._score(chosen, student, context, constraints)

        chosen = sorted(chosen, key=lambda s: (s.day_of_week, s.start_minutes))
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Score components for %s: %s",
                student.initials,
                summarize_scores(
                    chosen,
                    student.grade_level,
                    context.existing_sessions,
                    context.student_grades,
                    constraints.max_concurrent_sessions,
                ),
            )
        sessions = self._create_sessions(student, chosen, context)
        self.stats["placed"] += 1
        logger.info(
            "Placed %s (%s): %d sessions via %s, score %.3f",
            student.initials,
            student.grade_level,
            len(sessions),
            strategy,
            score,
        )
        return SchedulingResult(
            success=True,
            student_id=student.id,
            sessions=sessions,
            strategy=strategy,
            score=score,
            combinations_evaluated=evaluated,
            **base,
        )

    def optimize_schedule_order(self, students: Sequence[Student]) -> List[Student]:
        """Hardest students first (descending difficulty); ties keep input order."""
        return sorted(students, key=scheduling_difficulty, reverse=True)

    def metrics(self) -> Dict[str, object]:
        return {"engine": dict(self.stats), "constraints": self.validator.metrics()}

    def _optimize(
        self,
        pool: List[TimeSlot],
        needed: int,
        student: Student,
        context: SchedulingContext,
        constraints: SchedulingConstraints,
    ):
        """Best-scoring valid combination within the search budget; ties keep the first found."""
        existing = context.student_intervals_by_day(student.id)
        blocking = {day: context.student_intervals(student.id, day) for day in context.work_days}
        best: Optional[List[TimeSlot]] = None
        best_score = 0.0
        evaluated = 0

        for combo in enumerate_combinations(pool, needed, self.config.optimization.combination_budget):
            evaluated += 1
            if not self._combination_fits(combo, existing, constraints, blocking):
                continue
            score = self._score(combo, student, context, constraints)
            if best is None or score > best_score:
                best, best_score = combo, score

        self.stats["combinations"] += evaluated
        if best is None:
            best = pool[:needed]
            best_score = self._score(best, student, context, constraints)
        return best, best_score, evaluated

    @staticmethod
    def _combination_fits(
        combo: Sequence[TimeSlot],
        existing: Dict[int, List[Interval]],
        constraints: SchedulingConstraints,
        blocking: Optional[Dict[int, List[Interval]]] = None,
    ) -> bool:
        """
        Check a combination against the student's day rules.

        ``existing`` (this provider's sessions) feeds the daily cap; ``blocking``
        (all of the student's sessions, when given) feeds the spacing rules.
        """
        counts = {day: len(intervals) for day, intervals in existing.items()}
        source = blocking if blocking is not None else existing
        placed = {day: list(intervals) for day, intervals in source.items()}
        for slot in sorted(combo, key=lambda s: (s.day_of_week, s.start_minutes)):
            day = slot.day_of_week
            if counts.get(day, 0) >= constraints.max_sessions_per_day:
                return False
            day_sessions = placed.setdefault(day, [])
            if not check_interval_against(slot.interval(), day_sessions, constraints).valid:
                return False
            day_sessions.append(slot.interval())
            counts[day] = counts.get(day, 0) + 1
        return True

    def _score(
        self,
        slots: Sequence[TimeSlot],
        student: Student,
        context: SchedulingContext,
        constraints: SchedulingConstraints,
    ) -> float:
        return score_combination(
            slots,
            student.grade_level,
            context.existing_sessions,
            context.student_grades,
            self.config.optimization.weights,
            constraints.max_concurrent_sessions,
        )

    @staticmethod
    def _create_sessions(student: Student, slots: Sequence[TimeSlot], context: SchedulingContext) -> List[ScheduleSession]:
        """Build unsaved sessions; the coordinator stamps role metadata and persists them."""
        return [
            ScheduleSession(
                id=str(uuid.uuid4()),
                student_id=student.id,
                provider_id=context.provider_id,
                day_of_week=slot.day_of_week,
                start_time=slot.start_time,
                end_time=slot.end_time,
                delivered_by="provider",
                manually_placed=False,
                is_completed=False,
                has_conflict=False,
                status="active",
            )
            for slot in slots
        ]
