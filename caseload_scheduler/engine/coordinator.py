"""Coordinator - runs a batch of students for one provider at one school."""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Sequence

from caseload_scheduler.config import SchedulerConfig
from caseload_scheduler.domain.models import ScheduleSession, Student
from caseload_scheduler.domain.repositories import ACTIVE_STATUS, CONFLICT_STATUS, SchedulingStore
from caseload_scheduler.domain.slots import TimeSlot, ValidationResult, grade_key
from caseload_scheduler.exceptions import InitializationError, NotInitializedError, PersistenceError
from caseload_scheduler.retry import call_with_retries
from caseload_scheduler.services.constraints import check_day_sequence, check_interval_against
from caseload_scheduler.services.data_cache import CacheRegistry, DataCache
from caseload_scheduler.services.timeplan import minute_ranges_overlap, minutes_to_time, time_to_minutes

from .context import SchedulingContext, apply_placement, build_context, generate_candidate_slots
from .engine import SchedulingEngine
from .results import BatchResult, ConflictResolution, RunState, SchedulingResult, StudentOutcome

logger = logging.getLogger(__name__)

SEA_ROLE = "sea"
SPECIALIST_ROLE = "specialist"

# Re-timed sessions never run past midnight
LAST_MINUTE = 24 * 60 - 1


class SchedulingCoordinator:
    """
    Coordinates one scheduling run for a provider at a school.

    The run builds a context from the cached inputs, places students one at a
    time (hardest first), folds each placement back into the context so later
    students see the reduced capacity, and writes all new sessions at the end
    in one step.
    """

    def __init__(
        self,
        store: SchedulingStore,
        config: SchedulerConfig | None = None,
        registry: CacheRegistry | None = None,
        engine: SchedulingEngine | None = None,
        sleep=None,
    ):
        """
        Initialize coordinator.

        Args:
            store: Persistence collaborator for reads and the final write
            config: SchedulerConfig (defaults when omitted)
            registry: Shared cache registry; runs on the same key serialise on its lock
            engine: Engine override (mostly for tests)
            sleep: Sleep function used between write retries
        """
        self.store = store
        self.config = config or SchedulerConfig()
        self.registry = registry or CacheRegistry(store, self.config)
        self.engine = engine or SchedulingEngine(self.config)
        self._sleep = sleep

        self.state = RunState.UNINITIALIZED
        self.cache: Optional[DataCache] = None
        self.context: Optional[SchedulingContext] = None
        self.provider_id: Optional[str] = None
        self.provider_role: Optional[str] = None
        self.school_site: Optional[str] = None
        self.school_id: Optional[str] = None

        self._unsaved_inserts: List[ScheduleSession] = []
        self._unsaved_updates: List[ScheduleSession] = []
        self._claimed_placeholders: set = set()
        self._last_result: Optional[BatchResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        provider_id: str,
        provider_role: Optional[str],
        school_site: str,
        school_id: Optional[str] = None,
        school_district: str = "",
    ) -> SchedulingContext:
        """
        Load the cache and build the run context.

        Raises:
            InitializationError: If the inputs cannot be loaded; the run ends in FAILED_BEFORE_INIT
        """
        try:
            cache = self.registry.cache_for(provider_id or "", school_site or "", self.store)
            with self.registry.lock_for(provider_id or "", school_site or ""):
                cache.initialize(provider_id, school_site, school_district, school_id, provider_role)
                context = build_context(cache, self.config, provider_role)
        except InitializationError:
            self.state = RunState.FAILED_BEFORE_INIT
            logger.error("Initialization failed for %s @ %s", provider_id, school_site)
            raise
        except Exception as exc:
            self.state = RunState.FAILED_BEFORE_INIT
            logger.exception("Initialization failed for %s @ %s", provider_id, school_site)
            raise InitializationError(f"Could not build scheduling context: {exc}") from exc

        self.cache = cache
        self.context = context
        self.provider_id = provider_id
        self.provider_role = provider_role
        self.school_site = school_site
        self.school_id = school_id
        self.state = RunState.INITIALIZED
        logger.info(
            "Coordinator initialized for %s (%s) @ %s: work days %s, %d open grid cells",
            provider_id,
            provider_role or "provider",
            school_site,
            context.work_days,
            len(context.valid_slots),
        )
        return context

    def _require_context(self) -> SchedulingContext:
        if self.context is None or self.state in (RunState.UNINITIALIZED, RunState.FAILED_BEFORE_INIT):
            raise NotInitializedError("Coordinator must be initialized before scheduling")
        return self.context

    def _lock(self):
        return self.registry.lock_for(self.provider_id, self.school_site)

    def _sync_context(self) -> List[ScheduleSession]:
        """
        Rebuild the context if the cache moved on since it was built.

        Another run on the same key may have written sessions after this
        coordinator initialized. The context is rebuilt from the cache and this
        coordinator's unsaved placements are replayed on top. Callers hold the
        key lock.

        Returns:
            Unsaved sessions that now land on a full cell
        """
        context = self._require_context()
        if self.cache is None or context.cache_version == self.cache.version:
            return []

        logger.info(
            "Cache for %s @ %s changed since the context was built (v%d -> v%d); rebuilding",
            self.provider_id,
            self.school_site,
            context.cache_version,
            self.cache.version,
        )
        fresh = build_context(self.cache, self.config, self.provider_role)
        for student_id, grade in context.student_grades.items():
            fresh.student_grades.setdefault(student_id, grade)

        clashes = []
        for session in self.unsaved_sessions:
            start, end = time_to_minutes(session.start_time), time_to_minutes(session.end_time)
            if any(key not in fresh.valid_slots for key in fresh.cells_for(session.day_of_week, start, end)):
                clashes.append(session)
            apply_placement(fresh, session)
        self.context = fresh
        return clashes

    def _rebuild_context(self) -> SchedulingContext:
        """Reload the cache from the store and rebuild the context on it. Callers hold the key lock."""
        self.cache.refresh()
        self._sync_context()
        return self.context

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def check_student(self, student: Student) -> Optional[str]:
        """Return why a student cannot be scheduled at all, or None."""
        if not getattr(student, "id", None):
            return "Student has no id"
        if not grade_key(student.grade_level):
            return f"Student {student.initials} has no grade level"
        if not student.school_site and not getattr(student, "school_id", None):
            return f"Student {student.initials} has no school"
        if (student.sessions_per_week or 0) < 1:
            return f"Student {student.initials} needs at least one session per week"
        if (student.minutes_per_session or 0) <= 0:
            return f"Student {student.initials} has no session length"
        if student.school_site and student.school_site != self.school_site:
            same_school_id = self.school_id and getattr(student, "school_id", None) == self.school_id
            if not same_school_id:
                return f"Student {student.initials} attends {student.school_site}, not {self.school_site}"
        return None

    def find_available_slots(self, student: Student) -> List[TimeSlot]:
        """Raw candidates sized to the student's session length; not yet validated."""
        context = self._require_context()
        return generate_candidate_slots(context, student.minutes_per_session)

    def validate_slot(self, slot: TimeSlot, student: Student) -> ValidationResult:
        """Check one slot for a student against the live context."""
        context = self._require_context()
        result = self.engine.validator.validate_work_location(slot, context.work_days)
        if not result.valid:
            return result
        return self.engine.validator.validate_all(slot, student, context)

    def schedule_student(self, student: Student) -> SchedulingResult:
        """
        Place one student and fold the placements into the context.

        Input problems and shortfalls come back as failed results; nothing is raised for them.
        """
        context = self._require_context()
        if self.state in (RunState.INITIALIZED, RunState.COMPLETE):
            self.state = RunState.SCHEDULING

        problem = self.check_student(student)
        if problem:
            logger.warning("Skipping student: %s", problem)
            return SchedulingResult.failure(getattr(student, "id", None), problem)

        context.student_grades.setdefault(student.id, grade_key(student.grade_level))
        candidates = self.find_available_slots(student)
        result = self.engine.find_optimal_slots(student, candidates, self.config.constraints, context)
        if not result.success:
            logger.info("Could not place %s: %s", student.initials, result.error)
            return result

        placeholders = [
            p
            for p in (self.cache.get_pending_sessions(student.id) if self.cache else [])
            if p.id not in self._claimed_placeholders
        ]
        for session in result.sessions:
            self._stamp(session)
            if placeholders:
                placeholder = placeholders.pop(0)
                session.id = placeholder.id
                self._claimed_placeholders.add(placeholder.id)
                self._unsaved_updates.append(session)
            else:
                self._unsaved_inserts.append(session)
            apply_placement(context, session)
        return result

    def _stamp(self, session: ScheduleSession) -> None:
        role = (self.provider_role or "").lower()
        session.provider_id = self.provider_id
        session.service_type = self.provider_role
        if role == SEA_ROLE:
            session.delivered_by = "sea"
            session.assigned_to_sea_id = self.provider_id
        elif role == SPECIALIST_ROLE:
            session.delivered_by = "specialist"
            session.assigned_to_specialist_id = self.provider_id
        else:
            session.delivered_by = "provider"

    def schedule_batch(self, students: Sequence[Student]) -> BatchResult:
        """
        Schedule a batch of students and write every new session in one step.

        Students are placed hardest first. An unexpected error stops the loop;
        sessions placed before it are still written and the error is reported.

        Returns:
            BatchResult listing every student's outcome
        """
        self._require_context()
        started = time.perf_counter()

        with self._lock():
            clashes = self._sync_context()
            if clashes:
                logger.warning("%d unsaved sessions now overlap full slots", len(clashes))
            context = self.context
            self.state = RunState.SCHEDULING
            result = BatchResult(provider_id=self.provider_id, school_site=self.school_site)

            for student in students:
                if getattr(student, "id", None) and grade_key(student.grade_level):
                    context.student_grades[student.id] = grade_key(student.grade_level)

            ordered = self.engine.optimize_schedule_order(students)
            for index, student in enumerate(ordered):
                try:
                    outcome = self.schedule_student(student)
                except Exception as exc:
                    logger.exception("Batch aborted at student %s", getattr(student, "initials", "?"))
                    message = f"Batch aborted at student {getattr(student, 'initials', '?')}: {exc}"
                    result.errors.append(message)
                    for rest in ordered[index:]:
                        result.outcomes.append(
                            StudentOutcome(rest.id, rest.initials, scheduled=False, reason="batch aborted")
                        )
                        result.unscheduled_students.append(rest)
                    break

                result.outcomes.append(
                    StudentOutcome(
                        student.id,
                        student.initials,
                        scheduled=outcome.success,
                        sessions_placed=len(outcome.sessions),
                        reason=outcome.error,
                    )
                )
                if outcome.success:
                    result.scheduled_sessions.extend(outcome.sessions)
                else:
                    result.unscheduled_students.append(student)
                    result.errors.append(f"{student.initials}: {outcome.error}")

            result.total_failed = len(result.unscheduled_students)
            self._last_result = result
            self._finish(result)

        result.metrics["total_time"] = time.perf_counter() - started
        result.metrics["average_time_per_student"] = result.metrics["total_time"] / len(students) if students else 0.0
        logger.info("Batch complete for %s @ %s: %s", self.provider_id, self.school_site, result.summary())
        return result

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _finish(self, result: BatchResult) -> None:
        self.state = RunState.PERSISTING
        try:
            self._persist()
        except PersistenceError as exc:
            result.write_error = str(exc)
            result.errors.append(f"Failed to save sessions: {exc}")
            result.total_scheduled = 0
            result.persisted = False
        else:
            result.write_error = None
            result.persisted = True
            result.total_scheduled = result.placed_students
        result.metrics.update(self.metrics())
        self.state = RunState.COMPLETE

    def _write(self, action, label: str) -> None:
        """Run one store write with retries; failures surface as PersistenceError."""
        cache_cfg = self.config.cache
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        try:
            call_with_retries(
                action,
                attempts=cache_cfg.max_retries,
                delay=cache_cfg.retry_delay_seconds,
                backoff=cache_cfg.retry_backoff,
                on_retry=lambda exc: self.store.rollback(),
                label=label,
                **kwargs,
            )
        except Exception as exc:
            logger.error("Could not %s: %s", label, exc)
            raise PersistenceError(str(exc), attempts=cache_cfg.max_retries) from exc

    def _persist(self) -> None:
        """Write unsaved placements: placeholders are updated, the rest inserted in one call."""
        updates = list(self._unsaved_updates)
        inserts = list(self._unsaved_inserts)
        if not updates and not inserts:
            return

        if updates:
            self._write(lambda: self.store.update_pending_sessions(updates), "update pending sessions")
        if inserts:
            self._write(lambda: self.store.insert_sessions(inserts), "insert sessions")

        if self.cache is not None:
            self.cache.add_sessions(updates + inserts)
            if self.context is not None:
                self.context.cache_version = self.cache.version
        self._unsaved_updates.clear()
        self._unsaved_inserts.clear()
        logger.info("Persisted %d sessions (%d placeholders filled)", len(updates) + len(inserts), len(updates))

    def retry_persist(self) -> BatchResult:
        """
        Retry the write of a batch whose persistence step failed.

        Raises:
            NotInitializedError: If no batch has run yet
        """
        if self._last_result is None:
            raise NotInitializedError("No batch has been run")
        result = self._last_result
        if result.persisted or not (self._unsaved_inserts or self._unsaved_updates):
            return result

        with self._lock():
            clashes = self._sync_context()
            if clashes:
                result.write_error = (
                    f"{len(clashes)} unsaved sessions no longer fit; the schedule changed since the failed write"
                )
                logger.error("Not retrying the write for %s @ %s: %s", self.provider_id, self.school_site, result.write_error)
                return result
            result.errors = [e for e in result.errors if not e.startswith("Failed to save sessions")]
            self._finish(result)
        return result

    @property
    def unsaved_sessions(self) -> List[ScheduleSession]:
        return list(self._unsaved_updates) + list(self._unsaved_inserts)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def detect_session_conflicts(self, student_id: Optional[str] = None) -> List[Dict[str, object]]:
        """
        Find this provider's sessions that break a scheduling rule.

        Checks bell schedules, special activities, the student's school-day
        window and the spacing rules against every session the student has
        that day, including sessions with other providers.

        Args:
            student_id: Only check this student's sessions

        Returns:
            One dict per conflict: session id, student id, day, times and reason
        """
        context = self._require_context()
        students = {s.id: s for s in (self.cache.get_students() if self.cache else [])}
        sessions = [s for s in context.existing_sessions if student_id is None or s.student_id == student_id]

        conflicts = self._rule_conflicts(context, sessions, students)
        clean_days: Dict[tuple, bool] = {}
        for session in sessions:
            student = students.get(session.student_id)
            if student is not None:
                slot = TimeSlot(session.day_of_week, session.start_time, session.end_time)
                window_start, window_end = self.engine.validator.school_window(slot, student, context.school_hours)
                if slot.start_minutes < window_start or slot.end_minutes > window_end:
                    conflicts.append(_conflict(session, "Outside school hours"))

            day_key = (session.student_id, session.day_of_week)
            others = context.student_intervals(*day_key)
            if day_key not in clean_days:
                clean_days[day_key] = check_day_sequence(others, self.config.constraints).valid
            if clean_days[day_key]:
                continue
            interval = (time_to_minutes(session.start_time), time_to_minutes(session.end_time))
            others.remove(interval)
            check = check_interval_against(interval, others, self.config.constraints)
            if not check.valid:
                conflicts.append(_conflict(session, check.reason))
        return conflicts

    @staticmethod
    def _rule_conflicts(
        context: SchedulingContext,
        sessions: Sequence[ScheduleSession],
        students: Dict[str, Student],
    ) -> List[Dict[str, object]]:
        """Sessions overlapping a bell schedule row for the grade or a special activity for the teacher."""
        conflicts: List[Dict[str, object]] = []
        for session in sessions:
            window = (time_to_minutes(session.start_time), time_to_minutes(session.end_time))
            grade = context.student_grades.get(session.student_id)
            for bell in context.bells_for(grade, session.day_of_week):
                if minute_ranges_overlap(window, (time_to_minutes(bell.start_time), time_to_minutes(bell.end_time))):
                    conflicts.append(_conflict(session, f"Overlaps {bell.period_name or 'bell schedule'}"))
            student = students.get(session.student_id)
            teacher = student.teacher_name if student else None
            for activity in context.activities_for(teacher, session.day_of_week):
                if minute_ranges_overlap(
                    window, (time_to_minutes(activity.start_time), time_to_minutes(activity.end_time))
                ):
                    conflicts.append(_conflict(session, f"Overlaps {activity.activity_name or 'special activity'}"))
        return conflicts

    def mark_session_conflicts(self, student_id: Optional[str] = None) -> int:
        """
        Write conflict flags for this provider's sessions.

        Conflicting sessions get ``has_conflict``, the joined reasons and the
        "needs_attention" status; previously flagged sessions that are clean
        again are cleared.

        Returns:
            Number of sessions flagged

        Raises:
            PersistenceError: If the write fails after retries
        """
        self._require_context()
        with self._lock():
            self._sync_context()
            return self._mark_conflicts(student_id)

    def _mark_conflicts(self, student_id: Optional[str]) -> int:
        context = self.context
        reasons: Dict[str, Optional[str]] = {}
        for conflict in self.detect_session_conflicts(student_id):
            session_id, reason = conflict["session_id"], conflict["reason"]
            previous = reasons.get(session_id)
            if previous is None:
                reasons[session_id] = reason
            elif reason not in previous.split(" AND "):
                reasons[session_id] = f"{previous} AND {reason}"
        flagged = len(reasons)

        for session in context.existing_sessions:
            if student_id is not None and session.student_id != student_id:
                continue
            if session.has_conflict and session.id not in reasons:
                reasons[session.id] = None

        if reasons:
            self._write(lambda: self.store.mark_conflicts(reasons), "mark session conflicts")
        for session in context.existing_sessions:
            if session.id in reasons:
                session.has_conflict = reasons[session.id] is not None
                session.conflict_reason = reasons[session.id]
                session.status = CONFLICT_STATUS if reasons[session.id] is not None else ACTIVE_STATUS
        logger.info("Flagged %d conflicting sessions for %s @ %s", flagged, self.provider_id, self.school_site)
        return flagged

    def resolve_rule_conflicts(self) -> ConflictResolution:
        """
        Move sessions that a bell schedule or special activity now blocks.

        The cache is reloaded so rows added since initialization count. Each
        blocked session is deleted and its student is scheduled again up to the
        weekly count; the new sessions are written in one step.

        Raises:
            PersistenceError: If the blocked sessions cannot be deleted
        """
        self._require_context()
        with self._lock():
            context = self._rebuild_context()
            students = {s.id: s for s in self.cache.get_students()}
            blocked = self._rule_conflicts(context, context.existing_sessions, students)
            resolution = ConflictResolution(removed=blocked)
            if not blocked:
                return resolution

            session_ids = list(dict.fromkeys(c["session_id"] for c in blocked))
            self._write(lambda: self.store.delete_sessions(session_ids), "delete blocked sessions")
            logger.info("Removed %d blocked sessions for %s @ %s", len(session_ids), self.provider_id, self.school_site)
            self._rebuild_context()

            affected = [students[sid] for sid in dict.fromkeys(c["student_id"] for c in blocked) if sid in students]
            self.state = RunState.SCHEDULING
            for student in self.engine.optimize_schedule_order(affected):
                outcome = self.schedule_student(student)
                resolution.outcomes.append(
                    StudentOutcome(
                        student.id,
                        student.initials,
                        scheduled=outcome.success,
                        sessions_placed=len(outcome.sessions),
                        reason=outcome.error,
                    )
                )
                resolution.sessions.extend(outcome.sessions)

            self.state = RunState.PERSISTING
            try:
                self._persist()
            except PersistenceError as exc:
                resolution.write_error = str(exc)
            self.state = RunState.COMPLETE

        logger.info("Conflict resolution for %s @ %s: %s", self.provider_id, self.school_site, resolution.summary())
        return resolution

    def sync_student_requirements(self, student: Student) -> Dict[str, int]:
        """
        Bring a student's scheduled sessions in line with changed requirements.

        Every session whose length differs from ``minutes_per_session`` is
        re-timed from its start. Sessions beyond ``sessions_per_week`` are
        deleted, latest first, keeping the earliest in the week. The student's
        sessions are then checked and conflicts flagged.

        Returns:
            Counts of sessions re-timed, removed and flagged

        Raises:
            PersistenceError: If a write fails after retries
        """
        self._require_context()
        with self._lock():
            context = self._rebuild_context()
            sessions = sorted(
                context.student_sessions(student.id),
                key=lambda s: (s.day_of_week, time_to_minutes(s.start_time)),
            )

            minutes = student.minutes_per_session or 0
            retimed = []
            if minutes > 0:
                for session in sessions:
                    end = min(time_to_minutes(session.start_time) + minutes, LAST_MINUTE)
                    if end != time_to_minutes(session.end_time):
                        session.end_time = minutes_to_time(end)
                        retimed.append(session)
            if retimed:
                self._write(lambda: self.store.update_session_times(retimed), "update session times")

            target = student.sessions_per_week or 0
            excess = [s.id for s in sessions[target:]] if target > 0 else []
            if excess:
                self._write(lambda: self.store.delete_sessions(excess), "delete excess sessions")

            if retimed or excess:
                self._rebuild_context()
            flagged = self._mark_conflicts(student.id)

        logger.info(
            "Synced %s: %d sessions re-timed, %d removed, %d flagged",
            student.initials,
            len(retimed),
            len(excess),
            flagged,
        )
        return {"retimed": len(retimed), "removed": len(excess), "conflicts": flagged}

    def snapshot(self) -> Dict[str, object]:
        """Plain-data view of the live context."""
        context = self._require_context()
        return {
            "provider_id": context.provider_id,
            "school_site": context.school_site,
            "state": self.state.value,
            "work_days": list(context.work_days),
            "open_cells": len(context.valid_slots),
            "sessions": [
                {
                    "id": s.id,
                    "student_id": s.student_id,
                    "day_of_week": s.day_of_week,
                    "start_time": s.start_time,
                    "end_time": s.end_time,
                }
                for s in context.existing_sessions
            ],
            "placed_this_run": len(context.placed_sessions),
            "cache": self.cache.prepare_snapshot() if self.cache else None,
        }

    def metrics(self) -> Dict[str, object]:
        cache_metrics = self.cache.metrics() if self.cache else {}
        return {
            "cache_hits": cache_metrics.get("hits", 0),
            "query_count": cache_metrics.get("queries", 0),
            "fetch_errors": cache_metrics.get("fetch_errors", {}),
            **self.engine.metrics(),
        }


def _conflict(session: ScheduleSession, reason: Optional[str]) -> Dict[str, object]:
    return {
        "session_id": session.id,
        "student_id": session.student_id,
        "day_of_week": session.day_of_week,
        "start_time": session.start_time,
        "end_time": session.end_time,
        "reason": reason,
    }


def schedule_provider_school(
    store: SchedulingStore,
    provider_id: str,
    school_site: str,
    students: Sequence[Student] | None = None,
    provider_role: Optional[str] = None,
    school_id: Optional[str] = None,
    school_district: str = "",
    config: SchedulerConfig | None = None,
    registry: CacheRegistry | None = None,
) -> BatchResult:
    """
    Convenience function to run one provider/school batch.

    Args:
        store: Persistence collaborator
        provider_id: Provider to schedule
        school_site: School site name
        students: Students to place (default: the provider's caseload at the school)
        provider_role: Provider role (e.g. "resource", "sea")
        school_id: Optional school identifier
        school_district: District name
        config: SchedulerConfig
        registry: Shared cache registry

    Returns:
        BatchResult
    """
    coordinator = SchedulingCoordinator(store, config, registry)
    coordinator.initialize(provider_id, provider_role, school_site, school_id, school_district)
    if students is None:
        students = coordinator.cache.get_students()
    return coordinator.schedule_batch(students)
