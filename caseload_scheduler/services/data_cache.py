"""Per provider/school cache of scheduling inputs, with indexed lookups."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from caseload_scheduler.config import ALL_WEEKDAYS, WORK_DAYS_ALL_WEEKDAYS, SchedulerConfig
from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, SchoolHours, SpecialActivity, Student
from caseload_scheduler.domain.repositories import SchedulingStore
from caseload_scheduler.domain.slots import grade_key, teacher_key
from caseload_scheduler.exceptions import InitializationError
from caseload_scheduler.retry import call_with_retries
from caseload_scheduler.services.timeplan import add_minutes, time_to_minutes

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


@dataclass
class CacheMetadata:
    """What was loaded, when, and which reads failed."""

    provider_id: str
    school_site: str
    school_district: str = ""
    school_id: Optional[str] = None
    provider_role: Optional[str] = None
    loaded_at: datetime = field(default_factory=datetime.now)
    version: int = 0
    query_count: int = 0
    fetch_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> CacheKey:
        return (self.provider_id, self.school_site)

    def matches(self, provider_id: str, school_site: str, school_id: Optional[str], provider_role: Optional[str]) -> bool:
        """True when data loaded under this metadata answers a request with these arguments."""
        return (
            self.key == (provider_id, school_site)
            and self.school_id == school_id
            and (self.provider_role or "").lower() == (provider_role or "").lower()
        )


class DataCache:
    """
    Loads and indexes everything needed to schedule one provider at one school.

    Bell schedules are indexed grade -> day and special activities teacher -> day
    so conflict lookups touch only the rows for one grade (or teacher) and day.
    Sessions with no day/time are pending placeholders and are kept apart from
    the scheduled ones.
    """

    def __init__(
        self,
        store: SchedulingStore,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] | None = None,
    ):
        self.store = store
        self.config = config or SchedulerConfig()
        self._clock = clock
        self._sleep = sleep
        self.metadata: Optional[CacheMetadata] = None
        self._hits = 0
        self._misses = 0
        self._reset_data()

    def _reset_data(self) -> None:
        self.work_days: Dict[str, List[int]] = {}
        self.bell_schedules: List[BellSchedule] = []
        self.special_activities: List[SpecialActivity] = []
        self.school_hours: List[SchoolHours] = []
        self.students: List[Student] = []
        self.existing_sessions: List[ScheduleSession] = []
        self.other_provider_sessions: List[ScheduleSession] = []
        self.pending_sessions: List[ScheduleSession] = []
        self.bells_by_grade: Dict[str, Dict[int, List[BellSchedule]]] = {}
        self.activities_by_teacher: Dict[str, Dict[int, List[SpecialActivity]]] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.metadata is not None

    @property
    def version(self) -> int:
        return self.metadata.version if self.metadata else 0

    def initialize(
        self,
        provider_id: str,
        school_site: str,
        school_district: str = "",
        school_id: Optional[str] = None,
        provider_role: Optional[str] = None,
    ) -> CacheMetadata:
        """
        Load inputs for a provider/school pair.

        A repeat call with the same key, school id and role is a cache hit. A
        different role or school id selects different sessions and reloads.

        Args:
            provider_id: Provider whose sessions are scheduled
            school_site: School site name
            school_district: District name (informational)
            school_id: Optional school identifier, preferred over the site name
            provider_role: Role used to include sessions delegated to the provider

        Returns:
            Metadata describing the loaded data

        Raises:
            InitializationError: If provider_id or school_site is missing
        """
        if not provider_id or not school_site:
            raise InitializationError("provider_id and school_site are required to initialize the cache")

        if self.metadata is not None and self.metadata.matches(provider_id, school_site, school_id, provider_role):
            self._hits += 1
            logger.debug("Cache hit for %s @ %s", provider_id, school_site)
            return self.metadata

        if self.metadata is not None:
            logger.info(
                "Reloading %s @ %s: role %s -> %s, school id %s -> %s",
                provider_id,
                school_site,
                self.metadata.provider_role,
                provider_role,
                self.metadata.school_id,
                school_id,
            )
        self._misses += 1
        self._load(
            CacheMetadata(
                provider_id=provider_id,
                school_site=school_site,
                school_district=school_district,
                school_id=school_id,
                provider_role=provider_role,
                loaded_at=self._clock(),
                version=self.version + 1,
            )
        )
        return self.metadata

    def refresh(self) -> CacheMetadata:
        """Reload the current key from the store."""
        if self.metadata is None:
            raise InitializationError("Cannot refresh a cache that was never initialized")
        previous = self.metadata
        self._load(replace(previous, loaded_at=self._clock(), version=previous.version + 1, query_count=0, fetch_errors={}))
        return self.metadata

    def clear(self) -> None:
        self._reset_data()
        self.metadata = None

    def _load(self, meta: CacheMetadata) -> None:
        self._reset_data()
        self.metadata = meta
        site, sid = meta.school_site, meta.school_id

        # 1. Provider availability
        self.work_days = self._fetch("work_days", lambda: self.store.fetch_work_days(meta.provider_id), {})

        # 2. Grade and teacher unavailability windows
        self.bell_schedules = self._fetch("bell_schedules", lambda: self.store.fetch_bell_schedules(site, sid), [])
        self.special_activities = self._fetch(
            "special_activities", lambda: self.store.fetch_special_activities(site, sid), []
        )

        # 3. Caseload and sessions already on the calendar
        self.students = self._fetch("students", lambda: self.store.fetch_students(meta.provider_id, site, sid), [])
        sessions = self._fetch(
            "existing_sessions",
            lambda: self.store.fetch_existing_sessions(meta.provider_id, site, sid, meta.provider_role),
            [],
        )
        self.existing_sessions = [s for s in sessions if _is_scheduled(s)]
        self.pending_sessions = [s for s in sessions if not _is_scheduled(s)]

        # Read-only: the same students' sessions with other providers
        own = {s.id for s in sessions}
        student_ids = [s.id for s in self.students]
        others = self._fetch(
            "other_provider_sessions",
            lambda: self.store.fetch_other_provider_sessions(meta.provider_id, student_ids),
            [],
        )
        self.other_provider_sessions = [s for s in others if s.id not in own and _is_scheduled(s)]

        # 4. School day windows
        self.school_hours = self._fetch("school_hours", lambda: self.store.fetch_school_hours(site, sid), [])

        self._build_indexes()
        logger.info(
            "Cache loaded for %s @ %s: %d students, %d sessions (%d pending, %d with other providers), "
            "%d bell rows, %d activities%s",
            meta.provider_id,
            site,
            len(self.students),
            len(self.existing_sessions),
            len(self.pending_sessions),
            len(self.other_provider_sessions),
            len(self.bell_schedules),
            len(self.special_activities),
            f", fetch errors: {sorted(meta.fetch_errors)}" if meta.fetch_errors else "",
        )

    def _fetch(self, name: str, loader: Callable[[], Any], empty: Any) -> Any:
        """Run one store read with retries; a failed read is recorded and degrades to ``empty``."""
        meta = self.metadata
        cache_cfg = self.config.cache
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        def counted():
            meta.query_count += 1
            return loader()

        try:
            result = call_with_retries(
                counted,
                attempts=cache_cfg.max_retries,
                delay=cache_cfg.retry_delay_seconds,
                backoff=cache_cfg.retry_backoff,
                on_retry=lambda exc: self.store.rollback(),
                label=f"fetch {name}",
                **kwargs,
            )
        except Exception as exc:
            meta.fetch_errors[name] = str(exc)
            logger.error("Failed to load %s for %s @ %s: %s", name, meta.provider_id, meta.school_site, exc)
            self.store.rollback()
            return empty
        return result if result is not None else empty

    def _build_indexes(self) -> None:
        for bell in self.bell_schedules:
            for grade in (bell.grade_level or "").split(","):
                key = grade_key(grade)
                if key:
                    self.bells_by_grade.setdefault(key, {}).setdefault(bell.day_of_week, []).append(bell)

        for activity in self.special_activities:
            key = teacher_key(activity.teacher_name)
            if key:
                self.activities_by_teacher.setdefault(key, {}).setdefault(activity.day_of_week, []).append(activity)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_provider_work_days(self, school_site: Optional[str] = None) -> List[int]:
        """Days (1-5) the provider is at the school, or the configured default when none are recorded."""
        site = school_site or (self.metadata.school_site if self.metadata else None)
        days = self.work_days.get(site) if site else None
        if days:
            return sorted(days)
        if self.config.cache.missing_work_days_policy == WORK_DAYS_ALL_WEEKDAYS:
            return list(ALL_WEEKDAYS)
        return []

    def is_provider_available(self, day: int, school_site: Optional[str] = None) -> bool:
        return day in self.get_provider_work_days(school_site)

    def get_bell_conflicts(self, grade: str, day: int, start: str, end: str) -> List[BellSchedule]:
        window = (time_to_minutes(start), time_to_minutes(end))
        rows = self.bells_by_grade.get(grade_key(grade), {}).get(day, [])
        return [b for b in rows if _overlaps(window, b.start_time, b.end_time)]

    def get_activity_conflicts(self, teacher: Optional[str], day: int, start: str, end: str) -> List[SpecialActivity]:
        if not teacher:
            return []
        window = (time_to_minutes(start), time_to_minutes(end))
        rows = self.activities_by_teacher.get(teacher_key(teacher), {}).get(day, [])
        return [a for a in rows if _overlaps(window, a.start_time, a.end_time)]

    def get_existing_sessions(
        self,
        day: Optional[int] = None,
        time_range: Optional[Tuple[str, str]] = None,
    ) -> List[ScheduleSession]:
        sessions = self.existing_sessions
        if day is not None:
            sessions = [s for s in sessions if s.day_of_week == day]
        if time_range is not None:
            window = (time_to_minutes(time_range[0]), time_to_minutes(time_range[1]))
            sessions = [s for s in sessions if _overlaps(window, s.start_time, s.end_time)]
        return list(sessions)

    def get_sessions_by_student(self, student_id: str) -> List[ScheduleSession]:
        return [s for s in self.existing_sessions if s.student_id == student_id]

    def get_other_provider_sessions(self, student_id: Optional[str] = None) -> List[ScheduleSession]:
        if student_id is None:
            return list(self.other_provider_sessions)
        return [s for s in self.other_provider_sessions if s.student_id == student_id]

    def get_pending_sessions(self, student_id: Optional[str] = None) -> List[ScheduleSession]:
        if student_id is None:
            return list(self.pending_sessions)
        return [s for s in self.pending_sessions if s.student_id == student_id]

    def get_slot_load(self, day: int, start: str, end: Optional[str] = None) -> int:
        """Number of scheduled sessions overlapping ``[start, end)``; one grid step when ``end`` is omitted."""
        end = end or add_minutes(start, self.config.grid.granularity_minutes)
        return len(self.get_existing_sessions(day, (start, end)))

    def get_school_hours(self) -> List[SchoolHours]:
        return list(self.school_hours)

    def get_students(self) -> List[Student]:
        return list(self.students)

    def add_sessions(self, sessions: List[ScheduleSession]) -> None:
        """Record sessions written by a run; placeholders they filled stop being pending."""
        filled = {s.id for s in sessions}
        self.pending_sessions = [p for p in self.pending_sessions if p.id not in filled]
        known = {s.id for s in self.existing_sessions}
        self.existing_sessions.extend(s for s in sessions if _is_scheduled(s) and s.id not in known)
        if self.metadata is not None:
            self.metadata.version += 1

    def remove_sessions(self, session_ids: List[str]) -> None:
        """Forget sessions deleted from the store."""
        removed = set(session_ids)
        self.existing_sessions = [s for s in self.existing_sessions if s.id not in removed]
        self.pending_sessions = [s for s in self.pending_sessions if s.id not in removed]
        if self.metadata is not None:
            self.metadata.version += 1

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def is_stale(self) -> bool:
        """True once the data is older than ``max_cache_age_minutes``. Never refreshes by itself."""
        if self.metadata is None:
            return True
        max_age = timedelta(minutes=self.config.cache.max_cache_age_minutes)
        return self._clock() - self.metadata.loaded_at > max_age

    def prepare_snapshot(self) -> Dict[str, Any]:
        """Capture the cache contents so a caller can roll back to them later."""
        return {
            "metadata": replace(self.metadata, fetch_errors=dict(self.metadata.fetch_errors)) if self.metadata else None,
            "work_days": {site: list(days) for site, days in self.work_days.items()},
            "bell_schedules": list(self.bell_schedules),
            "special_activities": list(self.special_activities),
            "school_hours": list(self.school_hours),
            "students": list(self.students),
            "existing_sessions": list(self.existing_sessions),
            "other_provider_sessions": list(self.other_provider_sessions),
            "pending_sessions": list(self.pending_sessions),
        }

    def restore_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self._reset_data()
        self.metadata = snapshot["metadata"]
        self.work_days = {site: list(days) for site, days in snapshot["work_days"].items()}
        self.bell_schedules = list(snapshot["bell_schedules"])
        self.special_activities = list(snapshot["special_activities"])
        self.school_hours = list(snapshot["school_hours"])
        self.students = list(snapshot["students"])
        self.existing_sessions = list(snapshot["existing_sessions"])
        self.other_provider_sessions = list(snapshot.get("other_provider_sessions", []))
        self.pending_sessions = list(snapshot["pending_sessions"])
        self._build_indexes()

    def metrics(self) -> Dict[str, Any]:
        meta = self.metadata
        return {
            "hits": self._hits,
            "misses": self._misses,
            "queries": meta.query_count if meta else 0,
            "fetch_errors": dict(meta.fetch_errors) if meta else {},
            "version": self.version,
            "age_seconds": (self._clock() - meta.loaded_at).total_seconds() if meta else None,
            "stale": self.is_stale(),
        }


class CacheRegistry:
    """
    Caches keyed by (provider_id, school_site), each with its own run lock.

    Runs for the same key must hold ``lock_for(key)``; different keys never
    share a lock and may run concurrently.
    """

    def __init__(self, store: SchedulingStore, config: SchedulerConfig | None = None):
        self.store = store
        self.config = config or SchedulerConfig()
        self._caches: Dict[CacheKey, DataCache] = {}
        self._locks: Dict[CacheKey, threading.Lock] = {}
        self._guard = threading.Lock()

    def cache_for(self, provider_id: str, school_site: str, store: SchedulingStore | None = None) -> DataCache:
        """Get (or create) the cache for a key. ``store`` only applies when the cache is created."""
        key = (provider_id, school_site)
        with self._guard:
            cache = self._caches.get(key)
            if cache is None:
                cache = DataCache(store or self.store, self.config)
                self._caches[key] = cache
            return cache

    def lock_for(self, provider_id: str, school_site: str) -> threading.Lock:
        key = (provider_id, school_site)
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def evict(self, provider_id: str, school_site: str) -> None:
        with self._guard:
            self._caches.pop((provider_id, school_site), None)

    def keys(self) -> List[CacheKey]:
        with self._guard:
            return list(self._caches)

    def clear(self) -> None:
        with self._guard:
            self._caches.clear()


def _is_scheduled(session: ScheduleSession) -> bool:
    return session.day_of_week is not None and bool(session.start_time) and bool(session.end_time)


def _overlaps(window: Tuple[int, int], start: str, end: str) -> bool:
    return window[0] < time_to_minutes(end) and time_to_minutes(start) < window[1]
