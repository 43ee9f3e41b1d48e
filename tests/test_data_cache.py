"""Tests for DataCache loading, indexing and the cache registry."""

from datetime import datetime, timedelta

import pytest

from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, SpecialActivity, Student
from caseload_scheduler.domain.repositories import ProviderRepository, SqlSchedulingStore
from caseload_scheduler.exceptions import InitializationError
from caseload_scheduler.services.data_cache import CacheRegistry, DataCache

PROVIDER = "prov-1"
SCHOOL = "Lincoln Elementary"


class FailingStore(SqlSchedulingStore):
    """Store whose bell schedule read always fails."""

    def fetch_bell_schedules(self, school_site, school_id=None):
        raise RuntimeError("bell table unavailable")


class FlakyStore(SqlSchedulingStore):
    """Store whose activity read fails twice before succeeding."""

    def __init__(self, session):
        super().__init__(session)
        self.activity_calls = 0

    def fetch_special_activities(self, school_site, school_id=None):
        self.activity_calls += 1
        if self.activity_calls < 3:
            raise ConnectionError("connection reset")
        return super().fetch_special_activities(school_site, school_id)


@pytest.fixture
def seeded(db_session):
    """A provider with two students, bells, an activity and sessions at one school."""
    db_session.add_all(
        [
            Student(id="s1", provider_id=PROVIDER, initials="AB", grade_level="1", teacher_name="Ms. Rivera",
                    sessions_per_week=2, minutes_per_session=30, school_site=SCHOOL),
            Student(id="s2", provider_id=PROVIDER, initials="CD", grade_level="K", teacher_name="Mr. Chen",
                    sessions_per_week=1, minutes_per_session=30, school_site=SCHOOL),
            Student(id="s3", provider_id=PROVIDER, initials="EF", grade_level="2", teacher_name="Ms. Rivera",
                    sessions_per_week=1, minutes_per_session=30, school_site="Other School"),
            BellSchedule(grade_level="K, 1", day_of_week=1, start_time="10:00", end_time="10:20",
                         period_name="Recess", school_site=SCHOOL),
            BellSchedule(grade_level="2", day_of_week=1, start_time="11:30", end_time="12:00",
                         period_name="Lunch", school_site=SCHOOL),
            SpecialActivity(teacher_name="Ms. Rivera", day_of_week=2, start_time="13:00", end_time="13:45",
                            activity_name="PE", school_site=SCHOOL),
        ]
    )
    db_session.commit()
    db_session.add_all(
        [
            ScheduleSession(id="sess-1", student_id="s1", provider_id=PROVIDER, day_of_week=1,
                            start_time="09:00", end_time="09:30"),
            ScheduleSession(id="sess-2", student_id="s1", provider_id=PROVIDER, day_of_week=None,
                            start_time=None, end_time=None),
            ScheduleSession(id="sess-3", student_id="s3", provider_id=PROVIDER, day_of_week=1,
                            start_time="09:00", end_time="09:30"),
        ]
    )
    db_session.commit()
    ProviderRepository.set_work_days(db_session, PROVIDER, SCHOOL, [1, 3, 5])
    return db_session


def test_initialize_loads_and_indexes(seeded, store, config):
    """Test bell schedules are indexed per split grade and activities per teacher."""
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)

    assert {s.id for s in cache.get_students()} == {"s1", "s2"}
    assert cache.get_provider_work_days(SCHOOL) == [1, 3, 5]

    k_bells = cache.get_bell_conflicts("K", 1, "10:10", "10:40")
    first_bells = cache.get_bell_conflicts("1", 1, "09:50", "10:05")
    assert [b.period_name for b in k_bells] == ["Recess"]
    assert [b.period_name for b in first_bells] == ["Recess"]
    assert cache.get_bell_conflicts("3", 1, "10:00", "10:20") == []

    activities = cache.get_activity_conflicts("ms. rivera", 2, "13:30", "14:00")
    assert [a.activity_name for a in activities] == ["PE"]


def test_conflict_lookups_are_half_open(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    assert cache.get_bell_conflicts("K", 1, "09:30", "10:00") == []
    assert cache.get_bell_conflicts("K", 1, "10:20", "10:50") == []


def test_existing_sessions_exclude_other_schools_and_placeholders(seeded, store, config):
    """Sessions of students at other schools are not loaded; placeholders are kept apart."""
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)

    assert [s.id for s in cache.get_existing_sessions()] == ["sess-1"]
    assert [s.id for s in cache.get_pending_sessions("s1")] == ["sess-2"]
    assert cache.get_existing_sessions(day=2) == []
    assert [s.id for s in cache.get_existing_sessions(1, ("09:15", "09:45"))] == ["sess-1"]
    assert cache.get_existing_sessions(1, ("09:30", "10:00")) == []
    assert [s.id for s in cache.get_sessions_by_student("s1")] == ["sess-1"]
    assert cache.get_slot_load(1, "09:00") == 1
    assert cache.get_slot_load(1, "09:30") == 0


def test_reinitialize_same_key_is_cache_hit(seeded, store, config):
    cache = DataCache(store, config)
    first = cache.initialize(PROVIDER, SCHOOL)
    queries = first.query_count
    second = cache.initialize(PROVIDER, SCHOOL)

    assert second is first
    metrics = cache.metrics()
    assert metrics["hits"] == 1
    assert metrics["misses"] == 1
    assert metrics["queries"] == queries


def test_initialize_requires_key(store, config):
    cache = DataCache(store, config)
    with pytest.raises(InitializationError):
        cache.initialize("", SCHOOL)
    with pytest.raises(InitializationError):
        cache.initialize(PROVIDER, "")


def test_missing_work_days_default_policy(store, config):
    """No work-day rows: all weekdays under the default policy."""
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    assert cache.get_provider_work_days() == [1, 2, 3, 4, 5]
    assert cache.is_provider_available(4)


def test_missing_work_days_none_policy(store, config):
    config.cache.missing_work_days_policy = "none"
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    assert cache.get_provider_work_days() == []
    assert not cache.is_provider_available(1)


def test_read_failure_is_recorded_and_degrades(seeded, db_session, config):
    """A failing read leaves an empty resource and a recorded error; other reads still load."""
    cache = DataCache(FailingStore(db_session), config)
    meta = cache.initialize(PROVIDER, SCHOOL)

    assert "bell_schedules" in meta.fetch_errors
    assert "bell table unavailable" in meta.fetch_errors["bell_schedules"]
    assert cache.get_bell_conflicts("K", 1, "10:00", "10:20") == []
    assert len(cache.get_students()) == 2
    assert cache.get_activity_conflicts("Ms. Rivera", 2, "13:00", "13:30")


def test_transient_read_failure_is_retried(seeded, db_session, config):
    store = FlakyStore(db_session)
    cache = DataCache(store, config, sleep=lambda s: None)
    meta = cache.initialize(PROVIDER, SCHOOL)

    assert store.activity_calls == 3
    assert meta.fetch_errors == {}
    assert cache.get_activity_conflicts("Ms. Rivera", 2, "13:00", "13:30")


def test_staleness_is_flagged_not_refreshed(seeded, store, config):
    now = [datetime(2025, 9, 1, 8, 0)]
    cache = DataCache(store, config, clock=lambda: now[0])
    cache.initialize(PROVIDER, SCHOOL)
    assert not cache.is_stale()

    now[0] += timedelta(minutes=16)
    assert cache.is_stale()
    assert cache.version == 1

    cache.refresh()
    assert not cache.is_stale()
    assert cache.version == 2


def test_add_sessions_fills_placeholders(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    filled = ScheduleSession(id="sess-2", student_id="s1", provider_id=PROVIDER, day_of_week=3,
                             start_time="09:00", end_time="09:30")
    cache.add_sessions([filled])

    assert cache.get_pending_sessions("s1") == []
    assert len(cache.get_sessions_by_student("s1")) == 2


def test_snapshot_and_restore(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    snapshot = cache.prepare_snapshot()

    cache.add_sessions([
        ScheduleSession(id="new", student_id="s2", provider_id=PROVIDER, day_of_week=3,
                        start_time="10:00", end_time="10:30")
    ])
    assert len(cache.get_existing_sessions()) == 2

    cache.restore_snapshot(snapshot)
    assert len(cache.get_existing_sessions()) == 1
    assert cache.get_bell_conflicts("K", 1, "10:00", "10:20")


def test_clear(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    cache.clear()
    assert not cache.is_initialized
    assert cache.get_students() == []


def test_registry_keys_and_locks(store, config):
    """Same key shares cache and lock; different keys do not."""
    registry = CacheRegistry(store, config)
    a = registry.cache_for(PROVIDER, SCHOOL)
    assert registry.cache_for(PROVIDER, SCHOOL) is a
    assert registry.cache_for(PROVIDER, "Other School") is not a

    lock = registry.lock_for(PROVIDER, SCHOOL)
    assert registry.lock_for(PROVIDER, SCHOOL) is lock
    assert registry.lock_for("prov-2", SCHOOL) is not lock
    assert sorted(registry.keys()) == [(PROVIDER, SCHOOL), (PROVIDER, "Other School")]

    registry.evict(PROVIDER, SCHOOL)
    assert registry.cache_for(PROVIDER, SCHOOL) is not a


def _add_delegated_session(db_session):
    """A session another provider owns for s1, delegated to PROVIDER as SEA."""
    db_session.add(
        ScheduleSession(id="deleg-1", student_id="s1", provider_id="prov-9", day_of_week=4,
                        start_time="10:00", end_time="10:30", assigned_to_sea_id=PROVIDER)
    )
    db_session.commit()


def test_other_provider_sessions_are_loaded_apart(seeded, store, config):
    _add_delegated_session(seeded)
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL, provider_role="resource")

    assert [s.id for s in cache.get_other_provider_sessions()] == ["deleg-1"]
    assert [s.id for s in cache.get_other_provider_sessions("s1")] == ["deleg-1"]
    assert cache.get_other_provider_sessions("s2") == []
    assert "deleg-1" not in {s.id for s in cache.get_existing_sessions()}
    assert cache.get_slot_load(4, "10:00") == 0


def test_role_change_reloads_instead_of_hitting(seeded, store, config):
    """The SEA role owns delegated sessions, so the same key under another role is a reload."""
    _add_delegated_session(seeded)
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL, provider_role="resource")
    assert cache.initialize(PROVIDER, SCHOOL, provider_role="RESOURCE").provider_role == "resource"

    meta = cache.initialize(PROVIDER, SCHOOL, provider_role="sea")

    assert meta.provider_role == "sea"
    assert "deleg-1" in {s.id for s in cache.get_existing_sessions()}
    assert cache.get_other_provider_sessions() == []
    metrics = cache.metrics()
    assert metrics["hits"] == 1
    assert metrics["misses"] == 2
    assert metrics["version"] == 2


def test_school_id_change_reloads(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    meta = cache.initialize(PROVIDER, SCHOOL, school_id="sch-1")

    assert meta.school_id == "sch-1"
    assert cache.metrics()["misses"] == 2


def test_remove_sessions(seeded, store, config):
    cache = DataCache(store, config)
    cache.initialize(PROVIDER, SCHOOL)
    cache.remove_sessions(["sess-1", "sess-2"])

    assert cache.get_existing_sessions() == []
    assert cache.get_pending_sessions() == []
    assert cache.version == 2
