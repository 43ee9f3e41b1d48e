"""Tests for repositories and the SQL scheduling store."""

import pytest

from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, Student
from caseload_scheduler.domain.repositories import (
    ProviderRepository,
    ScheduleRulesRepository,
    SessionRepository,
    SqlSchedulingStore,
    StudentRepository,
)

PROVIDER = "prov-1"
SCHOOL = "Lincoln Elementary"


def _student(student_id, school=SCHOOL, school_id=None, provider=PROVIDER):
    return Student(id=student_id, provider_id=provider, initials=student_id.upper(), grade_level="2",
                   sessions_per_week=1, minutes_per_session=30, school_site=school, school_id=school_id)


def test_students_filtered_by_school(db_session):
    StudentRepository.bulk_create(
        db_session,
        [_student("b"), _student("a"), _student("c", school="Other"), _student("d", provider="prov-2")],
    )
    students = StudentRepository.get_for_provider(db_session, PROVIDER, SCHOOL)
    assert [s.id for s in students] == ["a", "b"]
    assert StudentRepository.get_by_id(db_session, "c").school_site == "Other"


def test_school_id_matches_renamed_site(db_session):
    """A student stored under another site name is still found by school id."""
    StudentRepository.bulk_create(db_session, [_student("a", school="Lincoln Elem.", school_id="sch-1")])
    assert StudentRepository.get_for_provider(db_session, PROVIDER, SCHOOL) == []
    assert len(StudentRepository.get_for_provider(db_session, PROVIDER, SCHOOL, "sch-1")) == 1


def test_sessions_include_delegated_for_sea(db_session):
    StudentRepository.bulk_create(db_session, [_student("a")])
    SessionRepository.bulk_create(
        db_session,
        [
            ScheduleSession(id="own", student_id="a", provider_id="sea-1", day_of_week=1,
                            start_time="09:00", end_time="09:30"),
            ScheduleSession(id="delegated", student_id="a", provider_id=PROVIDER, day_of_week=2,
                            start_time="09:00", end_time="09:30", assigned_to_sea_id="sea-1"),
            ScheduleSession(id="other", student_id="a", provider_id=PROVIDER, day_of_week=3,
                            start_time="09:00", end_time="09:30"),
        ],
    )

    plain = SessionRepository.get_for_provider(db_session, "sea-1", SCHOOL)
    as_sea = SessionRepository.get_for_provider(db_session, "sea-1", SCHOOL, provider_role="sea")
    assert {s.id for s in plain} == {"own"}
    assert {s.id for s in as_sea} == {"own", "delegated"}


def test_delete_for_provider(db_session):
    StudentRepository.bulk_create(db_session, [_student("a")])
    SessionRepository.bulk_create(
        db_session,
        [ScheduleSession(student_id="a", provider_id=PROVIDER, day_of_week=d, start_time="09:00", end_time="09:30")
         for d in (1, 2)],
    )
    assert SessionRepository.delete_for_provider(db_session, PROVIDER) == 2
    assert SessionRepository.get_by_student(db_session, "a") == []


def test_work_days_by_site(db_session):
    ProviderRepository.set_work_days(db_session, PROVIDER, SCHOOL, [5, 1, 3, 3])
    ProviderRepository.set_work_days(db_session, PROVIDER, "Other", [2])
    assert ProviderRepository.get_work_days(db_session, PROVIDER) == {SCHOOL: [1, 3, 5], "Other": [2]}

    ProviderRepository.set_work_days(db_session, PROVIDER, SCHOOL, [4])
    assert ProviderRepository.get_work_days(db_session, PROVIDER)[SCHOOL] == [4]


def test_bell_schedules_ordered(db_session):
    db_session.add_all(
        [
            BellSchedule(grade_level="1", day_of_week=2, start_time="10:00", end_time="10:20", school_site=SCHOOL),
            BellSchedule(grade_level="1", day_of_week=1, start_time="11:30", end_time="12:00", school_site=SCHOOL),
            BellSchedule(grade_level="1", day_of_week=1, start_time="10:00", end_time="10:20", school_site=SCHOOL),
            BellSchedule(grade_level="1", day_of_week=1, start_time="09:00", end_time="09:20", school_site="Other"),
        ]
    )
    db_session.commit()
    bells = ScheduleRulesRepository.get_bell_schedules(db_session, SCHOOL)
    assert [(b.day_of_week, b.start_time) for b in bells] == [(1, "10:00"), (1, "11:30"), (2, "10:00")]


def test_store_fills_placeholders(db_session, store):
    StudentRepository.bulk_create(db_session, [_student("a")])
    SessionRepository.bulk_create(db_session, [ScheduleSession(id="p1", student_id="a", provider_id=PROVIDER)])

    filled = ScheduleSession(id="p1", student_id="a", provider_id=PROVIDER, day_of_week=4,
                             start_time="10:00", end_time="10:30", delivered_by="sea", assigned_to_sea_id="sea-1")
    store.update_pending_sessions([filled])

    row = db_session.get(ScheduleSession, "p1")
    assert (row.day_of_week, row.start_time, row.end_time) == (4, "10:00", "10:30")
    assert row.delivered_by == "sea"
    assert row.assigned_to_sea_id == "sea-1"


def test_store_update_missing_placeholder_raises(store):
    gone = ScheduleSession(id="missing", student_id="a", provider_id=PROVIDER, day_of_week=1,
                           start_time="09:00", end_time="09:30")
    with pytest.raises(LookupError):
        store.update_pending_sessions([gone])


def test_store_insert_and_empty_calls(db_session, store):
    StudentRepository.bulk_create(db_session, [_student("a")])
    store.insert_sessions([])
    store.update_pending_sessions([])
    store.insert_sessions(
        [ScheduleSession(id="n1", student_id="a", provider_id=PROVIDER, day_of_week=1,
                         start_time="09:00", end_time="09:30")]
    )
    assert [s.id for s in store.fetch_existing_sessions(PROVIDER, SCHOOL)] == ["n1"]


def test_sql_store_is_a_scheduling_store(db_session):
    store = SqlSchedulingStore(db_session)
    assert store.fetch_work_days(PROVIDER) == {}
    assert store.fetch_school_hours(SCHOOL) == []
    assert store.fetch_students(PROVIDER, SCHOOL) == []


def test_other_provider_sessions(db_session, store):
    StudentRepository.bulk_create(db_session, [_student("a"), _student("b")])
    SessionRepository.bulk_create(
        db_session,
        [
            ScheduleSession(id="mine", student_id="a", provider_id=PROVIDER, day_of_week=1,
                            start_time="09:00", end_time="09:30"),
            ScheduleSession(id="speech", student_id="a", provider_id="speech-9", day_of_week=2,
                            start_time="09:00", end_time="09:30"),
            ScheduleSession(id="ot", student_id="b", provider_id="ot-3", day_of_week=1,
                            start_time="10:00", end_time="10:30"),
            ScheduleSession(id="ot-pending", student_id="b", provider_id="ot-3"),
        ],
    )

    assert [s.id for s in store.fetch_other_provider_sessions(PROVIDER, ["a", "b"])] == ["ot", "speech"]
    assert [s.id for s in store.fetch_other_provider_sessions(PROVIDER, ["a"])] == ["speech"]
    assert store.fetch_other_provider_sessions(PROVIDER, []) == []


def test_store_conflict_flags_and_deletes(db_session, store):
    StudentRepository.bulk_create(db_session, [_student("a")])
    SessionRepository.bulk_create(
        db_session,
        [ScheduleSession(id=f"s{d}", student_id="a", provider_id=PROVIDER, day_of_week=d, start_time="09:00",
                         end_time="09:30") for d in (1, 2, 3)],
    )

    store.mark_conflicts({"s1": "Overlaps Lunch", "s2": "Outside school hours", "gone": "ignored"})
    row = db_session.get(ScheduleSession, "s1")
    assert row.has_conflict
    assert row.conflict_reason == "Overlaps Lunch"
    assert row.status == "needs_attention"

    store.mark_conflicts({"s1": None})
    row = db_session.get(ScheduleSession, "s1")
    assert (row.has_conflict, row.conflict_reason, row.status) == (False, None, "active")
    assert db_session.get(ScheduleSession, "s2").has_conflict

    store.delete_sessions(["s3"])
    assert {s.id for s in SessionRepository.get_by_student(db_session, "a")} == {"s1", "s2"}


def test_store_update_session_times_clears_flags(db_session, store):
    StudentRepository.bulk_create(db_session, [_student("a")])
    SessionRepository.bulk_create(
        db_session,
        [ScheduleSession(id="s1", student_id="a", provider_id=PROVIDER, day_of_week=1, start_time="09:00",
                         end_time="09:30", has_conflict=True, conflict_reason="old", status="needs_attention")],
    )

    moved = ScheduleSession(id="s1", student_id="a", provider_id=PROVIDER, day_of_week=2,
                            start_time="10:00", end_time="10:45")
    store.update_session_times([moved])

    row = db_session.get(ScheduleSession, "s1")
    assert (row.day_of_week, row.start_time, row.end_time) == (2, "10:00", "10:45")
    assert (row.has_conflict, row.conflict_reason, row.status) == (False, None, "active")

    with pytest.raises(LookupError):
        store.update_session_times([ScheduleSession(id="missing", student_id="a", provider_id=PROVIDER)])
