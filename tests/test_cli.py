"""End-to-end CLI tests against a file-backed SQLite database."""

import pytest

from caseload_scheduler.cli import main
from caseload_scheduler.domain.db import get_session
from caseload_scheduler.domain.models import BellSchedule, ScheduleSession, Student
from caseload_scheduler.domain.repositories import ProviderRepository

PROVIDER = "prov-1"
SCHOOL = "Lincoln Elementary"


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'caseload.db'}"
    assert main(["--db", url, "init-db"]) == 0
    session = get_session(url)
    session.add_all(
        [
            Student(id="a1", provider_id=PROVIDER, initials="AB", grade_level="2", teacher_name="Ms. Rivera",
                    sessions_per_week=2, minutes_per_session=30, school_site=SCHOOL),
            Student(id="b2", provider_id=PROVIDER, initials="CD", grade_level="K", teacher_name="Mr. Chen",
                    sessions_per_week=1, minutes_per_session=20, school_site=SCHOOL),
        ]
    )
    session.commit()
    ProviderRepository.set_work_days(session, PROVIDER, SCHOOL, [1, 2, 4])
    session.close()
    return url


@pytest.mark.integration
def test_schedule_validate_summarize(db_url, capsys):
    target = ["--provider", PROVIDER, "--school", SCHOOL]

    assert main(["--db", db_url, "schedule", *target, "--log-level", "WARNING"]) == 0
    out = capsys.readouterr().out
    assert "[OK] AB: 2 sessions placed" in out
    assert "[OK] CD: 1 sessions placed" in out

    session = get_session(db_url)
    try:
        assert session.query(ScheduleSession).count() == 3
    finally:
        session.close()

    assert main(["--db", db_url, "validate", *target]) == 0
    assert "[OK] Validation passed" in capsys.readouterr().out

    assert main(["--db", db_url, "summarize", *target]) == 0
    assert "Sessions per day:" in capsys.readouterr().out


@pytest.mark.integration
def test_schedule_with_config_file(db_url, tmp_path, capsys):
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("distribution:\n  strategy: compact\n")

    assert main(["--db", db_url, "schedule", "--provider", PROVIDER, "--school", SCHOOL, "--config", str(cfg)]) == 0
    session = get_session(db_url)
    try:
        days = {s.day_of_week for s in session.query(ScheduleSession).filter(ScheduleSession.student_id == "a1")}
    finally:
        session.close()
    assert len(days) == 1


def test_schedule_without_provider_reports_error(db_url, capsys):
    assert main(["--db", db_url, "schedule", "--provider", "", "--school", SCHOOL]) == 2
    assert "[ERROR]" in capsys.readouterr().out


@pytest.mark.integration
def test_conflicts_flags_then_resolves(db_url, capsys):
    session = get_session(db_url)
    session.add_all(
        [
            ScheduleSession(id="r1", student_id="b2", provider_id=PROVIDER, day_of_week=1,
                            start_time="10:00", end_time="10:20"),
            BellSchedule(grade_level="K", day_of_week=1, start_time="10:00", end_time="10:30",
                         period_name="Recess", school_site=SCHOOL),
        ]
    )
    session.commit()
    session.close()
    target = ["--provider", PROVIDER, "--school", SCHOOL]

    assert main(["--db", db_url, "conflicts", *target]) == 0
    out = capsys.readouterr().out
    assert "[WARN] b2 day 1 10:00-10:20: Overlaps Recess" in out
    assert "[OK] 1 sessions flagged" in out

    assert main(["--db", db_url, "conflicts", *target, "--resolve"]) == 0
    assert "[OK] 1 blocked, 1 students re-placed, 0 not re-placed" in capsys.readouterr().out

    session = get_session(db_url)
    try:
        stored = session.query(ScheduleSession).filter(ScheduleSession.student_id == "b2").all()
    finally:
        session.close()
    assert len(stored) == 1
    assert stored[0].id != "r1"
