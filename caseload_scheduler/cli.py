"""Command-line interface for the caseload scheduler."""

from __future__ import annotations

import argparse

from caseload_scheduler.config import SchedulerConfig, load_config
from caseload_scheduler.domain.db import DEFAULT_DB_URL, get_session, init_database
from caseload_scheduler.domain.repositories import SessionRepository, SqlSchedulingStore
from caseload_scheduler.engine.coordinator import SchedulingCoordinator, schedule_provider_school
from caseload_scheduler.exceptions import InitializationError, PersistenceError
from caseload_scheduler.logging_setup import setup_logging
from caseload_scheduler.validator import sessions_to_frame, summarize_sessions, validate_sessions


def _load_config(path: str | None) -> SchedulerConfig:
    if not path:
        return SchedulerConfig()
    return load_config(path)


def _cmd_init_db(args: argparse.Namespace) -> int:
    """Initialize the database."""
    db_url = args.db or DEFAULT_DB_URL
    init_database(db_url)
    print(f"[OK] Database initialized: {db_url}")
    return 0


def _cmd_schedule(args: argparse.Namespace) -> int:
    """Schedule a provider's caseload at one school."""
    db_url = args.db or DEFAULT_DB_URL
    session = get_session(db_url)

    try:
        cfg = _load_config(args.config)
        setup_logging(args.log_level or cfg.log_level)
        result = schedule_provider_school(
            SqlSchedulingStore(session),
            provider_id=args.provider,
            school_site=args.school,
            provider_role=args.role,
            school_id=args.school_id,
            school_district=args.district or "",
            config=cfg,
        )
    except InitializationError as e:
        print(f"[ERROR] Could not initialize scheduling: {e}")
        return 2
    finally:
        session.close()

    for outcome in result.outcomes:
        if outcome.scheduled:
            print(f"[OK] {outcome.initials}: {outcome.sessions_placed} sessions placed")
        else:
            print(f"[WARN] {outcome.initials}: {outcome.reason}")

    if result.write_error:
        print(f"[ERROR] Sessions were placed but not saved: {result.write_error}")
        return 1
    print(f"[OK] {result.summary()}")
    return 0 if not result.unscheduled_students else 1


def _cmd_validate(args: argparse.Namespace) -> int:
    """Validate the saved schedule of a provider at one school."""
    db_url = args.db or DEFAULT_DB_URL
    session = get_session(db_url)

    try:
        cfg = _load_config(args.config)
        sessions = SessionRepository.get_for_provider(session, args.provider, args.school, args.school_id, args.role)
        validate_sessions(sessions_to_frame(sessions), cfg.constraints)
    except ValueError as e:
        print(f"[ERROR] Validation failed: {e}")
        return 1
    finally:
        session.close()

    print(f"[OK] Validation passed for {args.provider} @ {args.school} ({len(sessions)} sessions)")
    return 0


def _cmd_summarize(args: argparse.Namespace) -> int:
    """Summarize the saved schedule of a provider at one school."""
    db_url = args.db or DEFAULT_DB_URL
    session = get_session(db_url)
    try:
        sessions = SessionRepository.get_for_provider(session, args.provider, args.school, args.school_id, args.role)
        print(summarize_sessions(sessions_to_frame(sessions)))
    finally:
        session.close()
    return 0


def _cmd_conflicts(args: argparse.Namespace) -> int:
    """Flag conflicting sessions, or move sessions that bells and activities now block."""
    db_url = args.db or DEFAULT_DB_URL
    session = get_session(db_url)

    try:
        cfg = _load_config(args.config)
        setup_logging(cfg.log_level)
        coordinator = SchedulingCoordinator(SqlSchedulingStore(session), cfg)
        coordinator.initialize(args.provider, args.role, args.school, args.school_id)
        if args.resolve:
            resolution = coordinator.resolve_rule_conflicts()
            print(f"[OK] {resolution.summary()}" if not resolution.write_error else f"[ERROR] {resolution.summary()}")
            return 0 if not (resolution.write_error or resolution.failed) else 1
        flagged = coordinator.mark_session_conflicts()
        for conflict in coordinator.detect_session_conflicts():
            print(
                f"[WARN] {conflict['student_id']} day {conflict['day_of_week']} "
                f"{conflict['start_time']}-{conflict['end_time']}: {conflict['reason']}"
            )
    except InitializationError as e:
        print(f"[ERROR] Could not initialize scheduling: {e}")
        return 2
    except PersistenceError as e:
        print(f"[ERROR] Could not save conflict flags: {e}")
        return 1
    finally:
        session.close()

    print(f"[OK] {flagged} sessions flagged")
    return 0


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--provider", required=True, help="Provider id")
    parser.add_argument("--school", required=True, help="School site name")
    parser.add_argument("--school-id", dest="school_id", help="School id (optional)")
    parser.add_argument("--role", help="Provider role (e.g. resource, speech, sea)")


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="caseload-scheduler",
        description="Weekly session scheduling for a provider's caseload",
    )

    # Global options
    parser.add_argument("--db", help=f"Database URL (default: {DEFAULT_DB_URL})")

    sub = parser.add_subparsers(dest="command", required=True)

    # init-db command
    init = sub.add_parser("init-db", help="Initialize database")
    init.set_defaults(func=_cmd_init_db)

    # schedule command
    sch = sub.add_parser("schedule", help="Schedule a provider's students at a school")
    _add_target_args(sch)
    sch.add_argument("--district", help="School district")
    sch.add_argument("--config", help="Path to config YAML or JSON")
    sch.add_argument("--log-level", dest="log_level", help="Override the configured log level")
    sch.set_defaults(func=_cmd_schedule)

    # validate command
    val = sub.add_parser("validate", help="Validate saved sessions")
    _add_target_args(val)
    val.add_argument("--config", help="Path to config YAML or JSON")
    val.set_defaults(func=_cmd_validate)

    # summarize command
    summ = sub.add_parser("summarize", help="Summarize saved sessions")
    _add_target_args(summ)
    summ.set_defaults(func=_cmd_summarize)

    # conflicts command
    conf = sub.add_parser("conflicts", help="Flag conflicting sessions or move blocked ones")
    _add_target_args(conf)
    conf.add_argument("--resolve", action="store_true", help="Reschedule sessions blocked by bells or activities")
    conf.add_argument("--config", help="Path to config YAML or JSON")
    conf.set_defaults(func=_cmd_conflicts)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
