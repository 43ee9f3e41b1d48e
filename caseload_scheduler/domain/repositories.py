"""Repository classes and the scheduling store used by the engine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import create_engine, or_
from sqlalchemy.orm import Session, sessionmaker

from .models import (
    Base,
    BellSchedule,
    ProviderSchool,
    ProviderWorkDay,
    ScheduleSession,
    SchoolHours,
    SpecialActivity,
    Student,
)

logger = logging.getLogger(__name__)

# Roles whose sessions may be delegated to them by another provider
SPECIALIST_ROLES = {"specialist", "sea"}

ACTIVE_STATUS = "active"
CONFLICT_STATUS = "needs_attention"


class DatabaseManager:
    """Manages database connection and session factory."""

    def __init__(self, db_url: str = "sqlite:///caseload.db"):
        """
        Initialize database manager.

        Args:
            db_url: SQLAlchemy database URL (default: sqlite:///caseload.db)
        """
        self.engine = create_engine(db_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()


def _school_filter(model, school_site: str, school_id: Optional[str]):
    """Match rows by school_id when given, falling back to the site name."""
    if school_id:
        return or_(model.school_id == school_id, model.school_site == school_site)
    return model.school_site == school_site


class StudentRepository:
    """Repository for student data access."""

    @staticmethod
    def get_by_id(session: Session, student_id: str) -> Optional[Student]:
        return session.query(Student).filter(Student.id == student_id).first()

    @staticmethod
    def get_for_provider(
        session: Session,
        provider_id: str,
        school_site: str,
        school_id: Optional[str] = None,
    ) -> List[Student]:
        """Get a provider's caseload at one school."""
        return (
            session.query(Student)
            .filter(Student.provider_id == provider_id)
            .filter(_school_filter(Student, school_site, school_id))
            .order_by(Student.initials)
            .all()
        )

    @staticmethod
    def bulk_create(session: Session, students: List[Student]) -> None:
        session.add_all(students)
        session.commit()


class SessionRepository:
    """Repository for schedule session data access."""

    @staticmethod
    def get_for_provider(
        session: Session,
        provider_id: str,
        school_site: str,
        school_id: Optional[str] = None,
        provider_role: Optional[str] = None,
    ) -> List[ScheduleSession]:
        """
        Get sessions owned by (or delegated to) a provider at one school.

        Sessions of students at other schools are excluded; specialist roles
        also see sessions assigned to them by other providers.
        """
        ownership = ScheduleSession.provider_id == provider_id
        role = (provider_role or "").lower()
        if role == "sea":
            ownership = or_(ownership, ScheduleSession.assigned_to_sea_id == provider_id)
        elif role in SPECIALIST_ROLES:
            ownership = or_(ownership, ScheduleSession.assigned_to_specialist_id == provider_id)

        return (
            session.query(ScheduleSession)
            .join(Student, Student.id == ScheduleSession.student_id)
            .filter(ownership)
            .filter(_school_filter(Student, school_site, school_id))
            .all()
        )

    @staticmethod
    def get_other_provider_sessions(
        session: Session, student_ids: List[str], provider_id: str
    ) -> List[ScheduleSession]:
        """Scheduled sessions the given students have with any other provider."""
        if not student_ids:
            return []
        return (
            session.query(ScheduleSession)
            .filter(ScheduleSession.student_id.in_(student_ids))
            .filter(ScheduleSession.provider_id != provider_id)
            .filter(ScheduleSession.day_of_week.isnot(None))
            .filter(ScheduleSession.start_time.isnot(None))
            .filter(ScheduleSession.end_time.isnot(None))
            .order_by(ScheduleSession.day_of_week, ScheduleSession.start_time)
            .all()
        )

    @staticmethod
    def get_by_student(session: Session, student_id: str) -> List[ScheduleSession]:
        return session.query(ScheduleSession).filter(ScheduleSession.student_id == student_id).all()

    @staticmethod
    def delete_by_ids(session: Session, session_ids: List[str]) -> int:
        """Delete sessions by id. Returns number of deleted rows."""
        if not session_ids:
            return 0
        count = (
            session.query(ScheduleSession)
            .filter(ScheduleSession.id.in_(session_ids))
            .delete(synchronize_session=False)
        )
        session.commit()
        return count

    @staticmethod
    def set_conflicts(session: Session, reasons: Dict[str, Optional[str]]) -> int:
        """
        Flag or clear conflicts on sessions by id.

        A reason marks the session as needing attention; None clears the flag.
        Returns number of rows changed.
        """
        changed = 0
        for session_id, reason in reasons.items():
            row = session.get(ScheduleSession, session_id)
            if row is None:
                continue
            row.has_conflict = reason is not None
            row.conflict_reason = reason
            row.status = CONFLICT_STATUS if reason is not None else ACTIVE_STATUS
            changed += 1
        session.commit()
        return changed

    @staticmethod
    def bulk_create(session: Session, sessions: List[ScheduleSession]) -> None:
        """Create multiple sessions in one commit."""
        session.add_all(sessions)
        session.commit()

    @staticmethod
    def delete_for_provider(session: Session, provider_id: str) -> int:
        """Delete all sessions of a provider. Returns number of deleted rows."""
        count = (
            session.query(ScheduleSession)
            .filter(ScheduleSession.provider_id == provider_id)
            .delete(synchronize_session=False)
        )
        session.commit()
        return count


class ScheduleRulesRepository:
    """Repository for bell schedules, special activities and school hours."""

    @staticmethod
    def get_bell_schedules(session: Session, school_site: str, school_id: Optional[str] = None) -> List[BellSchedule]:
        return (
            session.query(BellSchedule)
            .filter(_school_filter(BellSchedule, school_site, school_id))
            .order_by(BellSchedule.day_of_week, BellSchedule.start_time)
            .all()
        )

    @staticmethod
    def get_special_activities(
        session: Session, school_site: str, school_id: Optional[str] = None
    ) -> List[SpecialActivity]:
        return (
            session.query(SpecialActivity)
            .filter(_school_filter(SpecialActivity, school_site, school_id))
            .order_by(SpecialActivity.day_of_week, SpecialActivity.start_time)
            .all()
        )

    @staticmethod
    def get_school_hours(session: Session, school_site: str, school_id: Optional[str] = None) -> List[SchoolHours]:
        return (
            session.query(SchoolHours)
            .filter(_school_filter(SchoolHours, school_site, school_id))
            .order_by(SchoolHours.day_of_week, SchoolHours.grade_level)
            .all()
        )


class ProviderRepository:
    """Repository for provider school assignments and work days."""

    @staticmethod
    def get_school(session: Session, provider_id: str, school_site: str) -> Optional[ProviderSchool]:
        return (
            session.query(ProviderSchool)
            .filter(ProviderSchool.provider_id == provider_id)
            .filter(ProviderSchool.school_site == school_site)
            .first()
        )

    @staticmethod
    def get_work_days(session: Session, provider_id: str) -> Dict[str, List[int]]:
        """Get the provider's work days keyed by school site."""
        rows = (
            session.query(ProviderWorkDay, ProviderSchool)
            .join(ProviderSchool, ProviderSchool.id == ProviderWorkDay.provider_school_id)
            .filter(ProviderWorkDay.provider_id == provider_id)
            .all()
        )
        by_site: Dict[str, List[int]] = {}
        for work_day, school in rows:
            by_site.setdefault(school.school_site, []).append(work_day.day_of_week)
        return {site: sorted(set(days)) for site, days in by_site.items()}

    @staticmethod
    def set_work_days(
        session: Session,
        provider_id: str,
        school_site: str,
        days: List[int],
        school_district: Optional[str] = None,
    ) -> ProviderSchool:
        """Replace the provider's work days at one school, creating the school link if needed."""
        school = ProviderRepository.get_school(session, provider_id, school_site)
        if school is None:
            school = ProviderSchool(
                provider_id=provider_id, school_site=school_site, school_district=school_district
            )
            session.add(school)
            session.flush()

        session.query(ProviderWorkDay).filter(ProviderWorkDay.provider_school_id == school.id).delete(
            synchronize_session=False
        )
        for day in sorted(set(days)):
            session.add(ProviderWorkDay(provider_id=provider_id, provider_school_id=school.id, day_of_week=day))
        session.commit()
        return school


class SchedulingStore(ABC):
    """
    Everything the scheduler reads from and writes to persistent storage.

    Implementations may raise on transient failures; callers retry.
    """

    @abstractmethod
    def fetch_work_days(self, provider_id: str) -> Dict[str, List[int]]:
        """Work days per school site for the provider."""

    @abstractmethod
    def fetch_bell_schedules(self, school_site: str, school_id: Optional[str] = None) -> List[BellSchedule]:
        pass

    @abstractmethod
    def fetch_special_activities(self, school_site: str, school_id: Optional[str] = None) -> List[SpecialActivity]:
        pass

    @abstractmethod
    def fetch_students(self, provider_id: str, school_site: str, school_id: Optional[str] = None) -> List[Student]:
        pass

    @abstractmethod
    def fetch_existing_sessions(
        self,
        provider_id: str,
        school_site: str,
        school_id: Optional[str] = None,
        provider_role: Optional[str] = None,
    ) -> List[ScheduleSession]:
        pass

    @abstractmethod
    def fetch_other_provider_sessions(self, provider_id: str, student_ids: List[str]) -> List[ScheduleSession]:
        """Scheduled sessions of these students with providers other than ``provider_id``."""

    @abstractmethod
    def fetch_school_hours(self, school_site: str, school_id: Optional[str] = None) -> List[SchoolHours]:
        pass

    @abstractmethod
    def insert_sessions(self, sessions: List[ScheduleSession]) -> None:
        """Insert new sessions in a single write."""

    @abstractmethod
    def update_pending_sessions(self, updates: List[ScheduleSession]) -> None:
        """Fill day/time on existing placeholder rows (matched by id)."""

    @abstractmethod
    def update_session_times(self, sessions: List[ScheduleSession]) -> None:
        """Write new day/time on scheduled rows and clear their conflict flags."""

    @abstractmethod
    def delete_sessions(self, session_ids: List[str]) -> None:
        pass

    @abstractmethod
    def mark_conflicts(self, reasons: Dict[str, Optional[str]]) -> None:
        """Flag sessions (id -> reason); a None reason clears the flag."""

    def rollback(self) -> None:
        """Discard a failed transaction before a retry. No-op by default."""


class SqlSchedulingStore(SchedulingStore):
    """SchedulingStore backed by a SQLAlchemy session."""

    def __init__(self, session: Session):
        self.session = session

    def rollback(self) -> None:
        self.session.rollback()

    def fetch_work_days(self, provider_id: str) -> Dict[str, List[int]]:
        return ProviderRepository.get_work_days(self.session, provider_id)

    def fetch_bell_schedules(self, school_site: str, school_id: Optional[str] = None) -> List[BellSchedule]:
        return ScheduleRulesRepository.get_bell_schedules(self.session, school_site, school_id)

    def fetch_special_activities(self, school_site: str, school_id: Optional[str] = None) -> List[SpecialActivity]:
        return ScheduleRulesRepository.get_special_activities(self.session, school_site, school_id)

    def fetch_students(self, provider_id: str, school_site: str, school_id: Optional[str] = None) -> List[Student]:
        return StudentRepository.get_for_provider(self.session, provider_id, school_site, school_id)

    def fetch_existing_sessions(
        self,
        provider_id: str,
        school_site: str,
        school_id: Optional[str] = None,
        provider_role: Optional[str] = None,
    ) -> List[ScheduleSession]:
        return SessionRepository.get_for_provider(self.session, provider_id, school_site, school_id, provider_role)

    def fetch_other_provider_sessions(self, provider_id: str, student_ids: List[str]) -> List[ScheduleSession]:
        return SessionRepository.get_other_provider_sessions(self.session, student_ids, provider_id)

    def fetch_school_hours(self, school_site: str, school_id: Optional[str] = None) -> List[SchoolHours]:
        return ScheduleRulesRepository.get_school_hours(self.session, school_site, school_id)

    def insert_sessions(self, sessions: List[ScheduleSession]) -> None:
        if not sessions:
            return
        try:
            SessionRepository.bulk_create(self.session, sessions)
        except Exception:
            self.session.rollback()
            raise
        logger.info("Inserted %d sessions", len(sessions))

    def update_pending_sessions(self, updates: List[ScheduleSession]) -> None:
        if not updates:
            return
        try:
            for update in updates:
                row = self.session.get(ScheduleSession, update.id)
                if row is None:
                    raise LookupError(f"Pending session {update.id} no longer exists")
                row.day_of_week = update.day_of_week
                row.start_time = update.start_time
                row.end_time = update.end_time
                row.service_type = update.service_type
                row.delivered_by = update.delivered_by
                row.assigned_to_sea_id = update.assigned_to_sea_id
                row.assigned_to_specialist_id = update.assigned_to_specialist_id
                row.manually_placed = False
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Updated %d pending sessions", len(updates))

    def update_session_times(self, sessions: List[ScheduleSession]) -> None:
        if not sessions:
            return
        try:
            for update in sessions:
                row = self.session.get(ScheduleSession, update.id)
                if row is None:
                    raise LookupError(f"Session {update.id} no longer exists")
                row.day_of_week = update.day_of_week
                row.start_time = update.start_time
                row.end_time = update.end_time
                row.has_conflict = False
                row.conflict_reason = None
                row.status = ACTIVE_STATUS
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Updated times on %d sessions", len(sessions))

    def delete_sessions(self, session_ids: List[str]) -> None:
        if not session_ids:
            return
        try:
            count = SessionRepository.delete_by_ids(self.session, session_ids)
        except Exception:
            self.session.rollback()
            raise
        logger.info("Deleted %d sessions", count)

    def mark_conflicts(self, reasons: Dict[str, Optional[str]]) -> None:
        if not reasons:
            return
        try:
            SessionRepository.set_conflicts(self.session, reasons)
        except Exception:
            self.session.rollback()
            raise
        flagged = sum(1 for reason in reasons.values() if reason is not None)
        logger.info("Marked %d sessions as conflicting, cleared %d", flagged, len(reasons) - flagged)
