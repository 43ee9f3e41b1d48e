"""SQLAlchemy models for provider session scheduling."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Student(Base):
    """A student on a provider's caseload. Identified by initials, never full name."""

    __tablename__ = "students"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider_id = Column(String(36), nullable=False, index=True)
    initials = Column(String(10), nullable=False)
    grade_level = Column(String(10), nullable=False)  # "TK", "K", "1".."12"
    teacher_name = Column(String(100), nullable=True)
    sessions_per_week = Column(Integer, nullable=False, default=1)
    minutes_per_session = Column(Integer, nullable=False, default=30)
    school_site = Column(String(200), nullable=True)
    school_district = Column(String(200), nullable=True)
    school_id = Column(String(36), nullable=True)

    sessions = relationship("ScheduleSession", back_populates="student")

    @property
    def grade(self) -> str:
        return (self.grade_level or "").strip()

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, initials='{self.initials}', grade='{self.grade_level}')>"


class ScheduleSession(Base):
    """A weekly recurring session. Null day/time marks a pending placeholder."""

    __tablename__ = "schedule_sessions"

    id = Column(String(36), primary_key=True, default=_uuid)
    student_id = Column(String(36), ForeignKey("students.id"), nullable=False, index=True)
    provider_id = Column(String(36), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=True)  # 1=Mon .. 5=Fri
    start_time = Column(String(8), nullable=True)  # HH:MM
    end_time = Column(String(8), nullable=True)
    service_type = Column(String(30), nullable=True)  # provider role
    delivered_by = Column(String(20), nullable=False, default="provider")  # provider | sea
    assigned_to_sea_id = Column(String(36), nullable=True)
    assigned_to_specialist_id = Column(String(36), nullable=True)

    # Lifecycle flags
    manually_placed = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    has_conflict = Column(Boolean, nullable=False, default=False)
    conflict_reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    student = relationship("Student", back_populates="sessions")

    @property
    def is_scheduled(self) -> bool:
        return self.day_of_week is not None and self.start_time is not None and self.end_time is not None

    def __repr__(self) -> str:
        return (
            f"<ScheduleSession(student={self.student_id}, day={self.day_of_week}, "
            f"{self.start_time}-{self.end_time})>"
        )


class BellSchedule(Base):
    """A grade-wide recurring unavailability window (recess, lunch, ...)."""

    __tablename__ = "bell_schedules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    grade_level = Column(String(50), nullable=False)  # comma-separated: "K,1,2"
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(8), nullable=False)
    end_time = Column(String(8), nullable=False)
    period_name = Column(String(100), nullable=True)
    school_site = Column(String(200), nullable=True)
    school_id = Column(String(36), nullable=True)

    @property
    def grades(self) -> list[str]:
        return [g.strip() for g in (self.grade_level or "").split(",") if g.strip()]

    def __repr__(self) -> str:
        return f"<BellSchedule(grades='{self.grade_level}', day={self.day_of_week}, {self.start_time}-{self.end_time})>"


class SpecialActivity(Base):
    """A teacher-specific recurring unavailability window (PE, Music, ...)."""

    __tablename__ = "special_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    teacher_name = Column(String(100), nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(8), nullable=False)
    end_time = Column(String(8), nullable=False)
    activity_name = Column(String(100), nullable=True)
    school_site = Column(String(200), nullable=True)
    school_id = Column(String(36), nullable=True)

    def __repr__(self) -> str:
        return f"<SpecialActivity(teacher='{self.teacher_name}', day={self.day_of_week}, {self.start_time}-{self.end_time})>"


class SchoolHours(Base):
    """School-day window per grade; K/TK may carry '-AM'/'-PM' variants."""

    __tablename__ = "school_hours"

    id = Column(Integer, primary_key=True, autoincrement=True)
    school_site = Column(String(200), nullable=True)
    school_id = Column(String(36), nullable=True)
    day_of_week = Column(Integer, nullable=False)
    grade_level = Column(String(10), nullable=False, default="default")
    start_time = Column(String(8), nullable=False)
    end_time = Column(String(8), nullable=False)


class ProviderSchool(Base):
    """A school a provider works at."""

    __tablename__ = "provider_schools"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(String(36), nullable=False, index=True)
    school_site = Column(String(200), nullable=False)
    school_district = Column(String(200), nullable=True)
    school_id = Column(String(36), nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)

    work_days = relationship("ProviderWorkDay", back_populates="provider_school")


class ProviderWorkDay(Base):
    """A weekday on which the provider is on site at a school."""

    __tablename__ = "provider_work_days"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(String(36), nullable=False, index=True)
    provider_school_id = Column(Integer, ForeignKey("provider_schools.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)

    provider_school = relationship("ProviderSchool", back_populates="work_days")
