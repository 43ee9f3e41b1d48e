"""Domain models and data access layer."""

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
from .repositories import (
    DatabaseManager,
    ProviderRepository,
    ScheduleRulesRepository,
    SchedulingStore,
    SessionRepository,
    SqlSchedulingStore,
    StudentRepository,
)

__all__ = [
    "Base",
    "Student",
    "ScheduleSession",
    "BellSchedule",
    "SpecialActivity",
    "SchoolHours",
    "ProviderSchool",
    "ProviderWorkDay",
    "DatabaseManager",
    "StudentRepository",
    "SessionRepository",
    "ScheduleRulesRepository",
    "ProviderRepository",
    "SchedulingStore",
    "SqlSchedulingStore",
]
