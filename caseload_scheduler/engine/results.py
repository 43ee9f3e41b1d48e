"""Result and state types returned by the engine and coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from caseload_scheduler.domain.models import ScheduleSession, Student


class RunState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SCHEDULING = "scheduling"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED_BEFORE_INIT = "failed-before-init"


@dataclass
class SchedulingResult:
    """Outcome of placing one student."""

    success: bool
    student_id: Optional[str] = None
    sessions: List[ScheduleSession] = field(default_factory=list)
    error: Optional[str] = None
    strategy: Optional[str] = None
    score: Optional[float] = None
    candidates_considered: int = 0
    valid_candidates: int = 0
    combinations_evaluated: int = 0
    rejections: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def failure(cls, student_id: Optional[str], error: str, **kwargs: Any) -> "SchedulingResult":
        return cls(success=False, student_id=student_id, error=error, **kwargs)


@dataclass
class StudentOutcome:
    student_id: Optional[str]
    initials: Optional[str]
    scheduled: bool
    sessions_placed: int = 0
    reason: Optional[str] = None


@dataclass
class BatchResult:
    """
    Outcome of one batch run.

    ``total_scheduled`` counts students whose sessions were placed *and*
    written. When the write fails it is 0, ``write_error`` is set and
    ``scheduled_sessions`` still lists the computed placements.
    """

    provider_id: str
    school_site: str
    outcomes: List[StudentOutcome] = field(default_factory=list)
    scheduled_sessions: List[ScheduleSession] = field(default_factory=list)
    unscheduled_students: List[Student] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    total_scheduled: int = 0
    total_failed: int = 0
    write_error: Optional[str] = None
    persisted: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def placed_students(self) -> int:
        return sum(1 for o in self.outcomes if o.scheduled)

    def summary(self) -> str:
        status = "written" if self.persisted else f"NOT written ({self.write_error})" if self.write_error else "nothing to write"
        return (
            f"{self.placed_students}/{len(self.outcomes)} students placed, "
            f"{len(self.scheduled_sessions)} sessions {status}"
        )


@dataclass
class ConflictResolution:
    """Outcome of moving sessions off times a bell schedule or activity now blocks."""

    removed: List[Dict[str, Any]] = field(default_factory=list)
    outcomes: List[StudentOutcome] = field(default_factory=list)
    sessions: List[ScheduleSession] = field(default_factory=list)
    write_error: Optional[str] = None

    @property
    def resolved(self) -> int:
        return sum(1 for o in self.outcomes if o.scheduled)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.scheduled)

    def summary(self) -> str:
        text = f"{len(self.removed)} blocked, {self.resolved} students re-placed, {self.failed} not re-placed"
        if self.write_error:
            text += f" (NOT written: {self.write_error})"
        return text
