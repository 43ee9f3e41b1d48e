"""In-memory value types shared by the validator, distributor and engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Tuple

from caseload_scheduler.services.timeplan import time_to_minutes


@dataclass
class TimeSlot:
    """A candidate (or grid) time range on one weekday.

    ``capacity`` is what is left before the slot is full; ``occupancy`` is the
    number of sessions (any student) already overlapping the range.
    """

    day_of_week: int
    start_time: str
    end_time: str = ""
    capacity: int = 0
    occupancy: int = 0
    available: bool = True

    @property
    def key(self) -> Tuple[int, str]:
        return (self.day_of_week, self.start_time)

    @property
    def start_minutes(self) -> int:
        return time_to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return time_to_minutes(self.end_time)

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def interval(self) -> Tuple[int, int]:
        return (self.start_minutes, self.end_minutes)

    def __repr__(self) -> str:
        return f"<TimeSlot(day={self.day_of_week}, {self.start_time}-{self.end_time}, occ={self.occupancy}, cap={self.capacity})>"


@dataclass
class ValidationResult:
    """Outcome of one constraint check. Violations are values, never raised."""

    valid: bool
    reason: str | None = None
    constraint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, constraint: str, reason: str, **details: Any) -> "ValidationResult":
        return cls(valid=False, reason=reason, constraint=constraint, details=details)

    def __bool__(self) -> bool:
        return self.valid


EARLY_GRADES = {"K", "TK"}


def grade_key(grade: str | None) -> str:
    """Canonical grade label used for lookups ('k ' -> 'K')."""
    return (grade or "").strip().upper()


def teacher_key(teacher: str | None) -> str:
    return " ".join((teacher or "").split()).lower()


def group_slots_by_day(slots: List[TimeSlot]) -> dict[int, List[TimeSlot]]:
    grouped: dict[int, List[TimeSlot]] = {}
    for slot in slots:
        grouped.setdefault(slot.day_of_week, []).append(slot)
    return grouped
