"""Scheduling engine and batch coordinator."""

from .context import SchedulingContext, apply_placement, build_context, generate_candidate_slots
from .coordinator import SchedulingCoordinator, schedule_provider_school
from .engine import SchedulingEngine
from .results import BatchResult, ConflictResolution, RunState, SchedulingResult, StudentOutcome

__all__ = [
    "SchedulingContext",
    "build_context",
    "apply_placement",
    "generate_candidate_slots",
    "SchedulingEngine",
    "SchedulingCoordinator",
    "schedule_provider_school",
    "SchedulingResult",
    "BatchResult",
    "ConflictResolution",
    "StudentOutcome",
    "RunState",
]
