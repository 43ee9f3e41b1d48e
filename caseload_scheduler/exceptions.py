"""Errors that abort a scheduling run or its persistence step.

Constraint violations are never raised; they travel back as ValidationResult
values. Only run-wide failures use these exceptions.
"""

from __future__ import annotations


class SchedulingError(RuntimeError):
    """Base class for run-level scheduling failures."""


class InitializationError(SchedulingError):
    """The scheduling context could not be built; the run is aborted."""


class NotInitializedError(SchedulingError):
    """An operation needs a coordinator that has been initialized."""


class PersistenceError(SchedulingError):
    """Writing placements to the store failed after all retries."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts
