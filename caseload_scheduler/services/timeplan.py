"""Clock-time helpers and the candidate start-time grid.

Times travel through the scheduler as zero-padded ``HH:MM`` strings; stored
values may carry seconds (``HH:MM:SS``) and are normalized on read.
"""

from __future__ import annotations

from datetime import time
from typing import List, Tuple


def parse_time_string(value: str) -> time:
    """Parse ``HH:MM`` or ``HH:MM:SS`` into a ``datetime.time``."""
    parts = value.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid time string: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    return time(hour, minute)


def time_to_minutes(value: str) -> int:
    """Minutes since midnight for a ``HH:MM[:SS]`` string."""
    t = parse_time_string(value)
    return t.hour * 60 + t.minute


def minutes_to_time(minutes: int) -> str:
    if minutes < 0 or minutes >= 24 * 60:
        raise ValueError(f"Minutes out of range for a clock time: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> str:
    """Drop seconds and zero-pad: ``'8:05:00'`` -> ``'08:05'``."""
    return minutes_to_time(time_to_minutes(value))


def add_minutes(value: str, minutes: int) -> str:
    return minutes_to_time(time_to_minutes(value) + minutes)


def calculate_duration_minutes(start: str, end: str) -> int:
    return time_to_minutes(end) - time_to_minutes(start)


def ranges_overlap(start1: str, end1: str, start2: str, end2: str) -> bool:
    """Half-open overlap test: touching ranges do not overlap."""
    return time_to_minutes(start1) < time_to_minutes(end2) and time_to_minutes(start2) < time_to_minutes(end1)


def minute_ranges_overlap(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def generate_time_grid(start: str = "08:00", end: str = "14:30", step_minutes: int = 5) -> List[str]:
    """
    Candidate start times from ``start`` to ``end`` inclusive.

    Args:
        start: First start time
        end: Last start time offered
        step_minutes: Grid granularity

    Returns:
        Ordered list of ``HH:MM`` strings
    """
    first = time_to_minutes(start)
    last = time_to_minutes(end)
    return [minutes_to_time(m) for m in range(first, last + 1, step_minutes)]
