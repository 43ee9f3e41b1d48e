from __future__ import annotations

from typing import Iterable

import pandas as pd

from .config import SchedulingConstraints
from .domain.models import ScheduleSession
from .services.timeplan import time_to_minutes

SESSION_COLUMNS = [
    "id",
    "student_id",
    "provider_id",
    "day_of_week",
    "start_time",
    "end_time",
    "delivered_by",
]


def sessions_to_frame(sessions: Iterable[ScheduleSession]) -> pd.DataFrame:
    """One row per scheduled session; pending placeholders are left out."""
    rows = [
        {col: getattr(s, col) for col in SESSION_COLUMNS}
        for s in sessions
        if s.day_of_week is not None and s.start_time and s.end_time
    ]
    df = pd.DataFrame(rows, columns=SESSION_COLUMNS)
    df["day_of_week"] = df["day_of_week"].astype(int)
    df["start_min"] = df["start_time"].map(time_to_minutes).astype(int)
    df["end_min"] = df["end_time"].map(time_to_minutes).astype(int)
    df["minutes"] = df["end_min"] - df["start_min"]
    return df.sort_values(["day_of_week", "start_min", "student_id"]).reset_index(drop=True)


def validate_sessions(
    sessions_df: pd.DataFrame,
    constraints: SchedulingConstraints,
    check_daily_limit: bool = True,
) -> None:
    if sessions_df.empty:
        return

    # Positive length
    if (sessions_df["minutes"] <= 0).any():
        raise ValueError("Sessions with non-positive length detected")

    # School day window
    day_start = time_to_minutes(constraints.school_start_time)
    day_end = time_to_minutes(constraints.school_end_time)
    outside = sessions_df[(sessions_df["start_min"] < day_start) | (sessions_df["end_min"] > day_end)]
    if not outside.empty:
        raise ValueError(
            f"Sessions outside the school day ({constraints.school_start_time}-{constraints.school_end_time}): "
            f"{len(outside)} sessions"
        )

    # Per student per day: overlap, consecutive time, breaks
    ordered = sessions_df.sort_values(["student_id", "day_of_week", "start_min"]).copy()
    grouped = ordered.groupby(["student_id", "day_of_week"], sort=False)
    ordered["prev_end"] = grouped["end_min"].shift()
    ordered["gap"] = ordered["start_min"] - ordered["prev_end"]

    overlaps = ordered[ordered["gap"] < 0]
    if not overlaps.empty:
        row = overlaps.iloc[0]
        raise ValueError(f"Overlapping sessions for student {row['student_id']} on day {row['day_of_week']}")

    breaks = ordered[(ordered["gap"] > 0) & (ordered["gap"] < constraints.min_break_minutes)]
    if not breaks.empty:
        row = breaks.iloc[0]
        raise ValueError(
            f"Break of {int(row['gap'])} minutes for student {row['student_id']} on day {row['day_of_week']} "
            f"(min {constraints.min_break_minutes})"
        )

    # A new block starts wherever the gap is not exactly 0
    ordered["block"] = (ordered["gap"] != 0).cumsum()
    blocks = ordered.groupby(["student_id", "day_of_week", "block"])["minutes"].sum()
    too_long = blocks[blocks > constraints.max_consecutive_minutes]
    if not too_long.empty:
        (student_id, day, _), minutes = next(iter(too_long.items()))
        raise ValueError(
            f"Student {student_id} has {minutes} consecutive minutes on day {day} "
            f"(max {constraints.max_consecutive_minutes})"
        )

    if check_daily_limit:
        per_day = sessions_df.groupby(["student_id", "day_of_week"]).size()
        over = per_day[per_day > constraints.max_sessions_per_day]
        if not over.empty:
            (student_id, day), count = next(iter(over.items()))
            raise ValueError(
                f"Student {student_id} has {count} sessions on day {day} (max {constraints.max_sessions_per_day})"
            )

    # Concurrent sessions per provider: sweep start/end events per day
    for (provider_id, day), group in sessions_df.groupby(["provider_id", "day_of_week"], dropna=False):
        events = pd.concat(
            [
                pd.DataFrame({"t": group["start_min"], "delta": 1}),
                pd.DataFrame({"t": group["end_min"], "delta": -1}),
            ]
        ).sort_values(["t", "delta"])
        peak = int(events["delta"].cumsum().max())
        if peak > constraints.max_concurrent_sessions:
            raise ValueError(
                f"Provider {provider_id} has {peak} concurrent sessions on day {day} "
                f"(max {constraints.max_concurrent_sessions})"
            )


def summarize_sessions(sessions_df: pd.DataFrame) -> str:
    if sessions_df.empty:
        return "No sessions."
    ts = sessions_df.copy()
    ts["hour"] = ts["start_min"] // 60

    per_day = ts.groupby("day_of_week").agg(sessions=("id", "count"), minutes=("minutes", "sum"))
    per_student = ts.groupby("student_id").agg(sessions=("id", "count"), minutes=("minutes", "sum"))
    per_hour = ts.groupby(["day_of_week", "hour"]).size().unstack(fill_value=0)

    lines = ["Sessions per day:"]
    lines.append(per_day.to_string())
    lines.append("")
    lines.append("Sessions starting per hour:")
    lines.append(per_hour.to_string())
    lines.append("")
    lines.append("Weekly load per student:")
    lines.append(per_student.sort_values("minutes", ascending=False).to_string())
    return "\n".join(lines)
