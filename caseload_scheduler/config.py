"""Configuration loading and validation (YAML or JSON)."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List

import yaml


ALL_WEEKDAYS: List[int] = [1, 2, 3, 4, 5]

# Policy applied when a provider has no explicit work-day rows for a school
WORK_DAYS_ALL_WEEKDAYS = "all_weekdays"
WORK_DAYS_NONE = "none"

STRATEGY_AUTO = "auto"
STRATEGY_EVEN = "even"
STRATEGY_GRADE_GROUPED = "grade-grouped"
STRATEGY_TWO_PASS = "two-pass"
STRATEGY_SPREAD = "spread"
STRATEGY_COMPACT = "compact"

STRATEGIES = {
    STRATEGY_AUTO,
    STRATEGY_EVEN,
    STRATEGY_GRADE_GROUPED,
    STRATEGY_TWO_PASS,
    STRATEGY_SPREAD,
    STRATEGY_COMPACT,
}


@dataclass
class SchedulingConstraints:
    """Hard scheduling rules applied to every placement."""

    max_concurrent_sessions: int = 6
    max_consecutive_minutes: int = 60
    min_break_minutes: int = 30
    school_start_time: str = "08:00"
    school_end_time: str = "15:00"
    max_sessions_per_day: int = 2
    require_grade_grouping: bool = True


@dataclass
class GridConfig:
    """Candidate start-time grid. ``end_time`` is the last start offered."""

    start_time: str = "08:00"
    end_time: str = "14:30"
    granularity_minutes: int = 5


@dataclass
class DistributionConfig:
    strategy: str = STRATEGY_AUTO
    first_pass_limit: int = 3
    second_pass_limit: int | None = None  # None -> constraints.max_concurrent_sessions
    grade_grouping_threshold: int = 5
    two_pass_min_sessions: int = 3
    two_pass_min_weekly_minutes: int = 120


@dataclass
class ScoreWeights:
    grade_grouping: float = 0.3
    even_distribution: float = 0.3
    time_preference: float = 0.2
    capacity_utilization: float = 0.2


@dataclass
class OptimizationConfig:
    enabled: bool = True
    combination_budget: int = 100
    pool_factor: int = 2
    weights: ScoreWeights = field(default_factory=ScoreWeights)


@dataclass
class CacheConfig:
    max_cache_age_minutes: int = 15
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff: float = 2.0
    missing_work_days_policy: str = WORK_DAYS_ALL_WEEKDAYS


@dataclass
class SchedulerConfig:
    constraints: SchedulingConstraints = field(default_factory=SchedulingConstraints)
    grid: GridConfig = field(default_factory=GridConfig)
    distribution: DistributionConfig = field(default_factory=DistributionConfig)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    log_level: str = "INFO"

    @property
    def second_pass_limit(self) -> int:
        """Capacity ceiling for the relaxed pass of two-pass distribution."""
        limit = self.distribution.second_pass_limit
        return limit if limit is not None else self.constraints.max_concurrent_sessions

    def validate(self) -> None:
        """
        Reject configurations that can never produce a placement.

        Raises:
            ValueError: On the first impossible or inconsistent value found
        """
        # Imported here to keep config importable without the services package
        from caseload_scheduler.services.timeplan import time_to_minutes

        c = self.constraints
        if c.max_concurrent_sessions < 1:
            raise ValueError("constraints.max_concurrent_sessions must be >= 1")
        if c.max_consecutive_minutes < 1:
            raise ValueError("constraints.max_consecutive_minutes must be >= 1")
        if c.min_break_minutes < 0:
            raise ValueError("constraints.min_break_minutes must be >= 0")
        if c.max_sessions_per_day < 1:
            raise ValueError("constraints.max_sessions_per_day must be >= 1")

        day_start = time_to_minutes(c.school_start_time)
        day_end = time_to_minutes(c.school_end_time)
        if day_end <= day_start:
            raise ValueError(
                f"School day is empty: {c.school_start_time} - {c.school_end_time}"
            )
        if c.min_break_minutes >= day_end - day_start:
            raise ValueError(
                f"min_break_minutes ({c.min_break_minutes}) exceeds the school day"
            )

        g = self.grid
        if g.granularity_minutes < 1:
            raise ValueError("grid.granularity_minutes must be >= 1")
        if time_to_minutes(g.end_time) < time_to_minutes(g.start_time):
            raise ValueError(f"Grid ends before it starts: {g.start_time} - {g.end_time}")

        d = self.distribution
        if d.strategy not in STRATEGIES:
            raise ValueError(
                f"Unknown distribution strategy '{d.strategy}' (expected one of {sorted(STRATEGIES)})"
            )
        if d.first_pass_limit < 1:
            raise ValueError("distribution.first_pass_limit must be >= 1")
        if d.first_pass_limit > self.second_pass_limit:
            raise ValueError(
                f"first_pass_limit ({d.first_pass_limit}) exceeds second pass limit ({self.second_pass_limit})"
            )

        o = self.optimization
        if o.combination_budget < 1:
            raise ValueError("optimization.combination_budget must be >= 1")
        if o.pool_factor < 1:
            raise ValueError("optimization.pool_factor must be >= 1")

        if self.cache.missing_work_days_policy not in (WORK_DAYS_ALL_WEEKDAYS, WORK_DAYS_NONE):
            raise ValueError(
                f"Unknown missing_work_days_policy '{self.cache.missing_work_days_policy}'"
            )
        if self.cache.max_retries < 1:
            raise ValueError("cache.max_retries must be >= 1")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _build(cls, data: Dict[str, Any], path: str):
    """Instantiate a (possibly nested) config dataclass from a plain mapping."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{path}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ValueError(f"Unknown config keys in '{path}': {sorted(unknown)}")

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        default = known[name].default_factory() if callable(known[name].default_factory) else None
        if default is not None and is_dataclass(default):
            kwargs[name] = _build(type(default), value, f"{path}.{name}" if path else name)
        else:
            kwargs[name] = value
    return cls(**kwargs)


def config_from_dict(data: Dict[str, Any] | None) -> SchedulerConfig:
    """Build and validate a SchedulerConfig from a mapping."""
    cfg = _build(SchedulerConfig, data or {}, "")
    cfg.validate()
    return cfg


def load_config(path: str | Path) -> SchedulerConfig:
    """
    Load configuration from a YAML or JSON file.

    Args:
        path: Path to a ``.yaml``/``.yml`` or ``.json`` file

    Returns:
        Validated SchedulerConfig

    Raises:
        ValueError: If the file contains unknown keys or impossible values
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text)
    return config_from_dict(raw)
