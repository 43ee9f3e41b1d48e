"""Tests for configuration loading and validation."""

import json
from pathlib import Path

import pytest

from caseload_scheduler.config import (
    WORK_DAYS_NONE,
    SchedulerConfig,
    config_from_dict,
    load_config,
)

REPO_ROOT = Path(__file__).resolve().parent.parent


def test_defaults():
    """Test the decided defaults."""
    cfg = SchedulerConfig()
    assert cfg.constraints.max_concurrent_sessions == 6
    assert cfg.constraints.max_consecutive_minutes == 60
    assert cfg.constraints.min_break_minutes == 30
    assert cfg.constraints.max_sessions_per_day == 2
    assert cfg.distribution.first_pass_limit == 3
    assert cfg.second_pass_limit == 6
    assert cfg.optimization.combination_budget == 100
    assert cfg.cache.max_cache_age_minutes == 15
    cfg.validate()


def test_second_pass_limit_override():
    cfg = config_from_dict({"distribution": {"second_pass_limit": 4}})
    assert cfg.second_pass_limit == 4


def test_load_sample_yaml():
    """The sample config at the repo root loads and validates."""
    cfg = load_config(REPO_ROOT / "scheduling_config.yaml")
    assert cfg.grid.end_time == "14:30"
    assert cfg.optimization.weights.grade_grouping == pytest.approx(0.3)


def test_load_yaml_partial(tmp_path):
    """Omitted keys keep defaults; nested sections merge."""
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "constraints:\n"
        "  max_concurrent_sessions: 8\n"
        "optimization:\n"
        "  weights:\n"
        "    time_preference: 0.5\n"
        "cache:\n"
        "  missing_work_days_policy: none\n"
    )
    cfg = load_config(path)
    assert cfg.constraints.max_concurrent_sessions == 8
    assert cfg.constraints.min_break_minutes == 30
    assert cfg.optimization.weights.time_preference == 0.5
    assert cfg.optimization.weights.grade_grouping == 0.3
    assert cfg.cache.missing_work_days_policy == WORK_DAYS_NONE


def test_load_json(tmp_path):
    path = tmp_path / "cfg.json"
    path.write_text(json.dumps({"distribution": {"strategy": "even"}, "log_level": "DEBUG"}))
    cfg = load_config(path)
    assert cfg.distribution.strategy == "even"
    assert cfg.log_level == "DEBUG"


def test_unknown_keys_rejected():
    with pytest.raises(ValueError, match="Unknown config keys"):
        config_from_dict({"constraints": {"max_concurrency": 3}})


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError, match="strategy"):
        config_from_dict({"distribution": {"strategy": "random"}})


def test_break_longer_than_school_day_rejected():
    """Impossible constraints fail at load time."""
    with pytest.raises(ValueError, match="min_break_minutes"):
        config_from_dict({"constraints": {"min_break_minutes": 500}})


def test_first_pass_above_second_pass_rejected():
    with pytest.raises(ValueError, match="first_pass_limit"):
        config_from_dict({"distribution": {"first_pass_limit": 7}})


def test_to_dict_round_trip():
    cfg = SchedulerConfig()
    again = config_from_dict(cfg.to_dict())
    assert again == cfg
