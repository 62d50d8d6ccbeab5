from __future__ import annotations

import pytest

from pipeline.config import load_pipeline_config

_ENV_KEYS = (
    "PIPELINE_WORKER_ID",
    "JOB_TASK_LOCK_TTL_SECS",
    "JOB_TASK_TICK_LIMIT",
    "JOB_TASK_TIME_BUDGET_SECS",
    "JOB_TASK_SAFETY_MARGIN_SECS",
    "JOB_TASK_MAX_ATTEMPTS",
    "JOB_TASK_BACKOFF_BASE_SECS",
    "JOB_TASK_BACKOFF_MAX_SECS",
    "REPLAY_WINDOW_WEEKS",
    "REPLAY_MIN_DAYS",
    "REPLAY_AUTO_ACTIVATE",
    "OUTCOME_HORIZON_DAYS",
    "DISPATCH_BACKFILL_WEEKS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PIPELINE_WORKER_ID", "worker-test")


def test_defaults() -> None:
    cfg = load_pipeline_config()
    assert cfg.worker_id == "worker-test"
    assert cfg.lock_ttl_seconds == 600
    assert cfg.tick_limit == 10
    assert cfg.tick_time_budget_seconds == 50.0
    assert cfg.tick_safety_margin_seconds == 5.0
    assert cfg.max_attempts == 3
    assert (cfg.backoff_base_seconds, cfg.backoff_max_seconds) == (60, 3600)
    assert (cfg.replay_window_weeks, cfg.replay_min_days) == (8, 28)
    assert cfg.replay_auto_activate is True
    assert cfg.outcome_horizon_days == 7
    assert cfg.dispatch_backfill_weeks == 4


def test_values_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("JOB_TASK_LOCK_TTL_SECS", "5")
    monkeypatch.setenv("JOB_TASK_TICK_LIMIT", "500")
    monkeypatch.setenv("REPLAY_WINDOW_WEEKS", "20")
    monkeypatch.setenv("DISPATCH_BACKFILL_WEEKS", "-3")
    monkeypatch.setenv("REPLAY_MIN_DAYS", "1")

    cfg = load_pipeline_config()

    assert cfg.lock_ttl_seconds == 60
    assert cfg.tick_limit == 50
    assert cfg.replay_window_weeks == 12
    assert cfg.dispatch_backfill_weeks == 0
    assert cfg.replay_min_days == 2


@pytest.mark.parametrize("raw", ["off", "No", "0", "false"])
def test_auto_activate_can_be_disabled(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    monkeypatch.setenv("REPLAY_AUTO_ACTIVATE", raw)
    assert load_pipeline_config().replay_auto_activate is False


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("JOB_TASK_TICK_LIMIT", "ten", "Invalid integer"),
        ("JOB_TASK_TIME_BUDGET_SECS", "soon", "Invalid float"),
        ("REPLAY_AUTO_ACTIVATE", "maybe", "Invalid boolean"),
        ("JOB_TASK_BACKOFF_BASE_SECS", "0", "must be positive"),
        ("JOB_TASK_BACKOFF_MAX_SECS", "30", "BACKOFF_MAX"),
        ("JOB_TASK_MAX_ATTEMPTS", "0", "MAX_ATTEMPTS"),
        ("JOB_TASK_TIME_BUDGET_SECS", "0", "time budget"),
        ("OUTCOME_HORIZON_DAYS", "0", "OUTCOME_HORIZON_DAYS"),
        ("PIPELINE_WORKER_ID", "  ", "PIPELINE_WORKER_ID"),
    ],
)
def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, key: str, value: str, message: str) -> None:
    monkeypatch.setenv(key, value)
    with pytest.raises(RuntimeError, match=message):
        load_pipeline_config()
