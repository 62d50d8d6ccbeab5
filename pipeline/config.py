"""Environment-backed configuration for the directive pipeline runtime."""

from __future__ import annotations

from dataclasses import dataclass
import os
import socket


@dataclass(frozen=True)
class PipelineConfig:
    """Canonical configuration surface for dispatch, tick and replay runtime."""

    worker_id: str
    lock_ttl_seconds: int
    tick_limit: int
    tick_time_budget_seconds: float
    tick_safety_margin_seconds: float
    max_attempts: int
    backoff_base_seconds: int
    backoff_max_seconds: int
    replay_window_weeks: int
    replay_min_days: int
    replay_auto_activate: bool
    outcome_horizon_days: int
    dispatch_backfill_weeks: int


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    return value


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def load_pipeline_config() -> PipelineConfig:
    """Load and validate pipeline configuration from environment."""
    worker_id = _read_env("PIPELINE_WORKER_ID", f"worker-{socket.gethostname()}")

    backoff_base = _read_int("JOB_TASK_BACKOFF_BASE_SECS", 60)
    backoff_max = _read_int("JOB_TASK_BACKOFF_MAX_SECS", 3600)
    if backoff_base <= 0:
        raise RuntimeError("JOB_TASK_BACKOFF_BASE_SECS must be positive")
    if backoff_max < backoff_base:
        raise RuntimeError("JOB_TASK_BACKOFF_MAX_SECS must be >= JOB_TASK_BACKOFF_BASE_SECS")

    max_attempts = _read_int("JOB_TASK_MAX_ATTEMPTS", 3)
    if max_attempts < 1:
        raise RuntimeError("JOB_TASK_MAX_ATTEMPTS must be >= 1")

    time_budget = _read_float("JOB_TASK_TIME_BUDGET_SECS", 50.0)
    safety_margin = _read_float("JOB_TASK_SAFETY_MARGIN_SECS", 5.0)
    if time_budget <= 0 or safety_margin < 0:
        raise RuntimeError("Tick time budget must be positive and safety margin non-negative")

    horizon = _read_int("OUTCOME_HORIZON_DAYS", 7)
    if horizon < 1:
        raise RuntimeError("OUTCOME_HORIZON_DAYS must be >= 1")

    return PipelineConfig(
        worker_id=worker_id,
        lock_ttl_seconds=_clamp(_read_int("JOB_TASK_LOCK_TTL_SECS", 600), 60, 3600),
        tick_limit=_clamp(_read_int("JOB_TASK_TICK_LIMIT", 10), 1, 50),
        tick_time_budget_seconds=time_budget,
        tick_safety_margin_seconds=safety_margin,
        max_attempts=max_attempts,
        backoff_base_seconds=backoff_base,
        backoff_max_seconds=backoff_max,
        replay_window_weeks=_clamp(_read_int("REPLAY_WINDOW_WEEKS", 8), 8, 12),
        replay_min_days=max(2, _read_int("REPLAY_MIN_DAYS", 28)),
        replay_auto_activate=_read_bool("REPLAY_AUTO_ACTIVATE", True),
        outcome_horizon_days=horizon,
        dispatch_backfill_weeks=_clamp(_read_int("DISPATCH_BACKFILL_WEEKS", 4), 0, 52),
    )
