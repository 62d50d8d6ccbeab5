"""Short, stateless worker tick: reap, claim, then run claimed tasks in order.

Nothing survives between ticks except what is in the database. Each task's
side effects and its completion are committed together when the database
adapter exposes ``commit``/``rollback``; a lease that was lost before
completion rolls the task's effects back and is only logged.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any, Callable, Mapping, Optional

from backend.db.enums import BUDGET_SENSITIVE_JOB_TYPES, JobType, TaskStatus
from pipeline.common import PipelineClock, PipelineDatabase, canonical_json, stable_hash
from pipeline.config import PipelineConfig
from pipeline.decision_engine import run_daily_decision
from pipeline.entitlements import DEFAULT_TRIAL_POLICY, TrialPolicy, task_budget_exhausted
from pipeline.errors import LockExpired, PermanentError
from pipeline.metrics import MetricsFactsProvider
from pipeline.outcome_engine import run_outcome_backfill
from pipeline.replay_gate import run_replay_gate
from pipeline.subscriptions import (
    USAGE_TASK,
    ensure_trial_started,
    load_subscription_context,
    record_usage,
    usage_today,
)
from pipeline.task_queue import BackoffPolicy, QueueTask, TaskOutcome, TaskQueueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickSummary:
    """Counts reported by one tick."""

    reaped: int
    claimed: int
    succeeded: int
    retrying: int
    dead: int
    released: int
    degraded: int
    lease_lost: int


def build_task_queue(db: PipelineDatabase, config: PipelineConfig, *, clock: PipelineClock | None = None) -> TaskQueueStore:
    return TaskQueueStore(
        db,
        worker_id=config.worker_id,
        clock=clock,
        backoff=BackoffPolicy(base_seconds=config.backoff_base_seconds, max_seconds=config.backoff_max_seconds),
        max_attempts=config.max_attempts,
    )


class WorkerTick:
    """Executes one bounded batch of queued tasks."""

    def __init__(
        self,
        db: PipelineDatabase,
        provider: MetricsFactsProvider,
        *,
        config: PipelineConfig,
        queue: TaskQueueStore | None = None,
        clock: PipelineClock | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        trial_policy: TrialPolicy = DEFAULT_TRIAL_POLICY,
    ) -> None:
        self._db = db
        self._provider = provider
        self._config = config
        self._clock = clock or PipelineClock()
        self._queue = queue or build_task_queue(db, config, clock=self._clock)
        self._monotonic = monotonic
        self._trial_policy = trial_policy

    def _commit(self) -> None:
        commit = getattr(self._db, "commit", None)
        if commit is not None:
            commit()

    def _rollback(self) -> None:
        rollback = getattr(self._db, "rollback", None)
        if rollback is not None:
            rollback()

    def _log_event(self, event_type: str, status: str, details: Mapping[str, Any]) -> None:
        ts = self._clock.now_utc()
        payload = canonical_json(dict(details))
        self._db.execute(
            """
            INSERT INTO pipeline_event_log (
                event_ts_utc, event_type, status, details, row_hash
            ) VALUES (
                :event_ts_utc, :event_type, :status, CAST(:details AS JSONB), :row_hash
            )
            """,
            {
                "event_ts_utc": ts,
                "event_type": event_type,
                "status": status,
                "details": payload,
                "row_hash": stable_hash(("pipeline_event_log", event_type, status, ts, payload)),
            },
        )

    def _degraded_reason(self, task: QueueTask, now: datetime) -> Optional[str]:
        context = load_subscription_context(self._db, task.tenant_id)
        if context is None:
            context = ensure_trial_started(self._db, task.tenant_id, now)
            logger.info("Started trial for tenant %s on first metered task", task.tenant_id)
        window = context.resolve(now, self._trial_policy)
        return task_budget_exhausted(window, usage_today(self._db, task.tenant_id, now.date()))

    def _execute(self, task: QueueTask) -> Optional[str]:
        """Run the task body; returns the degrade reason when it ran degraded."""
        now = self._clock.now_utc()
        degraded_reason = None
        if task.job_type in BUDGET_SENSITIVE_JOB_TYPES:
            degraded_reason = self._degraded_reason(task, now)

        if task.job_type == JobType.DAILY_CHANNEL.value:
            run_daily_decision(
                self._db,
                self._provider,
                tenant_id=task.tenant_id,
                channel_id=task.channel_id,
                as_of_date=task.target_date,
                degraded_reason=degraded_reason,
                clock=self._clock,
            )
        elif task.job_type == JobType.WEEKLY_CHANNEL.value:
            if degraded_reason is None:
                run_replay_gate(
                    self._db,
                    self._provider,
                    tenant_id=task.tenant_id,
                    channel_id=task.channel_id,
                    target_date=task.target_date,
                    window_weeks=self._config.replay_window_weeks,
                    min_days=self._config.replay_min_days,
                    auto_activate=self._config.replay_auto_activate,
                    clock=self._clock,
                )
            else:
                logger.info("Replay gate skipped for %s/%s: %s", task.tenant_id, task.channel_id, degraded_reason)
        elif task.job_type == JobType.BACKFILL_OUTCOME.value:
            run_outcome_backfill(
                self._db,
                self._provider,
                tenant_id=task.tenant_id,
                channel_id=task.channel_id,
                outcome_date=task.target_date,
                horizon_days=self._config.outcome_horizon_days,
                clock=self._clock,
            )
        else:
            raise PermanentError(f"No handler for job type {task.job_type}")

        if task.job_type in BUDGET_SENSITIVE_JOB_TYPES and degraded_reason is None:
            record_usage(
                self._db,
                tenant_id=task.tenant_id,
                event_type=USAGE_TASK,
                idempotency_key=task.dedupe_key,
                occurred_at=now,
            )
        return degraded_reason

    def _process(self, task: QueueTask, counts: Counter) -> None:
        details: dict[str, Any] = {
            "task_id": task.task_id,
            "tenant_id": task.tenant_id,
            "channel_id": task.channel_id,
            "job_type": task.job_type,
            "target_date": task.target_date.isoformat(),
        }
        error: Optional[str] = None
        try:
            degraded_reason = self._execute(task)
        except PermanentError as exc:
            self._rollback()
            outcome = TaskOutcome.PERMANENT_FAILURE
            error = f"{exc.code}: {exc}"
            logger.error("Task %s failed permanently: %s", task.task_id, error)
        except Exception as exc:
            self._rollback()
            outcome = TaskOutcome.RETRYABLE_FAILURE
            error = f"{getattr(exc, 'code', type(exc).__name__)}: {exc}"
            logger.warning("Task %s failed (retryable): %s", task.task_id, error, exc_info=True)
        else:
            outcome = TaskOutcome.SUCCEEDED
            if degraded_reason is not None:
                counts["degraded"] += 1
                details["degraded_reason"] = degraded_reason
                self._log_event("TASK_DEGRADED", degraded_reason.upper(), details)

        try:
            result = self._queue.complete(task.task_id, outcome, error=error)
        except LockExpired as exc:
            self._rollback()
            counts["lease_lost"] += 1
            logger.warning("Task %s lease lost before completion: %s", task.task_id, exc)
            self._log_event("TASK_LEASE_LOST", "DISCARDED", details)
            self._commit()
            return

        details["attempt"] = result.attempt
        if error is not None:
            details["error"] = error
        self._log_event("TASK_COMPLETED", result.status.upper(), details)
        self._commit()
        if result.status == TaskStatus.SUCCEEDED.value:
            counts["succeeded"] += 1
        elif result.status == TaskStatus.RETRYING.value:
            counts["retrying"] += 1
        else:
            counts["dead"] += 1

    def tick(self, batch_size: int | None = None, time_budget_seconds: float | None = None) -> TickSummary:
        """Run one tick; unstarted tasks go back to pending once the budget is spent."""
        started = self._monotonic()
        batch = max(1, min(50, batch_size if batch_size is not None else self._config.tick_limit))
        budget = time_budget_seconds if time_budget_seconds is not None else self._config.tick_time_budget_seconds
        cutoff = budget - self._config.tick_safety_margin_seconds

        reaped = self._queue.reap_expired_leases()
        tasks = self._queue.claim(batch, self._config.lock_ttl_seconds)
        self._commit()

        counts: Counter = Counter()
        released = 0
        for index, task in enumerate(tasks):
            if self._monotonic() - started >= cutoff:
                remaining = [pending.task_id for pending in tasks[index:]]
                released = self._queue.release(remaining)
                self._log_event("TICK_BUDGET", "RELEASED", {"task_ids": remaining, "released": released})
                self._commit()
                logger.info("Tick budget spent; released %d of %d remaining task(s)", released, len(remaining))
                break
            self._process(task, counts)

        summary = TickSummary(
            reaped=reaped,
            claimed=len(tasks),
            succeeded=counts["succeeded"],
            retrying=counts["retrying"],
            dead=counts["dead"],
            released=released,
            degraded=counts["degraded"],
            lease_lost=counts["lease_lost"],
        )
        logger.info("Tick finished: %s", summary)
        return summary
