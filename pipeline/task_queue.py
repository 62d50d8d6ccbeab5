"""Durable SQL-backed task queue with dedupe, leases and bounded retries.

All writes to ``job_task`` go through :class:`TaskQueueStore`. Every state
transition is a single guarded statement (``WHERE status = ...``) so that two
workers can never both own a row: claims use ``FOR UPDATE SKIP LOCKED`` inside
one ``UPDATE ... RETURNING`` and completions only match rows still leased to
the calling worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import enum
import logging
import random
from typing import Any, Mapping, Optional, Sequence

from backend.db.enums import JobType, TaskStatus
from pipeline.common import PipelineClock, PipelineDatabase, as_utc, parse_date
from pipeline.errors import LockExpired, RequestValidationError

logger = logging.getLogger(__name__)

_TASK_COLUMNS = (
    "task_id, tenant_id, job_type, channel_id, target_date, dedupe_key, status, "
    "attempt, max_attempts, not_before, locked_by, lease_expires_at, last_error"
)


class TaskOutcome(str, enum.Enum):
    """Executor-reported result of one task execution."""

    SUCCEEDED = "succeeded"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter on the upper half of each step."""

    base_seconds: int = 60
    max_seconds: int = 3600

    def ceiling_seconds(self, attempt: int) -> float:
        """Un-jittered delay for the given (1-based) attempt number."""
        exponent = max(0, attempt - 1)
        # Cap the exponent before shifting so huge attempt counts stay cheap.
        if exponent > 32:
            return float(self.max_seconds)
        return float(min(self.max_seconds, self.base_seconds * (2**exponent)))

    def delay_seconds(self, attempt: int, rng: random.Random | None = None) -> float:
        """Jittered delay in ``[ceiling / 2, ceiling]``."""
        ceiling = self.ceiling_seconds(attempt)
        source = rng if rng is not None else random
        return ceiling / 2.0 + source.uniform(0.0, ceiling / 2.0)


@dataclass(frozen=True)
class QueueTask:
    """Claimed or inspected queue row."""

    task_id: int
    tenant_id: str
    job_type: str
    channel_id: str
    target_date: date
    dedupe_key: str
    status: str
    attempt: int
    max_attempts: int
    not_before: Optional[datetime]
    locked_by: Optional[str]
    lease_expires_at: Optional[datetime]
    last_error: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueueTask":
        not_before = row.get("not_before")
        lease = row.get("lease_expires_at")
        return cls(
            task_id=int(row["task_id"]),
            tenant_id=str(row["tenant_id"]),
            job_type=str(getattr(row["job_type"], "value", row["job_type"])),
            channel_id=str(row["channel_id"]),
            target_date=parse_date(row["target_date"]),
            dedupe_key=str(row["dedupe_key"]),
            status=str(getattr(row["status"], "value", row["status"])),
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            not_before=as_utc(not_before) if isinstance(not_before, datetime) else None,
            locked_by=row.get("locked_by"),
            lease_expires_at=as_utc(lease) if isinstance(lease, datetime) else None,
            last_error=row.get("last_error"),
        )


@dataclass(frozen=True)
class CompletionResult:
    """State a task landed in after ``complete``."""

    task_id: int
    status: str
    attempt: int
    not_before: Optional[datetime]


def build_dedupe_key(tenant_id: str, job_type: str, channel_id: str, target_date: date) -> str:
    """Dedupe key ``{tenant_id}:{job_type}:{channel_id}:{target_date}``."""
    return f"{tenant_id}:{job_type}:{channel_id}:{target_date.isoformat()}"


def validate_job_type(job_type: str) -> str:
    """Return the canonical job type value or raise on unknown input."""
    normalized = str(getattr(job_type, "value", job_type)).strip().lower().replace("-", "_")
    try:
        return JobType(normalized).value
    except ValueError as exc:
        raise RequestValidationError(f"Unknown job type: {job_type}") from exc


class TaskQueueStore:
    """Narrow operation contract over the ``job_task`` table."""

    def __init__(
        self,
        db: PipelineDatabase,
        *,
        worker_id: str,
        clock: PipelineClock | None = None,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        if not worker_id.strip():
            raise ValueError("worker_id must be non-empty")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._db = db
        self._worker_id = worker_id
        self._clock = clock or PipelineClock()
        self._backoff = backoff or BackoffPolicy()
        self._max_attempts = max_attempts
        self._rng = rng

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def enqueue(
        self,
        job_type: str,
        tenant_id: str,
        channel_id: str,
        target_date: date,
        *,
        force: bool = False,
    ) -> bool:
        """Insert a pending task for the dedupe key, or re-arm an existing dead one.

        Rows that are not dead are left alone, so repeated dispatch never duplicates work.
        ``force`` also re-arms succeeded and waiting rows; a running row is
        never touched. Returns True when a row was inserted or re-armed.
        """
        job_type_value = validate_job_type(job_type)
        if not tenant_id.strip() or not channel_id.strip():
            raise RequestValidationError("tenant_id and channel_id must be non-empty")
        now = self._clock.now_utc()
        dedupe_key = build_dedupe_key(tenant_id, job_type_value, channel_id, target_date)
        row = self._db.fetch_one(
            """
            INSERT INTO job_task (
                tenant_id, job_type, channel_id, target_date, dedupe_key,
                status, attempt, max_attempts, not_before, created_at, updated_at
            ) VALUES (
                :tenant_id, CAST(:job_type AS job_type_enum), :channel_id, :target_date, :dedupe_key,
                CAST('pending' AS task_status_enum), 0, :max_attempts, :now, :now, :now
            )
            ON CONFLICT (dedupe_key) DO UPDATE
            SET status = CAST('pending' AS task_status_enum),
                attempt = 0,
                max_attempts = GREATEST(job_task.max_attempts, EXCLUDED.max_attempts),
                not_before = :now,
                locked_by = NULL,
                lease_expires_at = NULL,
                last_error = NULL,
                updated_at = :now
            WHERE job_task.status = 'dead'
               OR (CAST(:force AS BOOLEAN) AND job_task.status <> 'running')
            RETURNING task_id
            """,
            {
                "tenant_id": tenant_id,
                "job_type": job_type_value,
                "channel_id": channel_id,
                "target_date": target_date,
                "dedupe_key": dedupe_key,
                "max_attempts": self._max_attempts,
                "force": force,
                "now": now,
            },
        )
        armed = row is not None
        if armed:
            logger.info("Enqueued task %s (dedupe_key=%s force=%s)", row["task_id"], dedupe_key, force)
        else:
            logger.debug("Enqueue skipped for live dedupe_key=%s", dedupe_key)
        return armed

    def claim(self, batch_size: int, lease_ttl_seconds: int) -> list[QueueTask]:
        """Atomically lease up to ``batch_size`` runnable tasks to this worker."""
        if batch_size <= 0:
            return []
        if lease_ttl_seconds <= 0:
            raise ValueError("lease_ttl_seconds must be positive")
        now = self._clock.now_utc()
        rows = self._db.fetch_all(
            f"""
            UPDATE job_task AS t
            SET status = CAST('running' AS task_status_enum),
                locked_by = :worker_id,
                lease_expires_at = :lease_expires_at,
                updated_at = :now
            WHERE t.task_id IN (
                SELECT c.task_id
                FROM job_task AS c
                WHERE c.status IN ('pending', 'retrying')
                  AND c.not_before <= :now
                ORDER BY c.not_before ASC, c.task_id ASC
                LIMIT :batch_size
                FOR UPDATE SKIP LOCKED
            )
              AND t.status IN ('pending', 'retrying')
            RETURNING {_TASK_COLUMNS}
            """,
            {
                "worker_id": self._worker_id,
                "lease_expires_at": now + timedelta(seconds=lease_ttl_seconds),
                "now": now,
                "batch_size": batch_size,
            },
        )
        tasks = sorted((QueueTask.from_row(row) for row in rows), key=lambda task: task.task_id)
        if tasks:
            logger.info(
                "Worker %s claimed %d task(s): %s",
                self._worker_id,
                len(tasks),
                [task.task_id for task in tasks],
            )
        return tasks

    def complete(self, task_id: int, outcome: TaskOutcome | str, *, error: str | None = None) -> CompletionResult:
        """Record the executor's outcome for a task this worker still holds.

        Raises ``LockExpired`` when the lease was reaped or re-claimed by
        another worker in the meantime.
        """
        outcome_value = TaskOutcome(outcome)
        now = self._clock.now_utc()
        current = self._db.fetch_one(
            """
            SELECT attempt, max_attempts
            FROM job_task
            WHERE task_id = :task_id
              AND status = 'running'
              AND locked_by = :worker_id
            FOR UPDATE
            """,
            {"task_id": task_id, "worker_id": self._worker_id},
        )
        if current is None:
            raise LockExpired(f"Task {task_id} is no longer leased to {self._worker_id}")

        attempt = int(current["attempt"])
        max_attempts = int(current["max_attempts"])
        not_before: datetime | None = None
        if outcome_value is TaskOutcome.SUCCEEDED:
            status = TaskStatus.SUCCEEDED.value
        elif outcome_value is TaskOutcome.PERMANENT_FAILURE:
            status = TaskStatus.DEAD.value
        else:
            attempt += 1
            if attempt >= max_attempts:
                status = TaskStatus.DEAD.value
            else:
                status = TaskStatus.RETRYING.value
                not_before = now + timedelta(seconds=self._backoff.delay_seconds(attempt, self._rng))

        row = self._db.fetch_one(
            """
            UPDATE job_task
            SET status = CAST(:status AS task_status_enum),
                attempt = :attempt,
                not_before = COALESCE(:not_before, not_before),
                locked_by = NULL,
                lease_expires_at = NULL,
                last_error = :last_error,
                updated_at = :now
            WHERE task_id = :task_id
              AND status = 'running'
              AND locked_by = :worker_id
            RETURNING task_id, status, attempt
            """,
            {
                "status": status,
                "attempt": attempt,
                "not_before": not_before,
                "last_error": None if outcome_value is TaskOutcome.SUCCEEDED else (error or outcome_value.value)[:2000],
                "now": now,
                "task_id": task_id,
                "worker_id": self._worker_id,
            },
        )
        if row is None:
            raise LockExpired(f"Task {task_id} lease lost during completion")

        if status == TaskStatus.DEAD.value:
            logger.error("Task %s is dead after attempt %d: %s", task_id, attempt, error or outcome_value.value)
        elif status == TaskStatus.RETRYING.value:
            logger.warning("Task %s scheduled for retry %d at %s: %s", task_id, attempt, not_before, error)
        else:
            logger.info("Task %s succeeded", task_id)
        return CompletionResult(task_id=task_id, status=status, attempt=attempt, not_before=not_before)

    def reap_expired_leases(self) -> int:
        """Turn running rows with an expired lease into immediate retries."""
        return len(self.reap_expired())

    def reap_expired(self) -> list[QueueTask]:
        """Reap expired leases and return the rows as they now stand.

        Reaping counts as an attempt: the row becomes retrying with
        ``not_before = now``, or dead once its attempts are exhausted.
        """
        now = self._clock.now_utc()
        rows = self._db.fetch_all(
            f"""
            UPDATE job_task
            SET attempt = attempt + 1,
                status = CASE
                    WHEN attempt + 1 >= max_attempts THEN CAST('dead' AS task_status_enum)
                    ELSE CAST('retrying' AS task_status_enum)
                END,
                not_before = :now,
                locked_by = NULL,
                lease_expires_at = NULL,
                last_error = 'lease_expired',
                updated_at = :now
            WHERE status = 'running'
              AND lease_expires_at < :now
            RETURNING {_TASK_COLUMNS}
            """,
            {"now": now},
        )
        reaped = [QueueTask.from_row(row) for row in rows]
        for task in reaped:
            logger.warning(
                "Reaped expired lease on task %s (%s) -> %s (attempt %s/%s)",
                task.task_id,
                task.dedupe_key,
                task.status,
                task.attempt,
                task.max_attempts,
            )
        return reaped

    def release(self, task_ids: Sequence[int]) -> int:
        """Hand claimed-but-unstarted tasks back to pending without penalty."""
        if not task_ids:
            return 0
        now = self._clock.now_utc()
        rows = self._db.fetch_all(
            """
            UPDATE job_task
            SET status = CAST('pending' AS task_status_enum),
                locked_by = NULL,
                lease_expires_at = NULL,
                not_before = :now,
                updated_at = :now
            WHERE task_id = ANY(:task_ids)
              AND status = 'running'
              AND locked_by = :worker_id
            RETURNING task_id
            """,
            {"task_ids": list(task_ids), "worker_id": self._worker_id, "now": now},
        )
        if rows:
            logger.info("Released %d unstarted task(s) back to pending", len(rows))
        return len(rows)

    def requeue_dead(self, dedupe_key: str) -> bool:
        """Operator action: re-arm a dead task with a fresh attempt budget."""
        now = self._clock.now_utc()
        row = self._db.fetch_one(
            """
            UPDATE job_task
            SET status = CAST('pending' AS task_status_enum),
                attempt = 0,
                not_before = :now,
                last_error = NULL,
                updated_at = :now
            WHERE dedupe_key = :dedupe_key
              AND status = 'dead'
            RETURNING task_id
            """,
            {"dedupe_key": dedupe_key, "now": now},
        )
        if row is not None:
            logger.info("Requeued dead task %s (dedupe_key=%s)", row["task_id"], dedupe_key)
        return row is not None

    def get_by_dedupe_key(self, dedupe_key: str) -> QueueTask | None:
        row = self._db.fetch_one(
            f"SELECT {_TASK_COLUMNS} FROM job_task WHERE dedupe_key = :dedupe_key",
            {"dedupe_key": dedupe_key},
        )
        return QueueTask.from_row(row) if row is not None else None

    def status_counts(self) -> dict[str, int]:
        """Row counts per status, zero-filled for every known status."""
        rows = self._db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM job_task GROUP BY status",
            {},
        )
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            counts[str(getattr(row["status"], "value", row["status"]))] = int(row["n"])
        return counts
