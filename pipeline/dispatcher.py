"""Schedule-triggered fan-out: one queue task per active (tenant, channel) pair."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
import logging
from typing import Sequence

from backend.db.enums import JobType
from pipeline.common import PipelineDatabase
from pipeline.metrics import MetricsFactsProvider
from pipeline.task_queue import TaskQueueStore, validate_job_type

logger = logging.getLogger(__name__)

FRESH_CHANNEL_BACKFILL_WEEKS = 4


@dataclass(frozen=True)
class DispatchSummary:
    """Counts reported by one dispatch run."""

    job_type: str
    run_for_date: date
    pairs: int
    enqueued: int
    duplicates: int


def compute_backfill_run_for_dates(end_date: date, backfill_days: int, chunk_days: int) -> list[date]:
    """Run-for dates covering ``backfill_days`` ending at ``end_date`` in ``chunk_days`` windows.

    Each returned date is the day after its window end, ascending.
    """
    backfill_days = max(1, min(365, backfill_days))
    chunk_days = max(1, min(30, chunk_days))
    chunks = max(1, -(-backfill_days // chunk_days))
    first_window_end = end_date - timedelta(days=(chunks - 1) * chunk_days)
    return [first_window_end + timedelta(days=index * chunk_days + 1) for index in range(chunks)]


def weekly_spaced_dates(run_for_date: date, weeks: int) -> list[date]:
    """``weeks`` dates stepping back 7 days from ``run_for_date``, newest first."""
    return [run_for_date - timedelta(days=7 * index) for index in range(max(1, weeks))]


def list_active_channels(db: PipelineDatabase) -> list[tuple[str, str]]:
    rows = db.fetch_all(
        """
        SELECT tenant_id, channel_id
        FROM channel_connection
        WHERE is_active = TRUE
        ORDER BY tenant_id ASC, channel_id ASC
        """,
        {},
    )
    return [(str(row["tenant_id"]), str(row["channel_id"])) for row in rows]


class Dispatcher:
    """Enumerates channels and enqueues work; performs no computation itself."""

    def __init__(
        self,
        db: PipelineDatabase,
        queue: TaskQueueStore,
        provider: MetricsFactsProvider,
        *,
        fresh_channel_backfill_weeks: int = FRESH_CHANNEL_BACKFILL_WEEKS,
    ) -> None:
        self._db = db
        self._queue = queue
        self._provider = provider
        self._fresh_weeks = max(0, min(52, fresh_channel_backfill_weeks))

    def dispatch(
        self,
        job_type: str,
        run_for_date: date,
        *,
        backfill_weeks: int | None = None,
        force: bool = False,
    ) -> DispatchSummary:
        """Enqueue ``job_type`` for every active pair.

        Daily dispatch also enqueues the outcome backfill that labels the
        directive issued one horizon earlier, and seeds ``backfill_weeks``
        (0..52) weekly-spaced daily tasks, newest first. Channels without any
        metric facts are seeded with the fresh-channel week count only when no
        count is given. ``force`` re-arms finished tasks for the same keys.
        """
        job_type_value = validate_job_type(job_type)
        weeks = max(0, min(52, backfill_weeks)) if backfill_weeks is not None else 0
        pairs = list_active_channels(self._db)
        enqueued = 0
        duplicates = 0

        for tenant_id, channel_id in pairs:
            planned: list[tuple[str, date]] = []
            if job_type_value == JobType.DAILY_CHANNEL.value:
                if backfill_weeks is None and not self._provider.has_any_facts(tenant_id, channel_id):
                    daily_dates = weekly_spaced_dates(run_for_date, self._fresh_weeks)
                elif weeks > 1:
                    daily_dates = weekly_spaced_dates(run_for_date, weeks)
                else:
                    daily_dates = [run_for_date]
                planned.extend((JobType.DAILY_CHANNEL.value, target) for target in daily_dates)
                planned.append((JobType.BACKFILL_OUTCOME.value, run_for_date))
            else:
                planned.append((job_type_value, run_for_date))

            for planned_type, target_date in planned:
                if self._queue.enqueue(planned_type, tenant_id, channel_id, target_date, force=force):
                    enqueued += 1
                else:
                    duplicates += 1

        logger.info(
            "Dispatched %s for %s: pairs=%d enqueued=%d duplicates=%d",
            job_type_value,
            run_for_date.isoformat(),
            len(pairs),
            enqueued,
            duplicates,
        )
        return DispatchSummary(
            job_type=job_type_value,
            run_for_date=run_for_date,
            pairs=len(pairs),
            enqueued=enqueued,
            duplicates=duplicates,
        )

    def dispatch_backfill(
        self,
        tenant_id: str,
        channel_id: str,
        end_date: date,
        *,
        backfill_days: int,
        chunk_days: int = 7,
    ) -> list[date]:
        """Enqueue daily tasks for historical run-for dates of one channel."""
        run_for_dates: Sequence[date] = compute_backfill_run_for_dates(end_date, backfill_days, chunk_days)
        created = [
            target
            for target in run_for_dates
            if self._queue.enqueue(JobType.DAILY_CHANNEL.value, tenant_id, channel_id, target)
        ]
        logger.info(
            "Backfill for %s/%s: %d run-for date(s), %d new",
            tenant_id,
            channel_id,
            len(run_for_dates),
            len(created),
        )
        return created
