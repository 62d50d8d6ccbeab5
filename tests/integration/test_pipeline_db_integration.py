"""DB-backed integration tests for queue, directive and policy persistence."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

import psycopg
import pytest

from pipeline.common import PipelineClock
from pipeline.decision_engine import run_daily_decision
from pipeline.errors import LockExpired
from pipeline.metrics import MetricFact, SqlMetricsFactsProvider
from pipeline.policy_store import BASELINE_VERSION_ID, PolicyParams, PolicyStore
from pipeline.task_queue import TaskOutcome, TaskQueueStore

T0 = datetime(2026, 1, 20, 6, 0, tzinfo=timezone.utc)


class _FixedClock(PipelineClock):
    def __init__(self, now_ts: datetime) -> None:
        self._now_ts = now_ts

    def now_utc(self) -> datetime:
        return self._now_ts


def _count(db: Any, sql: str, params: dict[str, Any]) -> int:
    row = db.fetch_one(sql, params)
    return int(row["n"]) if row is not None else 0


def _insert_facts(db: Any, tenant_id: str, channel_id: str, facts: list[MetricFact]) -> None:
    db.execute(
        "INSERT INTO channel_connection (tenant_id, channel_id) VALUES (:tenant_id, :channel_id)",
        {"tenant_id": tenant_id, "channel_id": channel_id},
    )
    for fact in facts:
        db.execute(
            """
            INSERT INTO channel_metric_daily (
                tenant_id, channel_id, metric_date, asset_id, revenue_usd, impressions, is_settled
            ) VALUES (
                :tenant_id, :channel_id, :metric_date, :asset_id, :revenue_usd, :impressions, TRUE
            )
            """,
            {
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "metric_date": fact.metric_date,
                "asset_id": fact.asset_id,
                "revenue_usd": fact.revenue_usd,
                "impressions": fact.impressions,
            },
        )


def test_enqueue_claim_complete_round_trip(pipeline_db: Any) -> None:
    store = TaskQueueStore(pipeline_db, worker_id="it-worker", clock=_FixedClock(T0))

    assert store.enqueue("daily_channel", "t1", "C", date(2026, 1, 20)) is True
    assert store.enqueue("daily_channel", "t1", "C", date(2026, 1, 20)) is False
    assert _count(pipeline_db, "SELECT COUNT(*) AS n FROM job_task", {}) == 1

    claimed = store.claim(1, 600)
    assert len(claimed) == 1
    assert claimed[0].status == "running"
    assert store.claim(1, 600) == []

    result = store.complete(claimed[0].task_id, TaskOutcome.SUCCEEDED)
    assert result.status == "succeeded"
    counts = store.status_counts()
    assert counts["succeeded"] == 1
    assert counts["pending"] == 0
    assert counts["retrying"] == 0


def test_expired_lease_is_reaped_into_retry(pipeline_db: Any) -> None:
    first = TaskQueueStore(pipeline_db, worker_id="it-a", clock=_FixedClock(T0))
    first.enqueue("weekly_channel", "t1", "C", date(2026, 1, 19))
    [task] = first.claim(1, 60)

    later = TaskQueueStore(pipeline_db, worker_id="it-b", clock=_FixedClock(T0 + timedelta(seconds=120)))
    assert later.reap_expired_leases() == 1

    reaped = later.get_by_dedupe_key(task.dedupe_key)
    assert reaped is not None
    assert reaped.status == "retrying"
    assert reaped.attempt == 1
    assert reaped.last_error == "lease_expired"

    with pytest.raises(LockExpired):
        first.complete(task.task_id, TaskOutcome.SUCCEEDED)

    [again] = later.claim(1, 600)
    assert again.task_id == task.task_id
    assert again.locked_by == "it-b"


def test_dead_task_is_rearmed_by_enqueue_and_force_rearms_succeeded(pipeline_db: Any) -> None:
    store = TaskQueueStore(pipeline_db, worker_id="it-worker", clock=_FixedClock(T0), max_attempts=1)
    target = date(2026, 1, 20)
    store.enqueue("daily_channel", "t1", "C", target)
    [task] = store.claim(1, 600)
    assert store.complete(task.task_id, TaskOutcome.RETRYABLE_FAILURE, error="boom").status == "dead"

    assert store.enqueue("daily_channel", "t1", "C", target) is True
    rearmed = store.get_by_dedupe_key(task.dedupe_key)
    assert rearmed is not None
    assert (rearmed.task_id, rearmed.status, rearmed.attempt, rearmed.last_error) == (task.task_id, "pending", 0, None)

    [claimed] = store.claim(1, 600)
    store.complete(claimed.task_id, TaskOutcome.SUCCEEDED)
    assert store.enqueue("daily_channel", "t1", "C", target) is False
    assert store.enqueue("daily_channel", "t1", "C", target, force=True) is True
    assert _count(pipeline_db, "SELECT COUNT(*) AS n FROM job_task", {}) == 1


def test_daily_decision_twice_writes_one_directive(pipeline_db: Any) -> None:
    as_of = date(2026, 1, 20)
    facts = [
        MetricFact(metric_date=as_of - timedelta(days=offset), asset_id="a1", revenue_usd=10.0 + offset, impressions=100)
        for offset in range(1, 8)
    ]
    _insert_facts(pipeline_db, "t1", "C", facts)
    provider = SqlMetricsFactsProvider(pipeline_db)
    clock = _FixedClock(T0)

    first = run_daily_decision(pipeline_db, provider, tenant_id="t1", channel_id="C", as_of_date=as_of, clock=clock)
    second = run_daily_decision(pipeline_db, provider, tenant_id="t1", channel_id="C", as_of_date=as_of, clock=clock)

    assert first.written is True
    assert second.written is False
    assert _count(
        pipeline_db,
        "SELECT COUNT(*) AS n FROM decision_daily WHERE tenant_id = :t AND channel_id = :c",
        {"t": "t1", "c": "C"},
    ) == 1

    with pytest.raises(psycopg.Error):
        pipeline_db.execute("UPDATE decision_daily SET confidence = 0.1 WHERE tenant_id = 't1'", {})


def test_policy_activate_and_rollback_round_trip(pipeline_db: Any) -> None:
    store = PolicyStore(pipeline_db, clock=_FixedClock(T0))
    baseline = store.ensure_baseline("t1")
    assert baseline.version_id == BASELINE_VERSION_ID

    tuned = PolicyParams(high_concentration_threshold=0.55)
    store.create_version("t1", "v2", tuned, parent_version_id=BASELINE_VERSION_ID)
    assert store.activate("t1", "v2").reason_code == "ACTIVATED"
    assert store.activate("t1", "v2").reason_code == "ALREADY_ACTIVE"
    assert store.activate("t1", BASELINE_VERSION_ID, expected_active_version_id=BASELINE_VERSION_ID).reason_code == (
        "ACTIVE_POINTER_MOVED"
    )

    rolled = store.rollback("t1", BASELINE_VERSION_ID)
    assert rolled.activated is True
    active = store.get_active("t1")
    assert active is not None
    assert active.params == PolicyParams()
    pointer = store.get_pointer("t1")
    assert pointer is not None
    assert pointer.archived_version_id == "v2"
    assert pointer.swap_count == 2
    assert [entry["reason"] for entry in store.activation_history("t1")] == ["bootstrap", "manual", "rollback"]

    store.create_version("t1", "v3", PolicyParams(high_concentration_threshold=0.65), parent_version_id="v2")
    assert store.rollback("t1", "v3").reason_code == "NEVER_ACTIVE"
    assert store.rollback("t1", "v2").reason_code == "ACTIVATED"
