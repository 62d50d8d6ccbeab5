from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
import json

import pytest

from pipeline.common import PipelineClock
from pipeline.entitlements import TIER_PLAN, UsageSnapshot
from pipeline.errors import RequestValidationError
from pipeline.subscriptions import (
    USAGE_CHAT_ACTION,
    USAGE_TASK,
    BillingEvent,
    ModelPricing,
    apply_billing_event,
    compute_cost_usd,
    ensure_trial_started,
    load_subscription_context,
    normalize_subscription_status,
    record_usage,
    usage_today,
)
from tests.utils.fake_db import FakeDB

NOW = datetime(2026, 1, 20, 6, 0, tzinfo=timezone.utc)
SUBSCRIPTION = "FROM subscription AS s"
UPSERT = "INSERT INTO subscription"


class _FixedClock(PipelineClock):
    def __init__(self, now_ts: datetime) -> None:
        self._now_ts = now_ts

    def now_utc(self) -> datetime:
        return self._now_ts


def _event(**overrides: object) -> BillingEvent:
    values: dict[str, object] = {
        "provider": "stripe",
        "provider_event_id": "evt_1",
        "tenant_id": "t1",
        "event_type": "customer.subscription.updated",
        "raw_status": "active",
        "plan_id": "pro",
    }
    values.update(overrides)
    return BillingEvent(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Active", "active"),
        (" trial ", "trialing"),
        ("past-due", "past_due"),
        ("cancelled", "canceled"),
        ("expired", "canceled"),
        ("refunded", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_subscription_status(raw: str | None, expected: str | None) -> None:
    assert normalize_subscription_status(raw) == expected


def test_compute_cost_usd() -> None:
    pricing = ModelPricing(prompt_usd_per_m=3.0, completion_usd_per_m=15.0)
    assert compute_cost_usd(pricing, 1_000, 500) == pytest.approx(0.0105)
    assert compute_cost_usd(pricing, 0, 0) == 0.0


def test_billing_event_is_recorded_once() -> None:
    db = FakeDB()
    db.queue_one("INSERT INTO billing_event", {"event_id": 1}, None)

    assert apply_billing_event(db, _event(), clock=_FixedClock(NOW)) is True
    assert apply_billing_event(db, _event(), clock=_FixedClock(NOW)) is False

    upserts = db.statements_with(UPSERT)
    assert len(upserts) == 1
    assert upserts[0]["status"] == "active"
    assert upserts[0]["plan_id"] == "pro"
    assert upserts[0]["trial_started_at"] is None
    event_params = db.statements_with("INSERT INTO billing_event")[0]
    assert event_params["normalized_status"] == "active"
    assert json.loads(event_params["payload"]) == {}


def test_trialing_event_sets_trial_start_without_overwriting() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO billing_event", {"event_id": 2})

    apply_billing_event(db, _event(raw_status="trialing", plan_id=None), clock=_FixedClock(NOW))

    sql, params = db.executed[0]
    assert params["trial_started_at"] == NOW
    assert "COALESCE(subscription.trial_started_at, EXCLUDED.trial_started_at)" in sql


def test_unrecognized_status_is_recorded_without_state_change() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO billing_event", {"event_id": 3})

    assert apply_billing_event(db, _event(raw_status="refunded"), clock=_FixedClock(NOW)) is True
    assert db.statements_with(UPSERT) == []


def test_billing_event_requires_identifiers() -> None:
    with pytest.raises(RequestValidationError):
        apply_billing_event(FakeDB(), _event(provider_event_id=" "), clock=_FixedClock(NOW))


def test_load_subscription_context_decodes_json_columns() -> None:
    db = FakeDB()
    db.set_one(
        SUBSCRIPTION,
        {
            "tenant_id": "t1",
            "status": "active",
            "plan_id": "pro",
            "trial_started_at": None,
            "plan_entitlements": '{"daily_task_quota": 100, "chat_daily_quota": 10, "daily_spend_cap_usd": 2}',
            "overrides": None,
        },
    )

    context = load_subscription_context(db, "t1")

    assert context is not None
    assert context.plan_entitlements == {"daily_task_quota": 100, "chat_daily_quota": 10, "daily_spend_cap_usd": 2}
    window = context.resolve(NOW)
    assert window.tier == TIER_PLAN
    assert window.daily_task_quota == 100


def test_missing_subscription_context_is_none() -> None:
    assert load_subscription_context(FakeDB(), "t1") is None


def test_ensure_trial_started_inserts_once() -> None:
    db = FakeDB()
    db.set_one(
        SUBSCRIPTION,
        {
            "tenant_id": "t1",
            "status": "trialing",
            "plan_id": None,
            "trial_started_at": NOW.replace(tzinfo=None),
            "plan_entitlements": None,
            "overrides": None,
        },
    )

    context = ensure_trial_started(db, "t1", NOW)

    assert context.status == "trialing"
    assert context.trial_started_at == NOW
    sql, params = db.executed[0]
    assert "ON CONFLICT (tenant_id) DO NOTHING" in sql
    assert params["status"] == "trialing"


def test_record_usage_is_idempotent_by_key() -> None:
    db = FakeDB()
    db.queue_one("INSERT INTO usage_event", {"usage_id": 1}, None)

    kwargs = {"tenant_id": "t1", "event_type": USAGE_TASK, "idempotency_key": "t1:daily_channel:C:2026-01-20", "occurred_at": NOW}
    assert record_usage(db, **kwargs) is True
    assert record_usage(db, **kwargs) is False

    params = db.statements_with("INSERT INTO usage_event")[0]
    assert params["usage_date"] == date(2026, 1, 20)
    assert params["cost_usd"] == Decimal("0.0")
    assert params["units"] == 1


def test_record_usage_rejects_negative_values() -> None:
    with pytest.raises(RequestValidationError):
        record_usage(FakeDB(), tenant_id="t1", event_type=USAGE_CHAT_ACTION, idempotency_key="k", occurred_at=NOW, units=-1)


def test_usage_today_sums_per_type() -> None:
    db = FakeDB()
    db.set_one("FROM usage_event", {"task_units": 3, "chat_units": 2, "cost_usd": Decimal("0.125")})

    assert usage_today(db, "t1", date(2026, 1, 20)) == UsageSnapshot(task_units=3, chat_units=2, cost_usd=0.125)
    params = db.queries[-1][1]
    assert params["task_type"] == "task"
    assert params["chat_type"] == "chat_action"
