from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import json
from typing import Any

import pytest

from pipeline.errors import RequestValidationError
from pipeline.interfaces import effective_directive, effective_entitlement, enqueue_task
from tests.utils.fake_db import FakeDB

NOW = datetime(2026, 1, 20, 6, 0, tzinfo=timezone.utc)


def _directive_row(as_of: date) -> dict[str, Any]:
    return {
        "tenant_id": "t1",
        "channel_id": "C",
        "as_of_date": as_of,
        "direction": "EXPLORE",
        "confidence": 0.8,
        "evidence": json.dumps(["7d revenue: $10.00"]),
        "forbidden_actions": ["Limit experiments to 3-5 samples before judging"],
        "reevaluate_triggers": "[]",
        "policy_version_id": "baseline-v1",
        "degraded": False,
        "created_at": NOW,
    }


def test_effective_directive_returns_latest_on_or_before() -> None:
    db = FakeDB()
    db.set_one("FROM decision_daily", _directive_row(date(2026, 1, 18)))

    found = effective_directive(db, "t1", "C", "2026-01-20")

    assert found is not None
    assert found.as_of_date == date(2026, 1, 18)
    assert found.direction == "EXPLORE"
    assert found.evidence == ("7d revenue: $10.00",)
    assert found.reevaluate_triggers == ()
    sql, params = db.queries[0]
    assert "as_of_date <= :as_of_date" in sql
    assert "ORDER BY as_of_date DESC" in sql
    assert params["as_of_date"] == date(2026, 1, 20)
    assert found.to_json()["as_of_date"] == "2026-01-18"


def test_effective_directive_missing_is_none() -> None:
    assert effective_directive(FakeDB(), "t1", "C", date(2026, 1, 20)) is None


@pytest.mark.parametrize(
    ("tenant", "channel", "as_of"),
    [("", "C", "2026-01-20"), ("t1", "  ", "2026-01-20"), ("t1", "C", "yesterday"), (None, "C", "2026-01-20")],
)
def test_effective_directive_rejects_malformed_requests(tenant: Any, channel: Any, as_of: Any) -> None:
    with pytest.raises(RequestValidationError):
        effective_directive(FakeDB(), tenant, channel, as_of)


def test_effective_entitlement_without_subscription_is_read_only() -> None:
    db = FakeDB()

    window = effective_entitlement(db, "t1", NOW)

    assert window.read_only is True
    assert window.daily_task_quota == 0
    assert db.executed == []


def test_effective_entitlement_resolves_trial() -> None:
    db = FakeDB()
    db.set_one(
        "FROM subscription AS s",
        {
            "tenant_id": "t1",
            "status": "trialing",
            "plan_id": None,
            "trial_started_at": NOW - timedelta(days=10),
            "plan_entitlements": None,
            "overrides": None,
        },
    )

    window = effective_entitlement(db, "t1", NOW)

    assert window.tier == "sustain"
    assert window.trial_day == 11


def test_enqueue_task_validates_and_delegates() -> None:
    db = FakeDB()
    db.set_one("INSERT INTO job_task", {"task_id": 1})

    assert enqueue_task(db, "Daily_Channel", " t1 ", "C", "2026-01-20") is True

    params = db.statements_with("INSERT INTO job_task")[0]
    assert params["dedupe_key"] == "t1:daily_channel:C:2026-01-20"
    assert params["job_type"] == "daily_channel"

    with pytest.raises(RequestValidationError):
        enqueue_task(db, "daily_channel", "t1", "C", "not-a-date")
    with pytest.raises(RequestValidationError):
        enqueue_task(db, "monthly", "t1", "C", "2026-01-20")
