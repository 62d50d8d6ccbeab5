"""Unit tests for the daily directive engine."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import json
from typing import Any, Sequence

import pytest

from pipeline.common import PipelineClock, canonical_json
from pipeline.decision_engine import (
    calibrate_confidence,
    compute_directive,
    compute_signals,
    decision_window,
    forced_protect_directive,
    persist_directive,
    run_daily_decision,
)
from pipeline.errors import DataInsufficientError
from pipeline.metrics import MetricFact
from pipeline.policy_store import ConfidenceWeights, PolicyParams
from tests.utils.fake_db import FakeDB

AS_OF = date(2026, 1, 20)
NOW = datetime(2026, 1, 20, 6, 0, tzinfo=timezone.utc)


class _FixedClock(PipelineClock):
    def __init__(self, now_ts: datetime) -> None:
        self._now_ts = now_ts

    def now_utc(self) -> datetime:
        return self._now_ts


class _StaticProvider:
    def __init__(self, facts: Sequence[MetricFact]) -> None:
        self.facts = list(facts)
        self.calls: list[tuple[str, str, date, date]] = []

    def fetch_daily_facts(self, tenant_id: str, channel_id: str, start: date, end: date) -> list[MetricFact]:
        self.calls.append((tenant_id, channel_id, start, end))
        return [fact for fact in self.facts if start <= fact.metric_date <= end]

    def has_any_facts(self, tenant_id: str, channel_id: str) -> bool:
        return bool(self.facts)


def _series(asset_id: str, revenues: Sequence[float], *, as_of: date = AS_OF) -> list[MetricFact]:
    start, _ = decision_window(as_of)
    return [
        MetricFact(metric_date=start + timedelta(days=offset), asset_id=asset_id, revenue_usd=revenue, impressions=100)
        for offset, revenue in enumerate(revenues)
    ]


def _rising() -> list[MetricFact]:
    return _series("a1", [10, 12, 14, 16, 18, 20, 22]) + _series("a2", [2] * 7)


def _active_row(params: PolicyParams | None = None) -> dict[str, Any]:
    params = params or PolicyParams()
    return {
        "tenant_id": "t1",
        "version_id": "baseline-v1",
        "params": canonical_json(params.to_json()),
        "params_hash": params.params_hash(),
        "created_by": "system",
        "parent_version_id": None,
        "created_at": NOW,
    }


def test_decision_window_excludes_as_of_day() -> None:
    assert decision_window(AS_OF) == (date(2026, 1, 13), date(2026, 1, 19))


def test_rising_concentrated_asset_is_exploit() -> None:
    result = compute_directive(_rising(), AS_OF, PolicyParams())

    assert result.direction == "EXPLOIT"
    assert result.rule == "concentrated_rising"
    assert result.signals is not None
    assert result.signals.top_asset_id == "a1"
    assert result.signals.revenue_concentration == pytest.approx(112 / 126)
    assert result.signals.dominant_asset_trend == pytest.approx(2.0)
    assert result.signals.new_asset_emergence is False
    assert result.confidence == pytest.approx(0.90)
    assert result.evidence[0] == "7d revenue: $126.00"
    assert result.forbidden_actions and result.reevaluate_triggers


def test_exploit_rule_wins_over_emergence() -> None:
    facts = _rising() + [MetricFact(metric_date=date(2026, 1, 19), asset_id="a3", revenue_usd=1.0, impressions=5)]

    result = compute_directive(facts, AS_OF, PolicyParams())

    assert result.signals is not None and result.signals.new_asset_emergence is True
    assert result.direction == "EXPLOIT"


def test_falling_top_asset_is_explore() -> None:
    facts = _series("a1", [22, 20, 18, 16, 14, 12, 10]) + _series("a2", [2] * 7)

    result = compute_directive(facts, AS_OF, PolicyParams())

    assert result.direction == "EXPLORE"
    assert result.rule == "falling_or_emerging"
    assert result.confidence == pytest.approx(0.80)


def test_flat_split_revenue_defaults_to_protect() -> None:
    facts = _series("a2", [10] * 7) + _series("a1", [10] * 7)

    result = compute_directive(facts, AS_OF, PolicyParams())

    assert result.direction == "PROTECT"
    assert result.rule == "default_safe"
    assert result.signals is not None
    assert result.signals.top_asset_id == "a1"
    assert result.signals.revenue_concentration == pytest.approx(0.5)


def test_missing_first_day_counts_every_last_day_top_asset_as_emerged() -> None:
    facts = [fact for fact in _series("a2", [10] * 7) + _series("a1", [10] * 7) if fact.metric_date != date(2026, 1, 13)]

    result = compute_directive(facts, AS_OF, PolicyParams())

    assert result.signals is not None
    assert result.signals.days_with_data == 6
    assert result.signals.new_asset_emergence is True
    assert result.direction == "EXPLORE"
    assert result.rule == "falling_or_emerging"


def test_three_of_seven_days_is_protect_with_insufficient_evidence() -> None:
    facts = [fact for fact in _rising() if fact.metric_date.day in {13, 15, 17}]

    result = compute_directive(facts, AS_OF, PolicyParams())

    assert result.direction == "PROTECT"
    assert result.rule == "insufficient_data"
    assert result.signals is None
    assert result.confidence == pytest.approx(0.60)
    assert result.evidence == ("Data insufficient for reliable signals: only 3 of 7 days have metric facts",)
    assert result.reevaluate_triggers[0] == "After the next complete metrics sync"


def test_conflicting_facts_are_insufficient() -> None:
    facts = _rising() + [MetricFact(metric_date=date(2026, 1, 14), asset_id="a1", revenue_usd=99.0, impressions=1)]

    with pytest.raises(DataInsufficientError, match="conflicting facts"):
        compute_signals(facts, date(2026, 1, 13), date(2026, 1, 19), PolicyParams())
    assert compute_directive(facts, AS_OF, PolicyParams()).direction == "PROTECT"


def test_facts_outside_window_are_ignored() -> None:
    stray = MetricFact(metric_date=AS_OF, asset_id="a9", revenue_usd=1000.0, impressions=1)

    with_stray = compute_directive(_rising() + [stray], AS_OF, PolicyParams())
    without = compute_directive(_rising(), AS_OF, PolicyParams())

    assert with_stray == without


def test_same_inputs_give_identical_directives() -> None:
    facts = _rising()
    assert compute_directive(facts, AS_OF, PolicyParams()) == compute_directive(list(reversed(facts)), AS_OF, PolicyParams())


def test_policy_threshold_changes_outcome() -> None:
    facts = _series("a1", [10, 11, 12, 13, 14, 15, 16]) + _series("a2", [9] * 7)
    loose = compute_directive(facts, AS_OF, PolicyParams(high_concentration_threshold=0.5))
    strict = compute_directive(facts, AS_OF, PolicyParams(high_concentration_threshold=0.7))

    assert loose.direction == "EXPLOIT"
    assert strict.direction == "PROTECT"


def test_calibration_curve_maps_raw_confidence() -> None:
    assert calibrate_confidence(0.8, ()) == 0.8
    assert calibrate_confidence(0.8, ((0.0, 0.0), (1.0, 0.5))) == pytest.approx(0.4)
    assert calibrate_confidence(1.5, ((0.0, 0.2), (1.0, 0.9))) == pytest.approx(0.9)

    result = compute_directive(_rising(), AS_OF, PolicyParams(calibration_curve=((0.0, 0.0), (1.0, 0.5))))
    assert result.raw_confidence == pytest.approx(0.90)
    assert result.confidence == pytest.approx(0.45)


def test_forced_protect_is_degraded() -> None:
    result = forced_protect_directive(AS_OF, "task_quota", policy_version_id="v1")

    assert result.direction == "PROTECT"
    assert result.degraded is True
    assert result.rule == "budget_exhausted"
    assert "task_quota" in result.evidence[0]
    assert result.policy_version_id == "v1"


def test_persist_directive_is_write_once() -> None:
    db = FakeDB()
    db.queue_one("INSERT INTO decision_daily", {"as_of_date": AS_OF}, None)
    computation = compute_directive(_rising(), AS_OF, PolicyParams(), policy_version_id="baseline-v1")

    first = persist_directive(db, tenant_id="t1", channel_id="C", computation=computation, created_at=NOW)
    second = persist_directive(db, tenant_id="t1", channel_id="C", computation=computation, created_at=NOW)

    assert (first, second) == (True, False)
    sql, params = db.queries[0]
    assert "ON CONFLICT (tenant_id, channel_id, as_of_date) DO NOTHING" in sql
    assert params["direction"] == "EXPLOIT"
    assert json.loads(params["evidence"]) == list(computation.evidence)
    assert json.loads(params["signals"])["rule"] == "concentrated_rising"
    assert params["row_hash"] == db.queries[1][1]["row_hash"]


def test_run_daily_decision_reads_active_policy_and_window() -> None:
    db = FakeDB()
    db.set_one("FROM policy_active_pointer AS p", _active_row())
    db.set_one("INSERT INTO decision_daily", {"as_of_date": AS_OF})
    provider = _StaticProvider(_rising())

    result = run_daily_decision(db, provider, tenant_id="t1", channel_id="C", as_of_date=AS_OF, clock=_FixedClock(NOW))

    assert result.written is True
    assert result.computation.direction == "EXPLOIT"
    assert result.computation.policy_version_id == "baseline-v1"
    assert provider.calls == [("t1", "C", date(2026, 1, 13), date(2026, 1, 19))]
    assert db.statements_with("INSERT INTO decision_daily")[0]["created_at"] == NOW


def test_run_daily_decision_degraded_skips_metrics() -> None:
    db = FakeDB()
    db.set_one("FROM policy_active_pointer AS p", _active_row())
    db.set_one("INSERT INTO decision_daily", {"as_of_date": AS_OF})
    provider = _StaticProvider(_rising())

    result = run_daily_decision(
        db,
        provider,
        tenant_id="t1",
        channel_id="C",
        as_of_date=AS_OF,
        degraded_reason="spend_cap",
        clock=_FixedClock(NOW),
    )

    assert provider.calls == []
    assert result.computation.degraded is True
    assert db.statements_with("INSERT INTO decision_daily")[0]["degraded"] is True


def test_degraded_directive_uses_active_confidence_floor() -> None:
    tuned = PolicyParams(weights=ConfidenceWeights(floor=0.5))
    db = FakeDB()
    db.set_one("FROM policy_active_pointer AS p", _active_row(tuned))
    db.set_one("INSERT INTO decision_daily", {"as_of_date": AS_OF})

    result = run_daily_decision(
        db,
        _StaticProvider([]),
        tenant_id="t1",
        channel_id="C",
        as_of_date=AS_OF,
        degraded_reason="task_quota",
        clock=_FixedClock(NOW),
    )

    assert result.computation.confidence == pytest.approx(0.5)
    assert float(db.statements_with("INSERT INTO decision_daily")[0]["confidence"]) == pytest.approx(0.5)
