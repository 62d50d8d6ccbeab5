from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

import numpy as np
import pytest

import pipeline.replay_gate as replay_gate
from pipeline.common import PipelineClock, canonical_json
from pipeline.policy_store import BASELINE_VERSION_ID, PolicyParams
from pipeline.replay_gate import (
    ReplayMetrics,
    ReplayOutcome,
    ReplayedDecision,
    candidate_grid,
    candidate_version_id,
    compute_replay_metrics,
    derive_candidate,
    directive_correct,
    evaluate_gate,
    fit_calibration_curve,
    replay_window,
    run_replay_gate,
)
from tests.utils.fake_db import FakeDB

NOW = datetime(2026, 1, 19, 3, 0, tzinfo=timezone.utc)
TARGET = date(2026, 1, 19)
ACTIVE = "FROM policy_active_pointer AS p"
VERSION = "FROM policy_version\n"
POINTER = "FROM policy_active_pointer\n"
CAS = "UPDATE policy_active_pointer"
REPORT = "INSERT INTO policy_eval_report"


class _FixedClock(PipelineClock):
    def __init__(self, now_ts: datetime) -> None:
        self._now_ts = now_ts

    def now_utc(self) -> datetime:
        return self._now_ts


class _NoFacts:
    def __init__(self) -> None:
        self.calls: list[tuple[date, date]] = []

    def fetch_daily_facts(self, tenant_id: str, channel_id: str, start: date, end: date) -> list[Any]:
        self.calls.append((start, end))
        return []

    def has_any_facts(self, tenant_id: str, channel_id: str) -> bool:
        return False


def _version_row(version_id: str, params: PolicyParams) -> dict[str, Any]:
    return {
        "tenant_id": "t1",
        "version_id": version_id,
        "params": canonical_json(params.to_json()),
        "params_hash": params.params_hash(),
        "created_by": "system",
        "parent_version_id": None,
        "created_at": NOW,
    }


def _metrics(days: int = 30, catastrophic: float = 0.0, switch: float = 0.0) -> ReplayMetrics:
    return ReplayMetrics(days, days, catastrophic, switch, 1.0, 0.1)


def _history(days: int = 30) -> list[dict[str, Any]]:
    first = TARGET - timedelta(days=days)
    return [
        {
            "as_of_date": first + timedelta(days=offset),
            "direction": "PROTECT",
            "outcome_decision_date": None,
            "revenue_change_pct": None,
            "new_top_asset_flag": None,
        }
        for offset in range(days)
    ]


def test_replay_window_covers_trailing_weeks() -> None:
    assert replay_window(TARGET, 8) == (date(2025, 11, 24), date(2026, 1, 18))


@pytest.mark.parametrize(
    ("direction", "change", "new_top", "expected"),
    [
        ("EXPLOIT", 0.0, False, True),
        ("EXPLOIT", -0.01, True, False),
        ("EXPLORE", -0.2, True, True),
        ("EXPLORE", -0.2, False, False),
        ("PROTECT", 0.10, False, True),
        ("PROTECT", 0.25, False, False),
        ("PROTECT", None, False, None),
    ],
)
def test_directive_correct(direction: str, change: float | None, new_top: bool, expected: bool | None) -> None:
    assert directive_correct(direction, ReplayOutcome(change, new_top)) is expected


def test_replay_metrics_count_only_unprotected_catastrophes() -> None:
    days = [date(2026, 1, day) for day in (1, 2, 3, 4)]
    decisions = [
        ReplayedDecision(days[0], "EXPLOIT", 0.8, 0.8),
        ReplayedDecision(days[1], "EXPLOIT", 0.8, 0.8),
        ReplayedDecision(days[2], "PROTECT", 0.8, 0.8),
        ReplayedDecision(days[3], "EXPLORE", 0.8, 0.8),
    ]
    outcomes = {
        days[0]: ReplayOutcome(-0.5, False),
        days[1]: ReplayOutcome(0.1, False),
        days[2]: ReplayOutcome(-0.5, False),
    }

    metrics = compute_replay_metrics(decisions, outcomes, -0.30)

    assert metrics.days == 4
    assert metrics.outcome_days == 3
    assert metrics.catastrophic_rate == pytest.approx(1 / 3, abs=1e-6)
    assert metrics.switch_rate == pytest.approx(2 / 3, abs=1e-6)
    assert metrics.protect_rate == pytest.approx(0.25)
    assert metrics.calibration_error == pytest.approx(abs(0.8 - 2 / 3), abs=1e-6)


def test_replay_metrics_for_empty_replay() -> None:
    assert compute_replay_metrics([], {}, -0.30) == ReplayMetrics(0, 0, 0.0, 0.0, 0.0, 0.0)


def test_higher_catastrophic_rate_is_never_approved() -> None:
    decision = evaluate_gate(_metrics(catastrophic=0.2, switch=0.0), _metrics(catastrophic=0.1, switch=0.5), min_days=28)
    assert decision.approved is False
    assert decision.reason_code == "CATASTROPHIC_RATE_REGRESSION"


def test_gate_rejections_and_approval() -> None:
    assert evaluate_gate(_metrics(days=10), _metrics(), min_days=28).reason_code == "INSUFFICIENT_DAYS"
    assert evaluate_gate(_metrics(switch=0.3), _metrics(switch=0.2), min_days=28).reason_code == "SWITCH_RATE_REGRESSION"
    approved = evaluate_gate(_metrics(), _metrics(), min_days=28)
    assert (approved.approved, approved.reason_code) == (True, "APPROVED")


def test_calibration_curve_needs_samples_and_is_monotone() -> None:
    assert fit_calibration_curve(np.array([0.6] * 9), np.array([1.0] * 9)) == ()

    raw = np.array([0.55] * 5 + [0.85] * 5)
    correct = np.array([1, 1, 1, 0, 0, 1, 0, 0, 0, 0], dtype=float)
    assert fit_calibration_curve(raw, correct) == ((0.55, 0.6), (0.85, 0.6))


def test_candidate_grid_stays_in_bounds() -> None:
    grid = candidate_grid(PolicyParams())
    assert len(grid) == 15
    assert PolicyParams() in grid
    assert {params.high_concentration_threshold for params in grid} == {0.5, 0.55, 0.6, 0.65, 0.7}

    edge = candidate_grid(PolicyParams(high_concentration_threshold=1.0))
    assert len(edge) == 9
    assert max(params.high_concentration_threshold for params in edge) == 1.0


def test_tied_grid_points_fall_back_to_active_thresholds() -> None:
    signals_by_day = {date(2026, 1, day): None for day in range(1, 11)}

    candidate, metrics = derive_candidate(signals_by_day, {}, PolicyParams())

    assert candidate == PolicyParams()
    assert metrics.protect_rate == 1.0


def test_candidate_version_id_format() -> None:
    version_id = candidate_version_id("C", TARGET, PolicyParams())
    assert version_id.startswith("cand-C-20260119-")
    assert len(version_id.rsplit("-", 1)[1]) == 12


def test_gate_without_history_persists_nothing() -> None:
    db = FakeDB()
    db.set_one(ACTIVE, _version_row(BASELINE_VERSION_ID, PolicyParams()))

    result = run_replay_gate(db, _NoFacts(), tenant_id="t1", channel_id="C", target_date=TARGET, clock=_FixedClock(NOW))

    assert result.decision.reason_code == "INSUFFICIENT_DAYS"
    assert result.candidate_version_id is None
    assert db.executed == []
    assert db.statements_with(REPORT) == []


def test_gate_with_unchanged_candidate_persists_nothing() -> None:
    db = FakeDB()
    db.set_one(ACTIVE, _version_row(BASELINE_VERSION_ID, PolicyParams()))
    db.set_all("FROM decision_daily AS d", _history())
    provider = _NoFacts()

    result = run_replay_gate(db, provider, tenant_id="t1", channel_id="C", target_date=TARGET, clock=_FixedClock(NOW))

    assert result.decision.reason_code == "CANDIDATE_UNCHANGED"
    assert result.active_metrics is not None and result.active_metrics.days == 30
    assert provider.calls == [(date(2025, 12, 13), date(2026, 1, 18))]
    assert db.executed == []
    assert db.statements_with(REPORT) == []


def test_gate_approves_and_activates_candidate(monkeypatch: pytest.MonkeyPatch) -> None:
    tuned = PolicyParams(high_concentration_threshold=0.55)
    monkeypatch.setattr(replay_gate, "derive_candidate", lambda signals, outcomes, active: (tuned, _metrics()))
    version_id = candidate_version_id("C", TARGET, tuned)

    db = FakeDB()
    db.set_one(ACTIVE, _version_row(BASELINE_VERSION_ID, PolicyParams()))
    db.set_all("FROM decision_daily AS d", _history())
    db.set_one(VERSION, _version_row(version_id, tuned))
    db.set_one(POINTER, {"tenant_id": "t1", "active_version_id": BASELINE_VERSION_ID, "archived_version_id": None, "swap_count": 0})
    db.set_one(CAS, {"active_version_id": version_id, "archived_version_id": BASELINE_VERSION_ID})
    db.set_one(REPORT, {"candidate_version_id": version_id})

    result = run_replay_gate(db, _NoFacts(), tenant_id="t1", channel_id="C", target_date=TARGET, clock=_FixedClock(NOW))

    assert result.decision.approved is True
    assert result.candidate_version_id == version_id
    assert result.activation is not None and result.activation.activated is True
    report = db.statements_with(REPORT)[0]
    assert report["approved"] is True
    assert report["active_version_id"] == BASELINE_VERSION_ID
    assert db.statements_with(CAS)[0]["expected_version_id"] == BASELINE_VERSION_ID
    log = db.statements_with("INSERT INTO policy_activation_log")[0]
    assert log["reason"] == "replay_gate"
    created = db.statements_with("INSERT INTO policy_version")[0]
    assert created["parent_version_id"] == BASELINE_VERSION_ID


def test_gate_rejection_keeps_active_version(monkeypatch: pytest.MonkeyPatch) -> None:
    tuned = PolicyParams(high_concentration_threshold=0.65)
    monkeypatch.setattr(
        replay_gate,
        "derive_candidate",
        lambda signals, outcomes, active: (tuned, _metrics(catastrophic=0.2)),
    )
    version_id = candidate_version_id("C", TARGET, tuned)

    db = FakeDB()
    db.set_one(ACTIVE, _version_row(BASELINE_VERSION_ID, PolicyParams()))
    db.set_all("FROM decision_daily AS d", _history())
    db.set_one(VERSION, _version_row(version_id, tuned))
    db.set_one(REPORT, {"candidate_version_id": version_id})

    result = run_replay_gate(db, _NoFacts(), tenant_id="t1", channel_id="C", target_date=TARGET, clock=_FixedClock(NOW))

    assert result.decision.reason_code == "CATASTROPHIC_RATE_REGRESSION"
    assert result.activation is None
    assert db.statements_with(REPORT)[0]["approved"] is False
    assert db.statements_with(CAS) == []
