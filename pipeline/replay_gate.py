"""Weekly replay gate: backtest a candidate parameter set and approve or reject it.

The gate replays the frozen rule set over stored metric facts for every
decision day in the trailing window, once with the active version's params
and once per point of a bounded threshold grid. The best grid point gets a
binned calibration curve and becomes the candidate. Approval is monotonic
non-regression against the active version on the same window.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
import itertools
import logging
from typing import Any, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from backend.db.enums import Direction, PolicyCreator
from pipeline.common import PipelineClock, PipelineDatabase, stable_hash
from pipeline.decision_engine import (
    DecisionSignals,
    calibrate_confidence,
    compute_signals,
    confidence_v1,
    decision_window,
    evaluate_rules,
)
from pipeline.errors import DataInsufficientError
from pipeline.metrics import MetricFact, MetricsFactsProvider
from pipeline.policy_store import ActivationResult, PolicyParams, PolicyStore

logger = logging.getLogger(__name__)

CONCENTRATION_OFFSETS: tuple[float, ...] = (-0.10, -0.05, 0.0, 0.05, 0.10)
TREND_MULTIPLIERS: tuple[float, ...] = (0.5, 1.0, 2.0)
CALIBRATION_BINS = 10
MIN_CALIBRATION_SAMPLES = 10
PROTECT_TOLERANCE_PCT = 0.10


@dataclass(frozen=True)
class ReplayOutcome:
    revenue_change_pct: Optional[float]
    new_top_asset_flag: bool


@dataclass(frozen=True)
class HistoryDay:
    """A stored directive day with its outcome, when one has been labelled."""

    decision_date: date
    direction: str
    outcome: Optional[ReplayOutcome]


@dataclass(frozen=True)
class ReplayedDecision:
    decision_date: date
    direction: str
    raw_confidence: float
    confidence: float


@dataclass(frozen=True)
class ReplayMetrics:
    """Backtest metrics for one parameter set over one window."""

    days: int
    outcome_days: int
    catastrophic_rate: float
    switch_rate: float
    protect_rate: float
    calibration_error: float

    def objective(self) -> tuple[float, float, float]:
        return (self.catastrophic_rate, self.switch_rate, self.calibration_error)


@dataclass(frozen=True)
class GateDecision:
    """Approval verdict; a rejection is a normal outcome, not an error."""

    approved: bool
    reason_code: str
    detail: str = ""


@dataclass(frozen=True)
class ReplayGateResult:
    tenant_id: str
    channel_id: str
    window_start: date
    window_end: date
    active_version_id: str
    candidate_version_id: Optional[str]
    decision: GateDecision
    active_metrics: Optional[ReplayMetrics]
    candidate_metrics: Optional[ReplayMetrics]
    activation: Optional[ActivationResult] = None


def replay_window(target_date: date, window_weeks: int) -> tuple[date, date]:
    """Decision dates covered by the gate run for ``target_date`` (inclusive)."""
    return target_date - timedelta(days=7 * window_weeks), target_date - timedelta(days=1)


def directive_correct(direction: str, outcome: ReplayOutcome) -> Optional[bool]:
    """Whether the realized outcome vindicated the direction; None when unlabelled."""
    change = outcome.revenue_change_pct
    if change is None:
        return None
    if direction == Direction.EXPLOIT.value:
        return change >= 0
    if direction == Direction.EXPLORE.value:
        return outcome.new_top_asset_flag or change >= 0
    return change <= PROTECT_TOLERANCE_PCT


def expected_calibration_error(confidence: np.ndarray, correct: np.ndarray, bins: int = CALIBRATION_BINS) -> float:
    if confidence.size == 0:
        return 0.0
    edges = np.linspace(0.0, 1.0, bins + 1)
    bin_idx = np.digitize(confidence, edges, right=True)
    ece = 0.0
    for idx in np.unique(bin_idx):
        mask = bin_idx == idx
        ece += abs(float(np.mean(confidence[mask])) - float(np.mean(correct[mask]))) * float(np.mean(mask))
    return round(ece, 6)


def fit_calibration_curve(
    raw_confidence: np.ndarray,
    correct: np.ndarray,
    bins: int = CALIBRATION_BINS,
) -> tuple[tuple[float, float], ...]:
    """Binned reliability curve, made non-decreasing; empty when there is too little evidence."""
    if raw_confidence.size < MIN_CALIBRATION_SAMPLES:
        return ()
    frame = pd.DataFrame({"raw": raw_confidence, "correct": correct.astype(float)})
    frame["bin"] = np.digitize(frame["raw"], np.linspace(0.0, 1.0, bins + 1), right=True)
    grouped = frame.groupby("bin", sort=True).agg(raw=("raw", "mean"), correct=("correct", "mean"))
    if len(grouped) < 2:
        return ()
    calibrated = np.maximum.accumulate(grouped["correct"].to_numpy(dtype=float))
    return tuple(
        (round(float(raw), 4), round(float(value), 4))
        for raw, value in zip(grouped["raw"].to_numpy(dtype=float), calibrated)
    )


def replay_signals(
    facts: Sequence[MetricFact],
    decision_dates: Sequence[date],
    params: PolicyParams,
) -> dict[date, Optional[DecisionSignals]]:
    """Signals per decision date; None where the window was insufficient."""
    signals: dict[date, Optional[DecisionSignals]] = {}
    for decision_date in decision_dates:
        window_start, window_end = decision_window(decision_date)
        try:
            signals[decision_date] = compute_signals(facts, window_start, window_end, params)
        except DataInsufficientError:
            signals[decision_date] = None
    return signals


def replay_directions(
    signals_by_day: Mapping[date, Optional[DecisionSignals]],
    params: PolicyParams,
) -> list[ReplayedDecision]:
    decisions: list[ReplayedDecision] = []
    for decision_date in sorted(signals_by_day):
        signals = signals_by_day[decision_date]
        _, direction = evaluate_rules(signals, params)
        raw = confidence_v1(direction, signals, params)
        decisions.append(
            ReplayedDecision(
                decision_date=decision_date,
                direction=direction.value,
                raw_confidence=raw,
                confidence=calibrate_confidence(raw, params.calibration_curve),
            )
        )
    return decisions


def _labelled_frame(
    decisions: Sequence[ReplayedDecision],
    outcomes: Mapping[date, ReplayOutcome],
    catastrophic_drop_pct: float,
) -> pd.DataFrame:
    rows = []
    for decision in decisions:
        outcome = outcomes.get(decision.decision_date)
        change = outcome.revenue_change_pct if outcome is not None else None
        rows.append(
            {
                "decision_date": decision.decision_date,
                "direction": decision.direction,
                "raw_confidence": decision.raw_confidence,
                "confidence": decision.confidence,
                "has_outcome": outcome is not None,
                "catastrophic": change is not None and change < catastrophic_drop_pct,
                "correct": directive_correct(decision.direction, outcome)
                if outcome is not None
                else None,
            }
        )
    return pd.DataFrame(
        rows,
        columns=["decision_date", "direction", "raw_confidence", "confidence", "has_outcome", "catastrophic", "correct"],
    )


def compute_replay_metrics(
    decisions: Sequence[ReplayedDecision],
    outcomes: Mapping[date, ReplayOutcome],
    catastrophic_drop_pct: float,
) -> ReplayMetrics:
    """Catastrophic, switch, protect and calibration metrics for one replay."""
    frame = _labelled_frame(decisions, outcomes, catastrophic_drop_pct)
    days = len(frame)
    if days == 0:
        return ReplayMetrics(0, 0, 0.0, 0.0, 0.0, 0.0)

    directions = frame["direction"]
    switches = int((directions != directions.shift()).iloc[1:].sum())
    labelled = frame.loc[frame["has_outcome"]]
    outcome_days = len(labelled)
    catastrophic = int((labelled["catastrophic"] & (labelled["direction"] != Direction.PROTECT.value)).sum())

    scored = frame.loc[frame["correct"].notna()]
    calibration_error = expected_calibration_error(
        scored["confidence"].to_numpy(dtype=float),
        scored["correct"].astype(bool).to_numpy(dtype=float),
    )
    return ReplayMetrics(
        days=days,
        outcome_days=outcome_days,
        catastrophic_rate=round(catastrophic / outcome_days, 6) if outcome_days else 0.0,
        switch_rate=round(switches / (days - 1), 6) if days >= 2 else 0.0,
        protect_rate=round(float((directions == Direction.PROTECT.value).mean()), 6),
        calibration_error=calibration_error,
    )


def evaluate_gate(
    candidate: ReplayMetrics,
    active: ReplayMetrics,
    *,
    min_days: int,
) -> GateDecision:
    """Monotonic non-regression: catastrophic and switch rates may not rise."""
    if candidate.days < min_days:
        return GateDecision(False, "INSUFFICIENT_DAYS", f"{candidate.days} < {min_days} days")
    if candidate.catastrophic_rate > active.catastrophic_rate:
        return GateDecision(
            False,
            "CATASTROPHIC_RATE_REGRESSION",
            f"{candidate.catastrophic_rate} > {active.catastrophic_rate}",
        )
    if candidate.switch_rate > active.switch_rate:
        return GateDecision(False, "SWITCH_RATE_REGRESSION", f"{candidate.switch_rate} > {active.switch_rate}")
    return GateDecision(True, "APPROVED")


def candidate_grid(active: PolicyParams) -> list[PolicyParams]:
    """Bounded neighbourhood of the active thresholds, in deterministic order."""
    grid: list[PolicyParams] = []
    for offset, multiplier in itertools.product(CONCENTRATION_OFFSETS, TREND_MULTIPLIERS):
        concentration = round(active.high_concentration_threshold + offset, 4)
        if not 0.05 <= concentration <= 1.0:
            continue
        grid.append(
            replace(
                active,
                high_concentration_threshold=concentration,
                trend_down_threshold_usd=round(active.trend_down_threshold_usd * multiplier, 6),
            )
        )
    return grid


def _distance(params: PolicyParams, active: PolicyParams) -> float:
    return abs(params.high_concentration_threshold - active.high_concentration_threshold) + abs(
        params.trend_down_threshold_usd - active.trend_down_threshold_usd
    )


def derive_candidate(
    signals_by_day: Mapping[date, Optional[DecisionSignals]],
    outcomes: Mapping[date, ReplayOutcome],
    active: PolicyParams,
) -> tuple[PolicyParams, ReplayMetrics]:
    """Pick the grid point with the lowest (catastrophic, switch, calibration) tuple and calibrate it.

    Ties go to the point closest to the active thresholds. The catastrophic
    threshold is held at the active value so every grid point is scored
    against the same yardstick.
    """
    drop_pct = active.catastrophic_drop_pct
    scored = []
    for params in candidate_grid(active):
        metrics = compute_replay_metrics(replay_directions(signals_by_day, params), outcomes, drop_pct)
        scored.append((metrics.objective(), _distance(params, active), params))
    _, _, best = min(scored, key=lambda item: (item[0], item[1]))

    decisions = replay_directions(signals_by_day, best)
    frame = _labelled_frame(decisions, outcomes, drop_pct)
    frame = frame.loc[frame["correct"].notna()]
    curve = fit_calibration_curve(
        frame["raw_confidence"].to_numpy(dtype=float),
        frame["correct"].astype(bool).to_numpy(dtype=float),
    )
    candidate = replace(best, calibration_curve=curve or active.calibration_curve)
    return candidate, compute_replay_metrics(replay_directions(signals_by_day, candidate), outcomes, drop_pct)


def load_history(
    db: PipelineDatabase,
    *,
    tenant_id: str,
    channel_id: str,
    window_start: date,
    window_end: date,
) -> list[HistoryDay]:
    """Non-degraded directive days in the window joined to their outcomes."""
    rows = db.fetch_all(
        """
        SELECT d.as_of_date, d.direction,
               o.decision_date AS outcome_decision_date,
               o.revenue_change_pct, o.new_top_asset_flag
        FROM decision_daily AS d
        LEFT JOIN decision_outcome AS o
          ON o.tenant_id = d.tenant_id
         AND o.channel_id = d.channel_id
         AND o.decision_date = d.as_of_date
        WHERE d.tenant_id = :tenant_id
          AND d.channel_id = :channel_id
          AND d.as_of_date BETWEEN :window_start AND :window_end
          AND d.degraded = FALSE
        ORDER BY d.as_of_date ASC
        """,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "window_start": window_start,
            "window_end": window_end,
        },
    )
    history: list[HistoryDay] = []
    for row in rows:
        outcome = None
        if row.get("outcome_decision_date") is not None:
            change = row.get("revenue_change_pct")
            outcome = ReplayOutcome(
                revenue_change_pct=float(change) if change is not None else None,
                new_top_asset_flag=bool(row.get("new_top_asset_flag")),
            )
        history.append(
            HistoryDay(
                decision_date=row["as_of_date"],
                direction=str(getattr(row["direction"], "value", row["direction"])),
                outcome=outcome,
            )
        )
    return history


def candidate_version_id(channel_id: str, target_date: date, params: PolicyParams) -> str:
    return f"cand-{channel_id}-{target_date.strftime('%Y%m%d')}-{params.params_hash()[:12]}"


def _metric(value: float) -> Decimal:
    return Decimal(str(round(value, 6)))


def persist_eval_report(
    db: PipelineDatabase,
    *,
    tenant_id: str,
    channel_id: str,
    candidate_version_id: str,
    active_version_id: str,
    window_start: date,
    window_end: date,
    candidate: ReplayMetrics,
    active: ReplayMetrics,
    decision: GateDecision,
    clock: PipelineClock,
) -> bool:
    """Write the evaluation report once; a retried run leaves the first report in place."""
    params: dict[str, Any] = {
        "tenant_id": tenant_id,
        "candidate_version_id": candidate_version_id,
        "active_version_id": active_version_id,
        "channel_id": channel_id,
        "window_start_date": window_start,
        "window_end_date": window_end,
        "days": candidate.days,
        "outcome_days": candidate.outcome_days,
        "approved": decision.approved,
        "reason_code": decision.reason_code,
        "created_at": clock.now_utc(),
    }
    for prefix, metrics in (("candidate", candidate), ("active", active)):
        params[f"{prefix}_catastrophic_rate"] = _metric(metrics.catastrophic_rate)
        params[f"{prefix}_switch_rate"] = _metric(metrics.switch_rate)
        params[f"{prefix}_protect_rate"] = _metric(metrics.protect_rate)
        params[f"{prefix}_calibration_error"] = _metric(metrics.calibration_error)
    params["row_hash"] = stable_hash(
        (
            "policy_eval_report",
            tenant_id,
            candidate_version_id,
            active_version_id,
            window_start,
            window_end,
            candidate.objective(),
            active.objective(),
            decision.approved,
            decision.reason_code,
        )
    )
    row = db.fetch_one(
        """
        INSERT INTO policy_eval_report (
            tenant_id, candidate_version_id, active_version_id, channel_id,
            window_start_date, window_end_date, days, outcome_days,
            candidate_catastrophic_rate, candidate_switch_rate,
            candidate_protect_rate, candidate_calibration_error,
            active_catastrophic_rate, active_switch_rate,
            active_protect_rate, active_calibration_error,
            approved, reason_code, created_at, row_hash
        ) VALUES (
            :tenant_id, :candidate_version_id, :active_version_id, :channel_id,
            :window_start_date, :window_end_date, :days, :outcome_days,
            :candidate_catastrophic_rate, :candidate_switch_rate,
            :candidate_protect_rate, :candidate_calibration_error,
            :active_catastrophic_rate, :active_switch_rate,
            :active_protect_rate, :active_calibration_error,
            :approved, :reason_code, :created_at, :row_hash
        )
        ON CONFLICT (tenant_id, candidate_version_id) DO NOTHING
        RETURNING candidate_version_id
        """,
        params,
    )
    return row is not None


def run_replay_gate(
    db: PipelineDatabase,
    provider: MetricsFactsProvider,
    *,
    tenant_id: str,
    channel_id: str,
    target_date: date,
    window_weeks: int = 8,
    min_days: int = 28,
    auto_activate: bool = True,
    clock: PipelineClock | None = None,
) -> ReplayGateResult:
    """Weekly task body for one (tenant, channel)."""
    clock = clock or PipelineClock()
    store = PolicyStore(db, clock=clock)
    active = store.ensure_baseline(tenant_id)
    window_start, window_end = replay_window(target_date, window_weeks)

    history = load_history(
        db,
        tenant_id=tenant_id,
        channel_id=channel_id,
        window_start=window_start,
        window_end=window_end,
    )
    base = dict(
        tenant_id=tenant_id,
        channel_id=channel_id,
        window_start=window_start,
        window_end=window_end,
        active_version_id=active.version_id,
    )
    if not history:
        logger.info("Replay gate %s/%s: no directive history in window", tenant_id, channel_id)
        return ReplayGateResult(
            **base,
            candidate_version_id=None,
            decision=GateDecision(False, "INSUFFICIENT_DAYS", f"0 < {min_days} days"),
            active_metrics=None,
            candidate_metrics=None,
        )

    decision_dates = [day.decision_date for day in history]
    outcomes = {day.decision_date: day.outcome for day in history if day.outcome is not None}
    facts_start, _ = decision_window(decision_dates[0])
    facts = provider.fetch_daily_facts(tenant_id, channel_id, facts_start, window_end)

    signals_by_day = replay_signals(facts, decision_dates, active.params)
    active_metrics = compute_replay_metrics(
        replay_directions(signals_by_day, active.params),
        outcomes,
        active.params.catastrophic_drop_pct,
    )
    candidate_params, candidate_metrics = derive_candidate(signals_by_day, outcomes, active.params)

    if candidate_params.params_hash() == active.params.params_hash():
        logger.info("Replay gate %s/%s: candidate equals active %s", tenant_id, channel_id, active.version_id)
        return ReplayGateResult(
            **base,
            candidate_version_id=None,
            decision=GateDecision(False, "CANDIDATE_UNCHANGED"),
            active_metrics=active_metrics,
            candidate_metrics=candidate_metrics,
        )

    decision = evaluate_gate(candidate_metrics, active_metrics, min_days=min_days)
    version_id = candidate_version_id(channel_id, target_date, candidate_params)
    store.create_version(
        tenant_id,
        version_id,
        candidate_params,
        created_by=PolicyCreator.SYSTEM.value,
        parent_version_id=active.version_id,
    )
    persist_eval_report(
        db,
        tenant_id=tenant_id,
        channel_id=channel_id,
        candidate_version_id=version_id,
        active_version_id=active.version_id,
        window_start=window_start,
        window_end=window_end,
        candidate=candidate_metrics,
        active=active_metrics,
        decision=decision,
        clock=clock,
    )

    activation = None
    if decision.approved and auto_activate:
        activation = store.activate(
            tenant_id,
            version_id,
            expected_active_version_id=active.version_id,
            reason="replay_gate",
        )
    logger.info(
        "Replay gate %s/%s candidate %s: %s (%s)",
        tenant_id,
        channel_id,
        version_id,
        decision.reason_code,
        activation.reason_code if activation is not None else "not activated",
    )
    return ReplayGateResult(
        **base,
        candidate_version_id=version_id,
        decision=decision,
        active_metrics=active_metrics,
        candidate_metrics=candidate_metrics,
        activation=activation,
    )
