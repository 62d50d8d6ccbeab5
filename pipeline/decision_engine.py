"""Daily directive engine: metric window -> signals -> first-matching rule.

The rule set is frozen. Only the numeric thresholds and weights in
``PolicyParams`` change between policy versions; ``RULES`` is evaluated in
order and the first predicate that holds decides the direction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
import logging
from typing import Any, Callable, Optional, Sequence

import numpy as np
import pandas as pd

from backend.db.enums import Direction
from pipeline.common import PipelineClock, PipelineDatabase, canonical_json, date_range, stable_hash
from pipeline.errors import DataInsufficientError
from pipeline.metrics import MetricFact, MetricsFactsProvider
from pipeline.policy_store import PolicyParams, PolicyStore

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7


def decision_window(as_of_date: date, days: int = WINDOW_DAYS) -> tuple[date, date]:
    """Trailing window ending the day before ``as_of_date`` (never the unsettled day)."""
    return as_of_date - timedelta(days=days), as_of_date - timedelta(days=1)


@dataclass(frozen=True)
class DecisionSignals:
    """Signals derived from one metric window; never persisted on their own."""

    window_start: date
    window_end: date
    days_in_window: int
    days_with_data: int
    total_revenue_usd: float
    top_asset_id: str
    top_asset_revenue_usd: float
    revenue_concentration: float
    dominant_asset_trend: float
    system_stability: float
    new_asset_emergence: bool

    @property
    def coverage(self) -> float:
        return self.days_with_data / max(1, self.days_in_window)

    def to_json(self) -> dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "days_in_window": self.days_in_window,
            "days_with_data": self.days_with_data,
            "total_revenue_usd": round(self.total_revenue_usd, 6),
            "top_asset_id": self.top_asset_id,
            "top_asset_revenue_usd": round(self.top_asset_revenue_usd, 6),
            "revenue_concentration": round(self.revenue_concentration, 6),
            "dominant_asset_trend": round(self.dominant_asset_trend, 6),
            "system_stability": round(self.system_stability, 6),
            "new_asset_emergence": self.new_asset_emergence,
        }


@dataclass(frozen=True)
class DirectiveComputation:
    """Pure decision result ready for persistence."""

    as_of_date: date
    direction: str
    rule: str
    raw_confidence: float
    confidence: float
    evidence: tuple[str, ...]
    forbidden_actions: tuple[str, ...]
    reevaluate_triggers: tuple[str, ...]
    signals: Optional[DecisionSignals]
    degraded: bool = False
    policy_version_id: Optional[str] = None

    def signals_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"rule": self.rule, "raw_confidence": self.raw_confidence}
        if self.signals is not None:
            payload.update(self.signals.to_json())
        return payload


Predicate = Callable[[Optional[DecisionSignals], PolicyParams], bool]

RULES: tuple[tuple[str, Predicate, Direction], ...] = (
    ("insufficient_data", lambda s, p: s is None, Direction.PROTECT),
    (
        "concentrated_rising",
        lambda s, p: s.revenue_concentration >= p.high_concentration_threshold and s.dominant_asset_trend > 0,
        Direction.EXPLOIT,
    ),
    (
        "falling_or_emerging",
        lambda s, p: s.dominant_asset_trend < p.trend_down_threshold_usd or s.new_asset_emergence,
        Direction.EXPLORE,
    ),
    ("default_safe", lambda s, p: True, Direction.PROTECT),
)

GUIDANCE: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    Direction.EXPLOIT.value: (
        (
            "Avoid changing multiple variables at once (topic + format + cadence)",
            "Avoid major pivots while the top asset is accelerating",
        ),
        (
            "If top asset share drops materially, reconsider EXPLOIT",
            "If 2-3 releases fail to sustain, revisit direction",
        ),
    ),
    Direction.EXPLORE.value: (
        (
            "Do not bet the whole channel on one unproven experiment",
            "Limit experiments to 3-5 samples before judging",
        ),
        (
            "If a new asset enters the top ranks again, continue exploration",
            "If the top asset declines sharply, switch to PROTECT",
        ),
    ),
    Direction.PROTECT.value: (
        (
            "Avoid high-risk strategy changes without evidence",
            "Prefer small optimizations (titles/thumbnails) over big pivots",
        ),
        (
            "Re-evaluate after the next successful sync window",
            "If revenue stabilizes and concentration rises, consider EXPLOIT",
        ),
    ),
}


def _facts_frame(facts: Sequence[MetricFact], window_start: date, window_end: date) -> pd.DataFrame:
    frame = pd.DataFrame(
        [(fact.metric_date, fact.asset_id, float(fact.revenue_usd)) for fact in facts],
        columns=["metric_date", "asset_id", "revenue_usd"],
    )
    if frame.empty:
        return frame
    in_window = (frame["metric_date"] >= window_start) & (frame["metric_date"] <= window_end)
    frame = frame.loc[in_window].drop_duplicates()
    if (frame["revenue_usd"] < 0).any():
        raise DataInsufficientError("conflicting facts: negative revenue reported")
    if frame.duplicated(subset=["metric_date", "asset_id"]).any():
        raise DataInsufficientError("conflicting facts: same asset/day reported with different revenue")
    return frame


def _top_assets(day_frame: pd.DataFrame, top_n: int) -> list[str]:
    ranked = day_frame.sort_values(["revenue_usd", "asset_id"], ascending=[False, True])
    return ranked["asset_id"].head(top_n).tolist()


def compute_signals(
    facts: Sequence[MetricFact],
    window_start: date,
    window_end: date,
    params: PolicyParams,
) -> DecisionSignals:
    """Derive the four decision signals; raises ``DataInsufficientError`` on gaps or conflicts.

    When the first window day has no facts, every top asset of the last day counts as emerged.
    """
    days = date_range(window_start, window_end)
    frame = _facts_frame(facts, window_start, window_end)
    days_with_data = int(frame["metric_date"].nunique()) if not frame.empty else 0
    if days_with_data < params.min_days_with_data:
        raise DataInsufficientError(f"only {days_with_data} of {len(days)} days have metric facts")

    total_revenue = float(frame["revenue_usd"].sum())
    if total_revenue <= 0:
        raise DataInsufficientError("zero revenue across the window")

    by_asset = (
        frame.groupby("asset_id", as_index=False)["revenue_usd"]
        .sum()
        .sort_values(["revenue_usd", "asset_id"], ascending=[False, True])
    )
    top_asset_id = str(by_asset.iloc[0]["asset_id"])
    top_revenue = float(by_asset.iloc[0]["revenue_usd"])
    if top_revenue <= 0:
        raise DataInsufficientError("no asset earned revenue in the window")

    day_index = pd.Index(days, name="metric_date")
    top_daily = (
        frame.loc[frame["asset_id"] == top_asset_id]
        .groupby("metric_date")["revenue_usd"]
        .sum()
        .reindex(day_index, fill_value=0.0)
        .to_numpy(dtype=float)
    )
    positions = np.arange(len(days), dtype=float)
    trend = float(np.polyfit(positions, top_daily, 1)[0]) if len(days) >= 2 else 0.0

    day_totals = frame.groupby("metric_date")["revenue_usd"].sum().reindex(day_index, fill_value=0.0).to_numpy(dtype=float)
    mean = float(np.mean(day_totals))
    stability = float(np.std(day_totals) / mean) if mean > 0 else 0.0

    top_n = max(1, params.top_n_for_new_asset)
    first_top = set(_top_assets(frame.loc[frame["metric_date"] == window_start], top_n))
    last_top = _top_assets(frame.loc[frame["metric_date"] == window_end], top_n)
    emergence = any(asset_id not in first_top for asset_id in last_top)

    return DecisionSignals(
        window_start=window_start,
        window_end=window_end,
        days_in_window=len(days),
        days_with_data=days_with_data,
        total_revenue_usd=total_revenue,
        top_asset_id=top_asset_id,
        top_asset_revenue_usd=top_revenue,
        revenue_concentration=top_revenue / total_revenue,
        dominant_asset_trend=trend,
        system_stability=stability,
        new_asset_emergence=emergence,
    )


def evaluate_rules(signals: Optional[DecisionSignals], params: PolicyParams) -> tuple[str, Direction]:
    """Return the first matching (rule name, direction)."""
    for name, predicate, direction in RULES:
        if predicate(signals, params):
            return name, direction
    raise AssertionError("default rule must always match")


def confidence_v1(direction: Direction, signals: Optional[DecisionSignals], params: PolicyParams) -> float:
    """Deterministic confidence from rule path consistency with a conservative floor."""
    weights = params.weights
    if signals is None:
        return weights.insufficient_data
    confidence = weights.base + weights.coverage * signals.coverage
    if direction is Direction.EXPLOIT and signals.revenue_concentration >= params.strong_concentration_threshold:
        confidence += weights.exploit_strong_bonus
    if direction is Direction.EXPLORE and signals.new_asset_emergence:
        confidence += weights.explore_emergence_bonus
    if signals.system_stability > params.high_volatility_threshold:
        confidence -= weights.volatility_penalty
    return round(min(weights.ceiling, max(weights.floor, confidence)), 4)


def calibrate_confidence(raw: float, curve: Sequence[tuple[float, float]]) -> float:
    """Map raw confidence through a piecewise-linear calibration curve (identity when empty)."""
    if not curve:
        return round(raw, 4)
    xs = np.array([point[0] for point in curve], dtype=float)
    ys = np.array([point[1] for point in curve], dtype=float)
    return round(float(np.clip(np.interp(raw, xs, ys), 0.0, 1.0)), 4)


def _evidence(signals: DecisionSignals, params: PolicyParams) -> list[str]:
    lines = [
        f"7d revenue: ${signals.total_revenue_usd:.2f}",
        f"Top asset {signals.top_asset_id} share: {signals.revenue_concentration * 100:.0f}%",
        (
            f"Top asset trend ({signals.window_start.isoformat()} -> {signals.window_end.isoformat()}): "
            f"${signals.dominant_asset_trend:.2f}/day"
        ),
        f"New asset emergence (Top-{params.top_n_for_new_asset}): {'yes' if signals.new_asset_emergence else 'no'}",
    ]
    if signals.system_stability > 0:
        lines.append(f"Revenue volatility (std/mean): {signals.system_stability:.2f}")
    return lines


def compute_directive(
    facts: Sequence[MetricFact],
    as_of_date: date,
    params: PolicyParams,
    *,
    policy_version_id: str | None = None,
) -> DirectiveComputation:
    """Pure directive computation for one channel and as-of date."""
    window_start, window_end = decision_window(as_of_date)
    signals: Optional[DecisionSignals]
    gap_reason = ""
    try:
        signals = compute_signals(facts, window_start, window_end, params)
    except DataInsufficientError as exc:
        signals = None
        gap_reason = str(exc)

    rule, direction = evaluate_rules(signals, params)
    raw = confidence_v1(direction, signals, params)
    forbidden, reevaluate = GUIDANCE[direction.value]
    if signals is None:
        evidence = [f"Data insufficient for reliable signals: {gap_reason}"]
        reevaluate = ("After the next complete metrics sync",) + reevaluate
    else:
        evidence = _evidence(signals, params)

    return DirectiveComputation(
        as_of_date=as_of_date,
        direction=direction.value,
        rule=rule,
        raw_confidence=raw,
        confidence=calibrate_confidence(raw, params.calibration_curve),
        evidence=tuple(evidence),
        forbidden_actions=forbidden,
        reevaluate_triggers=reevaluate,
        signals=signals,
        policy_version_id=policy_version_id,
    )


def forced_protect_directive(
    as_of_date: date,
    reason: str,
    *,
    params: PolicyParams | None = None,
    policy_version_id: str | None = None,
) -> DirectiveComputation:
    """Degraded-mode directive written when the tenant's budget is exhausted.

    Confidence is the confidence floor of ``params`` (the active version's weights).
    """
    forbidden, reevaluate = GUIDANCE[Direction.PROTECT.value]
    weights = (params or PolicyParams()).weights
    return DirectiveComputation(
        as_of_date=as_of_date,
        direction=Direction.PROTECT.value,
        rule="budget_exhausted",
        raw_confidence=weights.floor,
        confidence=weights.floor,
        evidence=(f"Budget exhausted: directive forced to PROTECT ({reason})",),
        forbidden_actions=forbidden,
        reevaluate_triggers=("After the daily budget resets",) + reevaluate,
        signals=None,
        degraded=True,
        policy_version_id=policy_version_id,
    )


def persist_directive(
    db: PipelineDatabase,
    *,
    tenant_id: str,
    channel_id: str,
    computation: DirectiveComputation,
    created_at: datetime,
) -> bool:
    """Write the directive once; an existing row for the key is left untouched."""
    row_hash = stable_hash(
        (
            "decision_daily",
            tenant_id,
            channel_id,
            computation.as_of_date,
            computation.direction,
            computation.confidence,
            computation.evidence,
            computation.policy_version_id,
        )
    )
    row = db.fetch_one(
        """
        INSERT INTO decision_daily (
            tenant_id, channel_id, as_of_date, direction, confidence,
            evidence, forbidden_actions, reevaluate_triggers, signals,
            policy_version_id, degraded, created_at, row_hash
        ) VALUES (
            :tenant_id, :channel_id, :as_of_date, CAST(:direction AS direction_enum), :confidence,
            CAST(:evidence AS JSONB), CAST(:forbidden_actions AS JSONB),
            CAST(:reevaluate_triggers AS JSONB), CAST(:signals AS JSONB),
            :policy_version_id, :degraded, :created_at, :row_hash
        )
        ON CONFLICT (tenant_id, channel_id, as_of_date) DO NOTHING
        RETURNING as_of_date
        """,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "as_of_date": computation.as_of_date,
            "direction": computation.direction,
            "confidence": Decimal(str(computation.confidence)),
            "evidence": canonical_json(list(computation.evidence)),
            "forbidden_actions": canonical_json(list(computation.forbidden_actions)),
            "reevaluate_triggers": canonical_json(list(computation.reevaluate_triggers)),
            "signals": canonical_json(computation.signals_json()),
            "policy_version_id": computation.policy_version_id,
            "degraded": computation.degraded,
            "created_at": created_at,
            "row_hash": row_hash,
        },
    )
    return row is not None


@dataclass(frozen=True)
class DailyDecisionResult:
    computation: DirectiveComputation
    written: bool


def run_daily_decision(
    db: PipelineDatabase,
    provider: MetricsFactsProvider,
    *,
    tenant_id: str,
    channel_id: str,
    as_of_date: date,
    degraded_reason: str | None = None,
    clock: PipelineClock | None = None,
) -> DailyDecisionResult:
    """Daily task body: read active policy fresh, compute, upsert one directive."""
    clock = clock or PipelineClock()
    active = PolicyStore(db, clock=clock).ensure_baseline(tenant_id)

    if degraded_reason is not None:
        computation = forced_protect_directive(
            as_of_date, degraded_reason, params=active.params, policy_version_id=active.version_id
        )
    else:
        window_start, window_end = decision_window(as_of_date)
        facts = provider.fetch_daily_facts(tenant_id, channel_id, window_start, window_end)
        computation = compute_directive(facts, as_of_date, active.params, policy_version_id=active.version_id)

    written = persist_directive(
        db,
        tenant_id=tenant_id,
        channel_id=channel_id,
        computation=computation,
        created_at=clock.now_utc(),
    )
    logger.info(
        "Directive %s/%s@%s -> %s (%.2f, rule=%s, written=%s)",
        tenant_id,
        channel_id,
        as_of_date.isoformat(),
        computation.direction,
        computation.confidence,
        computation.rule,
        written,
    )
    return DailyDecisionResult(computation=computation, written=written)
