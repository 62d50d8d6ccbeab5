"""Outcome labelling for past directives (the ``backfill_outcome`` task)."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
import logging
from typing import Optional, Sequence

from pipeline.common import PipelineClock, PipelineDatabase, stable_hash
from pipeline.errors import DataInsufficientError
from pipeline.metrics import MetricFact, MetricsFactsProvider
from pipeline.policy_store import PolicyStore

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 7


@dataclass(frozen=True)
class OutcomeLabel:
    """Realized outcome of one decision over its horizon."""

    pre_revenue_usd: float
    post_revenue_usd: float
    revenue_change_pct: Optional[float]
    catastrophic_flag: bool
    new_top_asset_flag: bool


def compute_outcome_label(
    pre_revenue_usd: float,
    post_revenue_usd: float,
    pre_top_asset_ids: Sequence[str],
    post_top_asset_ids: Sequence[str],
    *,
    catastrophic_drop_pct: float = -0.30,
) -> OutcomeLabel:
    """Label revenue change; no percentage (and never catastrophic) without pre-window revenue."""
    change = (post_revenue_usd - pre_revenue_usd) / pre_revenue_usd if pre_revenue_usd > 0 else None
    pre_set = set(pre_top_asset_ids)
    return OutcomeLabel(
        pre_revenue_usd=pre_revenue_usd,
        post_revenue_usd=post_revenue_usd,
        revenue_change_pct=round(change, 6) if change is not None else None,
        catastrophic_flag=change is not None and change < catastrophic_drop_pct,
        new_top_asset_flag=any(asset_id not in pre_set for asset_id in post_top_asset_ids),
    )


def top_assets(facts: Sequence[MetricFact], top_n: int) -> list[str]:
    """Asset ids ranked by summed revenue (ties by id)."""
    totals: dict[str, float] = defaultdict(float)
    for fact in facts:
        totals[fact.asset_id] += fact.revenue_usd
    ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [asset_id for asset_id, revenue in ranked[: max(1, top_n)] if revenue > 0]


def outcome_windows(decision_date: date, horizon_days: int) -> tuple[tuple[date, date], tuple[date, date]]:
    """Pre window [D-7, D-1] and post window [D, D+horizon-1]."""
    pre = (decision_date - timedelta(days=7), decision_date - timedelta(days=1))
    post = (decision_date, decision_date + timedelta(days=horizon_days - 1))
    return pre, post


@dataclass(frozen=True)
class OutcomeBackfillResult:
    decision_date: date
    label: OutcomeLabel
    written: bool


def run_outcome_backfill(
    db: PipelineDatabase,
    provider: MetricsFactsProvider,
    *,
    tenant_id: str,
    channel_id: str,
    outcome_date: date,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    clock: PipelineClock | None = None,
) -> OutcomeBackfillResult:
    """Label the directive issued ``horizon_days`` before ``outcome_date``.

    A missing directive or an unsettled post window is a data gap: the
    ``DataInsufficientError`` raised here sends the task back for retry.
    """
    clock = clock or PipelineClock()
    today = clock.now_utc().date()
    decision_date = outcome_date - timedelta(days=horizon_days)
    (pre_start, pre_end), (post_start, post_end) = outcome_windows(decision_date, horizon_days)
    if post_end >= today:
        raise DataInsufficientError(f"post window ending {post_end.isoformat()} is not settled yet")

    directive = db.fetch_one(
        """
        SELECT direction
        FROM decision_daily
        WHERE tenant_id = :tenant_id
          AND channel_id = :channel_id
          AND as_of_date = :decision_date
        """,
        {"tenant_id": tenant_id, "channel_id": channel_id, "decision_date": decision_date},
    )
    if directive is None:
        raise DataInsufficientError(f"no directive for {decision_date.isoformat()} yet")

    active = PolicyStore(db, clock=clock).ensure_baseline(tenant_id)
    pre_facts = provider.fetch_daily_facts(tenant_id, channel_id, pre_start, pre_end)
    post_facts = provider.fetch_daily_facts(tenant_id, channel_id, post_start, post_end)
    top_n = active.params.top_n_for_new_asset
    label = compute_outcome_label(
        sum(fact.revenue_usd for fact in pre_facts),
        sum(fact.revenue_usd for fact in post_facts),
        top_assets(pre_facts, top_n),
        top_assets(post_facts, top_n),
        catastrophic_drop_pct=active.params.catastrophic_drop_pct,
    )

    direction = str(getattr(directive["direction"], "value", directive["direction"]))
    row = db.fetch_one(
        """
        INSERT INTO decision_outcome (
            tenant_id, channel_id, decision_date, outcome_date, horizon_days,
            direction, pre_revenue_usd, post_revenue_usd, revenue_change_pct,
            catastrophic_flag, new_top_asset_flag, created_at, row_hash
        ) VALUES (
            :tenant_id, :channel_id, :decision_date, :outcome_date, :horizon_days,
            CAST(:direction AS direction_enum), :pre_revenue_usd, :post_revenue_usd, :revenue_change_pct,
            :catastrophic_flag, :new_top_asset_flag, :created_at, :row_hash
        )
        ON CONFLICT (tenant_id, channel_id, decision_date) DO NOTHING
        RETURNING decision_date
        """,
        {
            "tenant_id": tenant_id,
            "channel_id": channel_id,
            "decision_date": decision_date,
            "outcome_date": outcome_date,
            "horizon_days": horizon_days,
            "direction": direction,
            "pre_revenue_usd": Decimal(str(round(label.pre_revenue_usd, 6))),
            "post_revenue_usd": Decimal(str(round(label.post_revenue_usd, 6))),
            "revenue_change_pct": Decimal(str(label.revenue_change_pct)) if label.revenue_change_pct is not None else None,
            "catastrophic_flag": label.catastrophic_flag,
            "new_top_asset_flag": label.new_top_asset_flag,
            "created_at": clock.now_utc(),
            "row_hash": stable_hash(
                (
                    "decision_outcome",
                    tenant_id,
                    channel_id,
                    decision_date,
                    horizon_days,
                    label.revenue_change_pct,
                    label.catastrophic_flag,
                    label.new_top_asset_flag,
                )
            ),
        },
    )
    written = row is not None
    if label.catastrophic_flag:
        logger.warning(
            "Catastrophic outcome for %s/%s decision %s (%s, change=%s)",
            tenant_id,
            channel_id,
            decision_date.isoformat(),
            direction,
            label.revenue_change_pct,
        )
    return OutcomeBackfillResult(decision_date=decision_date, label=label, written=written)
