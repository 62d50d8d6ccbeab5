"""Metric facts provider contract and the settled-facts SQL implementation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Protocol, Sequence

from pipeline.common import PipelineDatabase, parse_date


@dataclass(frozen=True)
class MetricFact:
    """Normalized per-asset daily revenue fact for one channel."""

    metric_date: date
    asset_id: str
    revenue_usd: float
    impressions: int


class MetricsFactsProvider(Protocol):
    """Data-sync collaborator supplying settled daily facts."""

    def fetch_daily_facts(self, tenant_id: str, channel_id: str, start: date, end: date) -> Sequence[MetricFact]:
        """Fetch facts with ``start <= metric_date <= end``."""

    def has_any_facts(self, tenant_id: str, channel_id: str) -> bool:
        """Return whether the channel has ever produced a fact."""


class SqlMetricsFactsProvider:
    """Reads settled facts from ``channel_metric_daily``."""

    def __init__(self, db: PipelineDatabase, *, settled_only: bool = True) -> None:
        self._db = db
        self._settled_only = settled_only

    def fetch_daily_facts(self, tenant_id: str, channel_id: str, start: date, end: date) -> list[MetricFact]:
        rows = self._db.fetch_all(
            """
            SELECT metric_date, asset_id, revenue_usd, impressions
            FROM channel_metric_daily
            WHERE tenant_id = :tenant_id
              AND channel_id = :channel_id
              AND metric_date BETWEEN :start_date AND :end_date
              AND (is_settled = TRUE OR :include_unsettled)
            ORDER BY metric_date ASC, asset_id ASC
            """,
            {
                "tenant_id": tenant_id,
                "channel_id": channel_id,
                "start_date": start,
                "end_date": end,
                "include_unsettled": not self._settled_only,
            },
        )
        return [
            MetricFact(
                metric_date=parse_date(row["metric_date"]),
                asset_id=str(row["asset_id"]),
                revenue_usd=float(row["revenue_usd"]),
                impressions=int(row["impressions"] or 0),
            )
            for row in rows
        ]

    def has_any_facts(self, tenant_id: str, channel_id: str) -> bool:
        row = self._db.fetch_one(
            """
            SELECT 1 AS present
            FROM channel_metric_daily
            WHERE tenant_id = :tenant_id
              AND channel_id = :channel_id
            LIMIT 1
            """,
            {"tenant_id": tenant_id, "channel_id": channel_id},
        )
        return row is not None
