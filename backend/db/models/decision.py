"""Daily directive and realized outcome model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CHAR,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import direction_enum

logger = logging.getLogger(__name__)


class DecisionDaily(Base):
    """Immutable daily directive, one per tenant/channel/as-of date."""

    __tablename__ = "decision_daily"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "channel_id", "as_of_date", name="pk_decision_daily"),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_decision_daily_confidence_range",
        ),
        CheckConstraint(
            "jsonb_typeof(evidence) = 'array' AND "
            "jsonb_typeof(forbidden_actions) = 'array' AND "
            "jsonb_typeof(reevaluate_triggers) = 'array'",
            name="ck_decision_daily_lists_are_arrays",
        ),
        Index("idx_decision_daily_tenant_date", "tenant_id", "as_of_date"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    direction: Mapped[str] = mapped_column(direction_enum, nullable=False)
    confidence: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    evidence: Mapped[list[Any]] = mapped_column(JSONB, nullable=False)
    forbidden_actions: Mapped[list[Any]] = mapped_column(JSONB, nullable=False)
    reevaluate_triggers: Mapped[list[Any]] = mapped_column(JSONB, nullable=False)
    signals: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    policy_version_id: Mapped[str | None] = mapped_column(Text)
    degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("FALSE"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)


class DecisionOutcome(Base):
    """Realized revenue outcome observed one horizon after a directive."""

    __tablename__ = "decision_outcome"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "channel_id", "decision_date", name="pk_decision_outcome"),
        ForeignKeyConstraint(
            ["tenant_id", "channel_id", "decision_date"],
            ["decision_daily.tenant_id", "decision_daily.channel_id", "decision_daily.as_of_date"],
            name="fk_decision_outcome_decision",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("horizon_days >= 1", name="ck_decision_outcome_horizon_pos"),
        CheckConstraint(
            "outcome_date = decision_date + horizon_days",
            name="ck_decision_outcome_date_matches_horizon",
        ),
        CheckConstraint(
            "pre_revenue_usd >= 0 AND post_revenue_usd >= 0",
            name="ck_decision_outcome_revenue_nonneg",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    decision_date: Mapped[date] = mapped_column(Date, nullable=False)
    outcome_date: Mapped[date] = mapped_column(Date, nullable=False)
    horizon_days: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(direction_enum, nullable=False)
    pre_revenue_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    post_revenue_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    revenue_change_pct: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))
    catastrophic_flag: Mapped[bool] = mapped_column(Boolean, nullable=False)
    new_top_asset_flag: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
