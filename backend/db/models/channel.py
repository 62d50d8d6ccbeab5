"""Channel registry and settled daily metric fact model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base

logger = logging.getLogger(__name__)


class ChannelConnection(Base):
    """Monitored (tenant, channel) pair enumerated by the dispatcher."""

    __tablename__ = "channel_connection"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "channel_id", name="pk_channel_connection"),
        CheckConstraint(
            "length(btrim(tenant_id)) > 0 AND length(btrim(channel_id)) > 0",
            name="ck_channel_connection_ids_not_blank",
        ),
        Index(
            "idx_channel_connection_active",
            "tenant_id",
            "channel_id",
            postgresql_where=text("is_active = TRUE"),
        ),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("TRUE"))
    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class ChannelMetricDaily(Base):
    """Per-asset daily revenue/impression facts supplied by the data-sync collaborator."""

    __tablename__ = "channel_metric_daily"
    __table_args__ = (
        PrimaryKeyConstraint(
            "tenant_id",
            "channel_id",
            "metric_date",
            "asset_id",
            name="pk_channel_metric_daily",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "channel_id"],
            ["channel_connection.tenant_id", "channel_connection.channel_id"],
            name="fk_channel_metric_daily_channel",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("revenue_usd >= 0", name="ck_channel_metric_daily_revenue_nonneg"),
        CheckConstraint("impressions >= 0", name="ck_channel_metric_daily_impressions_nonneg"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    asset_id: Mapped[str] = mapped_column(Text, nullable=False)
    revenue_usd: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    is_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("FALSE"))
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
