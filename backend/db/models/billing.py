"""Plan, subscription, override, billing event and usage ledger model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    CHAR,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import subscription_status_enum

logger = logging.getLogger(__name__)


class Plan(Base):
    """Billing plan with its stored entitlement record."""

    __tablename__ = "plan"
    __table_args__ = (
        PrimaryKeyConstraint("plan_id", name="pk_plan"),
        CheckConstraint("jsonb_typeof(entitlements) = 'object'", name="ck_plan_entitlements_object"),
    )

    plan_id: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    entitlements: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class Subscription(Base):
    """Current subscription state per tenant, reflected from billing events."""

    __tablename__ = "subscription"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", name="pk_subscription"),
        CheckConstraint(
            "status <> 'trialing' OR trial_started_at IS NOT NULL",
            name="ck_subscription_trial_has_start",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(subscription_status_enum, nullable=False)
    plan_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("plan.plan_id", name="fk_subscription_plan", onupdate="RESTRICT", ondelete="RESTRICT"),
    )
    trial_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    provider: Mapped[str | None] = mapped_column(Text)
    provider_subscription_id: Mapped[str | None] = mapped_column(Text)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class EntitlementOverride(Base):
    """Per-tenant overrides applied on top of plan entitlements."""

    __tablename__ = "entitlement_override"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", name="pk_entitlement_override"),
        CheckConstraint("jsonb_typeof(overrides) = 'object'", name="ck_entitlement_override_object"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    overrides: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class BillingEvent(Base):
    """Append-only billing provider events, idempotent by provider event id."""

    __tablename__ = "billing_event"
    __table_args__ = (
        PrimaryKeyConstraint("event_id", name="pk_billing_event"),
        UniqueConstraint("provider", "provider_event_id", name="uq_billing_event_provider_event"),
        Index("idx_billing_event_tenant", "tenant_id", "received_at"),
    )

    event_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    provider_event_id: Mapped[str] = mapped_column(Text, nullable=False)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_status: Mapped[str | None] = mapped_column(subscription_status_enum)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)


class UsageEvent(Base):
    """Budget usage ledger, idempotent by (tenant, event type, key)."""

    __tablename__ = "usage_event"
    __table_args__ = (
        PrimaryKeyConstraint("usage_id", name="pk_usage_event"),
        UniqueConstraint(
            "tenant_id",
            "event_type",
            "idempotency_key",
            name="uq_usage_event_tenant_type_key",
        ),
        CheckConstraint("units >= 0", name="ck_usage_event_units_nonneg"),
        CheckConstraint("cost_usd >= 0", name="ck_usage_event_cost_nonneg"),
        Index("idx_usage_event_tenant_date", "tenant_id", "usage_date"),
    )

    usage_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(18, 8), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
