"""Policy version, active pointer and evaluation report model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CHAR,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKeyConstraint,
    Identity,
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
from backend.db.enums import policy_creator_enum

logger = logging.getLogger(__name__)


class PolicyVersion(Base):
    """Immutable decision-engine parameter set."""

    __tablename__ = "policy_version"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "version_id", name="pk_policy_version"),
        CheckConstraint("length(btrim(version_id)) > 0", name="ck_policy_version_id_not_blank"),
        CheckConstraint("jsonb_typeof(params) = 'object'", name="ck_policy_version_params_object"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    version_id: Mapped[str] = mapped_column(Text, nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    params_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    created_by: Mapped[str] = mapped_column(policy_creator_enum, nullable=False)
    parent_version_id: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class PolicyActivePointer(Base):
    """Single-row-per-tenant active version pointer updated by compare-and-swap."""

    __tablename__ = "policy_active_pointer"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", name="pk_policy_active_pointer"),
        ForeignKeyConstraint(
            ["tenant_id", "active_version_id"],
            ["policy_version.tenant_id", "policy_version.version_id"],
            name="fk_policy_active_pointer_active",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "archived_version_id"],
            ["policy_version.tenant_id", "policy_version.version_id"],
            name="fk_policy_active_pointer_archived",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("swap_count >= 0", name="ck_policy_active_pointer_swap_count_nonneg"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    active_version_id: Mapped[str] = mapped_column(Text, nullable=False)
    archived_version_id: Mapped[str | None] = mapped_column(Text)
    swap_count: Mapped[int] = mapped_column(BigInteger, nullable=False, server_default=text("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class PolicyActivationLog(Base):
    """Append-only history of every active pointer swap."""

    __tablename__ = "policy_activation_log"
    __table_args__ = (
        PrimaryKeyConstraint("activation_id", name="pk_policy_activation_log"),
        CheckConstraint(
            "reason IN ('bootstrap', 'replay_gate', 'manual', 'rollback')",
            name="ck_policy_activation_log_reason",
        ),
        Index("idx_policy_activation_log_tenant", "tenant_id", "activated_at"),
    )

    activation_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    from_version_id: Mapped[str | None] = mapped_column(Text)
    to_version_id: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)


class PolicyEvalReport(Base):
    """Immutable replay-gate evaluation of one candidate version."""

    __tablename__ = "policy_eval_report"
    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "candidate_version_id", name="pk_policy_eval_report"),
        ForeignKeyConstraint(
            ["tenant_id", "candidate_version_id"],
            ["policy_version.tenant_id", "policy_version.version_id"],
            name="fk_policy_eval_report_candidate",
            onupdate="RESTRICT",
            ondelete="RESTRICT",
        ),
        CheckConstraint("window_start_date <= window_end_date", name="ck_policy_eval_report_window"),
        CheckConstraint("days >= 0", name="ck_policy_eval_report_days_nonneg"),
    )

    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    candidate_version_id: Mapped[str] = mapped_column(Text, nullable=False)
    active_version_id: Mapped[str] = mapped_column(Text, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    window_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    window_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    days: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome_days: Mapped[int] = mapped_column(Integer, nullable=False)
    candidate_catastrophic_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    candidate_switch_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    candidate_protect_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    candidate_calibration_error: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    active_catastrophic_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    active_switch_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    active_protect_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    active_calibration_error: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason_code: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
