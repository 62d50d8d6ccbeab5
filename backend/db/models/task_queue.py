"""Task queue and operational event log model definitions."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    CHAR,
    CheckConstraint,
    Date,
    DateTime,
    Identity,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import job_type_enum, task_status_enum

logger = logging.getLogger(__name__)


class JobTask(Base):
    """Durable fan-out work item with dedupe, lease and retry state."""

    __tablename__ = "job_task"
    __table_args__ = (
        PrimaryKeyConstraint("task_id", name="pk_job_task"),
        UniqueConstraint("dedupe_key", name="uq_job_task_dedupe_key"),
        CheckConstraint("attempt >= 0", name="ck_job_task_attempt_nonneg"),
        CheckConstraint("max_attempts >= 1", name="ck_job_task_max_attempts_pos"),
        CheckConstraint(
            "length(btrim(tenant_id)) > 0 AND length(btrim(channel_id)) > 0",
            name="ck_job_task_ids_not_blank",
        ),
        CheckConstraint(
            "status <> 'running' OR (locked_by IS NOT NULL AND lease_expires_at IS NOT NULL)",
            name="ck_job_task_running_has_lease",
        ),
        Index(
            "idx_job_task_claimable",
            "not_before",
            "task_id",
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
        Index(
            "idx_job_task_lease_expiry",
            "lease_expires_at",
            postgresql_where=text("status = 'running'"),
        ),
        Index("idx_job_task_tenant_channel", "tenant_id", "channel_id", "target_date"),
    )

    task_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(Text, nullable=False)
    job_type: Mapped[str] = mapped_column(job_type_enum, nullable=False)
    channel_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(task_status_enum, nullable=False, server_default=text("'pending'"))
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("3"))
    not_before: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    locked_by: Mapped[str | None] = mapped_column(Text)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("now()"),
    )


class PipelineEventLog(Base):
    """Append-only operational events written by worker ticks and dispatch."""

    __tablename__ = "pipeline_event_log"
    __table_args__ = (
        PrimaryKeyConstraint("event_id", name="pk_pipeline_event_log"),
        CheckConstraint("length(btrim(event_type)) > 0", name="ck_pipeline_event_log_type_not_blank"),
        Index("idx_pipeline_event_log_ts", "event_ts_utc"),
    )

    event_id: Mapped[int] = mapped_column(BigInteger, Identity(always=True), primary_key=True)
    event_ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    row_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
