"""PostgreSQL native enum contracts for the directive pipeline schema."""

from __future__ import annotations

import enum
import logging

from sqlalchemy.dialects.postgresql import ENUM as PGEnum

logger = logging.getLogger(__name__)


class JobType(str, enum.Enum):
    """Kind of fan-out work carried by a queue task."""

    DAILY_CHANNEL = "daily_channel"
    WEEKLY_CHANNEL = "weekly_channel"
    BACKFILL_OUTCOME = "backfill_outcome"


class TaskStatus(str, enum.Enum):
    """Queue task lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"


class Direction(str, enum.Enum):
    """Daily directive value."""

    EXPLOIT = "EXPLOIT"
    EXPLORE = "EXPLORE"
    PROTECT = "PROTECT"


class SubscriptionStatus(str, enum.Enum):
    """Normalized subscription state backing entitlement resolution."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    DOWNGRADED = "downgraded"


class PolicyCreator(str, enum.Enum):
    """Origin of a policy version."""

    SYSTEM = "system"
    MANUAL = "manual"


TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({TaskStatus.SUCCEEDED.value, TaskStatus.DEAD.value})
BUDGET_SENSITIVE_JOB_TYPES: frozenset[str] = frozenset(
    {JobType.DAILY_CHANNEL.value, JobType.WEEKLY_CHANNEL.value}
)

job_type_enum = PGEnum(JobType, name="job_type_enum", values_callable=lambda e: [m.value for m in e])
task_status_enum = PGEnum(TaskStatus, name="task_status_enum", values_callable=lambda e: [m.value for m in e])
direction_enum = PGEnum(Direction, name="direction_enum", values_callable=lambda e: [m.value for m in e])
subscription_status_enum = PGEnum(
    SubscriptionStatus,
    name="subscription_status_enum",
    values_callable=lambda e: [m.value for m in e],
)
policy_creator_enum = PGEnum(
    PolicyCreator,
    name="policy_creator_enum",
    values_callable=lambda e: [m.value for m in e],
)
