"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.billing import BillingEvent, EntitlementOverride, Plan, Subscription, UsageEvent
from backend.db.models.channel import ChannelConnection, ChannelMetricDaily
from backend.db.models.decision import DecisionDaily, DecisionOutcome
from backend.db.models.policy import PolicyActivationLog, PolicyActivePointer, PolicyEvalReport, PolicyVersion
from backend.db.models.task_queue import JobTask, PipelineEventLog

logger = logging.getLogger(__name__)

__all__ = [
    "BillingEvent",
    "ChannelConnection",
    "ChannelMetricDaily",
    "DecisionDaily",
    "DecisionOutcome",
    "EntitlementOverride",
    "JobTask",
    "PipelineEventLog",
    "Plan",
    "PolicyActivationLog",
    "PolicyActivePointer",
    "PolicyEvalReport",
    "PolicyVersion",
    "Subscription",
    "UsageEvent",
]
