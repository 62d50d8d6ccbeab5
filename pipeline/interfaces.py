"""Read and enqueue entrypoints exposed to callers outside the pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
from typing import Any, Optional

from pipeline.common import PipelineClock, PipelineDatabase, as_utc, load_json, parse_date
from pipeline.entitlements import DEFAULT_TRIAL_POLICY, READ_ONLY_QUOTAS, TIER_DOWNGRADED, EntitlementWindow, TrialPolicy
from pipeline.errors import RequestValidationError
from pipeline.subscriptions import load_subscription_context
from pipeline.task_queue import TaskQueueStore, validate_job_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectiveDirective:
    tenant_id: str
    channel_id: str
    as_of_date: date
    direction: str
    confidence: float
    evidence: tuple[str, ...]
    forbidden_actions: tuple[str, ...]
    reevaluate_triggers: tuple[str, ...]
    policy_version_id: Optional[str]
    degraded: bool
    created_at: Optional[datetime]

    def to_json(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "channel_id": self.channel_id,
            "as_of_date": self.as_of_date.isoformat(),
            "direction": self.direction,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "forbidden_actions": list(self.forbidden_actions),
            "reevaluate_triggers": list(self.reevaluate_triggers),
            "policy_version_id": self.policy_version_id,
            "degraded": self.degraded,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def _require_id(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise RequestValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _require_date(name: str, value: Any) -> date:
    try:
        return parse_date(value)
    except (TypeError, ValueError) as exc:
        raise RequestValidationError(f"{name} must be an ISO date, got {value!r}") from exc


def effective_directive(db: PipelineDatabase, tenant_id: str, channel_id: str, as_of_date: Any) -> EffectiveDirective | None:
    """Latest directive issued on or before ``as_of_date``; None when none exists."""
    tenant = _require_id("tenant_id", tenant_id)
    channel = _require_id("channel_id", channel_id)
    target = _require_date("as_of_date", as_of_date)
    row = db.fetch_one(
        """
        SELECT tenant_id, channel_id, as_of_date, direction, confidence,
               evidence, forbidden_actions, reevaluate_triggers,
               policy_version_id, degraded, created_at
        FROM decision_daily
        WHERE tenant_id = :tenant_id
          AND channel_id = :channel_id
          AND as_of_date <= :as_of_date
        ORDER BY as_of_date DESC
        LIMIT 1
        """,
        {"tenant_id": tenant, "channel_id": channel, "as_of_date": target},
    )
    if row is None:
        return None
    return EffectiveDirective(
        tenant_id=str(row["tenant_id"]),
        channel_id=str(row["channel_id"]),
        as_of_date=parse_date(row["as_of_date"]),
        direction=str(getattr(row["direction"], "value", row["direction"])),
        confidence=float(row["confidence"]),
        evidence=tuple(load_json(row["evidence"]) or ()),
        forbidden_actions=tuple(load_json(row["forbidden_actions"]) or ()),
        reevaluate_triggers=tuple(load_json(row["reevaluate_triggers"]) or ()),
        policy_version_id=row.get("policy_version_id"),
        degraded=bool(row.get("degraded")),
        created_at=row.get("created_at"),
    )


def effective_entitlement(
    db: PipelineDatabase,
    tenant_id: str,
    now: datetime | None = None,
    *,
    trial_policy: TrialPolicy = DEFAULT_TRIAL_POLICY,
) -> EntitlementWindow:
    """Read-only entitlement query; a tenant without a subscription gets the read-only tier."""
    tenant = _require_id("tenant_id", tenant_id)
    at = as_utc(now) if now is not None else PipelineClock().now_utc()
    context = load_subscription_context(db, tenant)
    if context is None:
        return EntitlementWindow(
            status=TIER_DOWNGRADED,
            tier=TIER_DOWNGRADED,
            daily_task_quota=int(READ_ONLY_QUOTAS["daily_task_quota"]),
            chat_daily_quota=int(READ_ONLY_QUOTAS["chat_daily_quota"]),
            daily_spend_cap_usd=float(READ_ONLY_QUOTAS["daily_spend_cap_usd"]),
            read_only=True,
        )
    return context.resolve(at, trial_policy)


def enqueue_task(
    db: PipelineDatabase,
    job_type: Any,
    tenant_id: Any,
    channel_id: Any,
    target_date: Any,
    *,
    queue: TaskQueueStore | None = None,
) -> bool:
    """Idempotent fan-out entrypoint; True when a task row was created or a dead one re-armed."""
    job_type_value = validate_job_type(job_type)
    tenant = _require_id("tenant_id", tenant_id)
    channel = _require_id("channel_id", channel_id)
    target = _require_date("target_date", target_date)
    store = queue or TaskQueueStore(db, worker_id="enqueue-api")
    return store.enqueue(job_type_value, tenant, channel, target)
