"""Subscription state, billing-event ingestion and the usage ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Any, Mapping, Optional

from backend.db.enums import SubscriptionStatus
from pipeline.common import PipelineClock, PipelineDatabase, as_utc, canonical_json, load_json, stable_hash
from pipeline.entitlements import (
    DEFAULT_TRIAL_POLICY,
    EntitlementWindow,
    TrialPolicy,
    UsageSnapshot,
    resolve_entitlement,
)
from pipeline.errors import RequestValidationError

logger = logging.getLogger(__name__)

USAGE_TASK = "task"
USAGE_CHAT_ACTION = "chat_action"

_STATUS_ALIASES: dict[str, str] = {
    "active": SubscriptionStatus.ACTIVE.value,
    "activated": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.TRIALING.value,
    "trial": SubscriptionStatus.TRIALING.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "past-due": SubscriptionStatus.PAST_DUE.value,
    "past due": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "cancelled": SubscriptionStatus.CANCELED.value,
    "cancelled_by_user": SubscriptionStatus.CANCELED.value,
    "expired": SubscriptionStatus.CANCELED.value,
    "downgraded": SubscriptionStatus.DOWNGRADED.value,
}


def normalize_subscription_status(raw: str | None) -> str | None:
    """Map a provider status string onto the subscription enum; None when unrecognized."""
    value = (raw or "").strip().lower()
    if not value:
        return None
    return _STATUS_ALIASES.get(value)


@dataclass(frozen=True)
class ModelPricing:
    """LLM pricing in USD per million tokens."""

    prompt_usd_per_m: float
    completion_usd_per_m: float


def compute_cost_usd(pricing: ModelPricing, prompt_tokens: int, completion_tokens: int) -> float:
    prompt_cost = (prompt_tokens / 1_000_000.0) * pricing.prompt_usd_per_m
    completion_cost = (completion_tokens / 1_000_000.0) * pricing.completion_usd_per_m
    return prompt_cost + completion_cost


@dataclass(frozen=True)
class BillingEvent:
    """Subscription-state change emitted by the billing provider."""

    provider: str
    provider_event_id: str
    tenant_id: str
    event_type: str
    raw_status: Optional[str] = None
    plan_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionContext:
    """Stored subscription joined with its plan entitlements and overrides."""

    tenant_id: str
    status: str
    plan_id: Optional[str]
    trial_started_at: Optional[datetime]
    plan_entitlements: Optional[Mapping[str, Any]]
    overrides: Optional[Mapping[str, Any]]

    def resolve(self, now: datetime, trial_policy: TrialPolicy = DEFAULT_TRIAL_POLICY) -> EntitlementWindow:
        return resolve_entitlement(
            self.status,
            self.trial_started_at,
            self.plan_entitlements,
            self.overrides,
            now,
            trial_policy,
        )


def apply_billing_event(db: PipelineDatabase, event: BillingEvent, *, clock: PipelineClock | None = None) -> bool:
    """Record the event and reflect its status; a replayed provider event id is a no-op.

    Returns True when the event was new.
    """
    if not event.provider.strip() or not event.provider_event_id.strip() or not event.tenant_id.strip():
        raise RequestValidationError("Billing event requires provider, provider_event_id and tenant_id")
    clock = clock or PipelineClock()
    now = clock.now_utc()
    status = normalize_subscription_status(event.raw_status)

    row = db.fetch_one(
        """
        INSERT INTO billing_event (
            provider, provider_event_id, tenant_id, event_type,
            normalized_status, payload, received_at, row_hash
        ) VALUES (
            :provider, :provider_event_id, :tenant_id, :event_type,
            CAST(:normalized_status AS subscription_status_enum), CAST(:payload AS JSONB), :received_at, :row_hash
        )
        ON CONFLICT (provider, provider_event_id) DO NOTHING
        RETURNING event_id
        """,
        {
            "provider": event.provider,
            "provider_event_id": event.provider_event_id,
            "tenant_id": event.tenant_id,
            "event_type": event.event_type,
            "normalized_status": status,
            "payload": canonical_json(dict(event.payload)),
            "received_at": now,
            "row_hash": stable_hash(
                ("billing_event", event.provider, event.provider_event_id, event.tenant_id, event.event_type, status)
            ),
        },
    )
    if row is None:
        logger.info("Duplicate billing event %s/%s ignored", event.provider, event.provider_event_id)
        return False

    if status is None:
        logger.info(
            "Billing event %s for tenant %s carries no recognized status (%r)",
            event.provider_event_id,
            event.tenant_id,
            event.raw_status,
        )
        return True

    db.execute(
        """
        INSERT INTO subscription (
            tenant_id, status, plan_id, trial_started_at,
            provider, provider_subscription_id, current_period_end, updated_at
        ) VALUES (
            :tenant_id, CAST(:status AS subscription_status_enum), :plan_id, :trial_started_at,
            :provider, :provider_subscription_id, :current_period_end, :now
        )
        ON CONFLICT (tenant_id) DO UPDATE
        SET status = EXCLUDED.status,
            plan_id = COALESCE(EXCLUDED.plan_id, subscription.plan_id),
            trial_started_at = COALESCE(subscription.trial_started_at, EXCLUDED.trial_started_at),
            provider = EXCLUDED.provider,
            provider_subscription_id = COALESCE(EXCLUDED.provider_subscription_id, subscription.provider_subscription_id),
            current_period_end = COALESCE(EXCLUDED.current_period_end, subscription.current_period_end),
            updated_at = EXCLUDED.updated_at
        """,
        {
            "tenant_id": event.tenant_id,
            "status": status,
            "plan_id": event.plan_id,
            "trial_started_at": now if status == SubscriptionStatus.TRIALING.value else None,
            "provider": event.provider,
            "provider_subscription_id": event.provider_subscription_id,
            "current_period_end": event.current_period_end,
            "now": now,
        },
    )
    logger.info("Tenant %s subscription -> %s (event %s)", event.tenant_id, status, event.provider_event_id)
    return True


def load_subscription_context(db: PipelineDatabase, tenant_id: str) -> SubscriptionContext | None:
    row = db.fetch_one(
        """
        SELECT s.tenant_id, s.status, s.plan_id, s.trial_started_at,
               p.entitlements AS plan_entitlements,
               o.overrides AS overrides
        FROM subscription AS s
        LEFT JOIN plan AS p
          ON p.plan_id = s.plan_id
        LEFT JOIN entitlement_override AS o
          ON o.tenant_id = s.tenant_id
        WHERE s.tenant_id = :tenant_id
        """,
        {"tenant_id": tenant_id},
    )
    if row is None:
        return None
    trial_started_at = row.get("trial_started_at")
    return SubscriptionContext(
        tenant_id=str(row["tenant_id"]),
        status=str(getattr(row["status"], "value", row["status"])),
        plan_id=row.get("plan_id"),
        trial_started_at=as_utc(trial_started_at) if trial_started_at is not None else None,
        plan_entitlements=load_json(row.get("plan_entitlements")),
        overrides=load_json(row.get("overrides")),
    )


def ensure_trial_started(db: PipelineDatabase, tenant_id: str, now: datetime) -> SubscriptionContext:
    """Start a trial at ``now`` for a tenant without a subscription; existing rows are untouched."""
    db.execute(
        """
        INSERT INTO subscription (tenant_id, status, trial_started_at, updated_at)
        VALUES (:tenant_id, CAST(:status AS subscription_status_enum), :now, :now)
        ON CONFLICT (tenant_id) DO NOTHING
        """,
        {"tenant_id": tenant_id, "status": SubscriptionStatus.TRIALING.value, "now": now},
    )
    context = load_subscription_context(db, tenant_id)
    if context is None:
        raise RuntimeError(f"Subscription for tenant {tenant_id} missing after trial bootstrap")
    return context


def record_usage(
    db: PipelineDatabase,
    *,
    tenant_id: str,
    event_type: str,
    idempotency_key: str,
    occurred_at: datetime,
    units: int = 1,
    cost_usd: float = 0.0,
) -> bool:
    """Append one usage row; the same key for the same tenant and type is counted once."""
    if units < 0 or cost_usd < 0:
        raise RequestValidationError("Usage units and cost must be non-negative")
    row = db.fetch_one(
        """
        INSERT INTO usage_event (
            tenant_id, event_type, idempotency_key, units, cost_usd, usage_date, occurred_at
        ) VALUES (
            :tenant_id, :event_type, :idempotency_key, :units, :cost_usd, :usage_date, :occurred_at
        )
        ON CONFLICT (tenant_id, event_type, idempotency_key) DO NOTHING
        RETURNING usage_id
        """,
        {
            "tenant_id": tenant_id,
            "event_type": event_type,
            "idempotency_key": idempotency_key,
            "units": units,
            "cost_usd": Decimal(str(round(cost_usd, 8))),
            "usage_date": as_utc(occurred_at).date(),
            "occurred_at": occurred_at,
        },
    )
    return row is not None


def usage_today(db: PipelineDatabase, tenant_id: str, today: date) -> UsageSnapshot:
    row = db.fetch_one(
        """
        SELECT
            COALESCE(SUM(units) FILTER (WHERE event_type = :task_type), 0) AS task_units,
            COALESCE(SUM(units) FILTER (WHERE event_type = :chat_type), 0) AS chat_units,
            COALESCE(SUM(cost_usd), 0) AS cost_usd
        FROM usage_event
        WHERE tenant_id = :tenant_id
          AND usage_date = :usage_date
        """,
        {
            "tenant_id": tenant_id,
            "usage_date": today,
            "task_type": USAGE_TASK,
            "chat_type": USAGE_CHAT_ACTION,
        },
    )
    if row is None:
        return UsageSnapshot()
    return UsageSnapshot(
        task_units=int(row["task_units"] or 0),
        chat_units=int(row["chat_units"] or 0),
        cost_usd=float(row["cost_usd"] or 0),
    )
