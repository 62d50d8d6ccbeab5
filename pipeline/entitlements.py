"""Entitlement resolution: subscription state + elapsed time -> effective quota.

Everything here is a pure function of its arguments. Trial tiers are derived
from elapsed days rather than stored per day, so repeated calls with the same
inputs always agree and nothing needs invalidating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Mapping, Optional

from backend.db.enums import SubscriptionStatus
from pipeline.common import as_utc
from pipeline.errors import PermanentError

logger = logging.getLogger(__name__)

TIER_BOOST = "boost"
TIER_SUSTAIN = "sustain"
TIER_DOWNGRADED = "downgraded"
TIER_PLAN = "plan"

QUOTA_KEYS: tuple[str, ...] = ("daily_task_quota", "chat_daily_quota", "daily_spend_cap_usd")

READ_ONLY_QUOTAS: Mapping[str, float] = {
    "daily_task_quota": 0,
    "chat_daily_quota": 0,
    "daily_spend_cap_usd": 0.0,
}

PLAN_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.CANCELED.value}
)


def _boost_quotas() -> dict[str, float]:
    return {"daily_task_quota": 50, "chat_daily_quota": 20, "daily_spend_cap_usd": 1.00}


def _sustain_quotas() -> dict[str, float]:
    return {"daily_task_quota": 20, "chat_daily_quota": 5, "daily_spend_cap_usd": 0.25}


@dataclass(frozen=True)
class TrialPolicy:
    """Trial sub-window lengths and their quota tuples."""

    trial_length_days: int = 30
    boost_days: int = 7
    boost: Mapping[str, float] = field(default_factory=_boost_quotas)
    sustain: Mapping[str, float] = field(default_factory=_sustain_quotas)


DEFAULT_TRIAL_POLICY = TrialPolicy()


@dataclass(frozen=True)
class EntitlementWindow:
    """Currently effective quota tuple for a tenant."""

    status: str
    tier: str
    daily_task_quota: int
    chat_daily_quota: int
    daily_spend_cap_usd: float
    read_only: bool
    trial_day: Optional[int] = None
    trial_ends_at: Optional[datetime] = None

    def to_json(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "tier": self.tier,
            "daily_task_quota": self.daily_task_quota,
            "chat_daily_quota": self.chat_daily_quota,
            "daily_spend_cap_usd": self.daily_spend_cap_usd,
            "read_only": self.read_only,
            "trial_day": self.trial_day,
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    """Usage accumulated by a tenant in the current UTC day."""

    task_units: int = 0
    chat_units: int = 0
    cost_usd: float = 0.0


def _quota_tuple(values: Mapping[str, Any]) -> dict[str, float]:
    merged: dict[str, float] = dict(READ_ONLY_QUOTAS)
    for key in QUOTA_KEYS:
        if key not in values or values[key] is None:
            continue
        try:
            number = float(values[key])
        except (TypeError, ValueError) as exc:
            raise PermanentError(f"Malformed entitlement value for {key}: {values[key]!r}") from exc
        if number < 0:
            raise PermanentError(f"Entitlement value for {key} must be non-negative")
        merged[key] = number
    return merged


def _window(status: str, tier: str, quotas: Mapping[str, float], **extra: Any) -> EntitlementWindow:
    read_only = tier == TIER_DOWNGRADED
    return EntitlementWindow(
        status=status,
        tier=tier,
        daily_task_quota=int(quotas["daily_task_quota"]),
        chat_daily_quota=int(quotas["chat_daily_quota"]),
        daily_spend_cap_usd=float(quotas["daily_spend_cap_usd"]),
        read_only=read_only,
        **extra,
    )


def trial_day_number(trial_started_at: datetime, now: datetime) -> int:
    """1-based trial day; the start instant is day 1."""
    elapsed = as_utc(now) - as_utc(trial_started_at)
    if elapsed.total_seconds() < 0:
        return 1
    return elapsed.days + 1


def resolve_entitlement(
    status: str,
    trial_started_at: datetime | None,
    plan_entitlements: Mapping[str, Any] | None,
    overrides: Mapping[str, Any] | None,
    now: datetime,
    trial_policy: TrialPolicy = DEFAULT_TRIAL_POLICY,
) -> EntitlementWindow:
    """Resolve the effective entitlement window without touching stored state."""
    try:
        status_value = SubscriptionStatus(str(status)).value
    except ValueError as exc:
        raise PermanentError(f"Unknown subscription status: {status}") from exc

    if status_value == SubscriptionStatus.TRIALING.value:
        if trial_started_at is None:
            raise PermanentError("Trialing subscription has no trial start")
        day = trial_day_number(trial_started_at, now)
        ends_at = as_utc(trial_started_at) + timedelta(days=trial_policy.trial_length_days)
        if day <= trial_policy.boost_days:
            return _window(status_value, TIER_BOOST, _quota_tuple(trial_policy.boost), trial_day=day, trial_ends_at=ends_at)
        if day <= trial_policy.trial_length_days:
            return _window(
                status_value,
                TIER_SUSTAIN,
                _quota_tuple(trial_policy.sustain),
                trial_day=day,
                trial_ends_at=ends_at,
            )
        return _window(
            SubscriptionStatus.DOWNGRADED.value,
            TIER_DOWNGRADED,
            READ_ONLY_QUOTAS,
            trial_day=day,
            trial_ends_at=ends_at,
        )

    if status_value in PLAN_STATUSES:
        if plan_entitlements is None:
            return _window(status_value, TIER_DOWNGRADED, READ_ONLY_QUOTAS)
        merged = dict(plan_entitlements)
        merged.update(overrides or {})
        return _window(status_value, TIER_PLAN, _quota_tuple(merged))

    return _window(status_value, TIER_DOWNGRADED, READ_ONLY_QUOTAS)


def task_budget_exhausted(window: EntitlementWindow, usage: UsageSnapshot) -> str | None:
    """Reason the tenant may not run a full budget-sensitive task today, or None."""
    if window.read_only:
        return "read_only"
    if usage.task_units >= window.daily_task_quota:
        return "task_quota"
    if usage.cost_usd > 0 and usage.cost_usd >= window.daily_spend_cap_usd:
        return "spend_cap"
    return None


def chat_budget_exhausted(window: EntitlementWindow, usage: UsageSnapshot) -> str | None:
    """Reason a chat request must be degraded, or None."""
    if window.read_only:
        return "read_only"
    if usage.chat_units >= window.chat_daily_quota:
        return "chat_quota"
    if usage.cost_usd >= window.daily_spend_cap_usd:
        return "spend_cap"
    return None
