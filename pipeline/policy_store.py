"""Immutable policy versions and the per-tenant active pointer.

Versions are insert-only. Activation never edits a version: it swaps the
single ``policy_active_pointer`` row for the tenant with a compare-and-swap on
the currently active id, keeps the previous id in ``archived_version_id`` and
appends the swap to ``policy_activation_log``. Rollback is the same swap
pointed at an older version.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
import logging
from typing import Any, Mapping, Optional

from backend.db.enums import PolicyCreator
from pipeline.common import PipelineClock, PipelineDatabase, canonical_json, load_json, stable_hash
from pipeline.errors import PermanentError, RequestValidationError

logger = logging.getLogger(__name__)

BASELINE_VERSION_ID = "baseline-v1"


@dataclass(frozen=True)
class ConfidenceWeights:
    """Weights of the v1 confidence formula."""

    base: float = 0.55
    coverage: float = 0.25
    exploit_strong_bonus: float = 0.10
    explore_emergence_bonus: float = 0.05
    volatility_penalty: float = 0.10
    floor: float = 0.45
    ceiling: float = 0.90
    insufficient_data: float = 0.60


@dataclass(frozen=True)
class PolicyParams:
    """Numeric decision-engine parameters carried by a policy version."""

    min_days_with_data: int = 5
    high_concentration_threshold: float = 0.6
    strong_concentration_threshold: float = 0.7
    trend_down_threshold_usd: float = -0.01
    top_n_for_new_asset: int = 3
    high_volatility_threshold: float = 0.6
    catastrophic_drop_pct: float = -0.30
    weights: ConfidenceWeights = field(default_factory=ConfidenceWeights)
    calibration_curve: tuple[tuple[float, float], ...] = ()

    def to_json(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["calibration_curve"] = [[raw, calibrated] for raw, calibrated in self.calibration_curve]
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any] | str | None) -> "PolicyParams":
        """Parse a stored params object, rejecting malformed values."""
        data = load_json(payload) or {}
        if not isinstance(data, Mapping):
            raise PermanentError("Policy params must be a JSON object")
        try:
            weights = ConfidenceWeights(**dict(data.get("weights") or {}))
            curve = tuple((float(raw), float(calibrated)) for raw, calibrated in data.get("calibration_curve") or ())
            known = {name for name in cls.__dataclass_fields__ if name not in {"weights", "calibration_curve"}}
            scalars = {key: value for key, value in data.items() if key in known}
            params = cls(**scalars, weights=weights, calibration_curve=curve)
        except (TypeError, ValueError) as exc:
            raise PermanentError(f"Malformed policy params: {exc}") from exc
        params.validate()
        return params

    def validate(self) -> None:
        if self.min_days_with_data < 1 or self.min_days_with_data > 7:
            raise PermanentError("min_days_with_data must be within 1..7")
        if not 0.0 < self.high_concentration_threshold <= 1.0:
            raise PermanentError("high_concentration_threshold must be within (0, 1]")
        if self.top_n_for_new_asset < 1:
            raise PermanentError("top_n_for_new_asset must be >= 1")
        if not -1.0 < self.catastrophic_drop_pct < 0.0:
            raise PermanentError("catastrophic_drop_pct must be within (-1, 0)")
        if self.weights.floor > self.weights.ceiling:
            raise PermanentError("confidence floor must not exceed ceiling")
        previous_raw = -1.0
        for raw, calibrated in self.calibration_curve:
            if not (0.0 <= raw <= 1.0 and 0.0 <= calibrated <= 1.0):
                raise PermanentError("calibration curve points must lie within [0, 1]")
            if raw <= previous_raw:
                raise PermanentError("calibration curve raw values must be strictly increasing")
            previous_raw = raw

    def params_hash(self) -> str:
        return stable_hash(("policy_params", canonical_json(self.to_json())))


@dataclass(frozen=True)
class PolicyVersionRecord:
    tenant_id: str
    version_id: str
    params: PolicyParams
    params_hash: str
    created_by: str
    parent_version_id: Optional[str]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class ActivePointer:
    tenant_id: str
    active_version_id: str
    archived_version_id: Optional[str]
    swap_count: int


@dataclass(frozen=True)
class ActivationResult:
    """Outcome of an activation or rollback request."""

    activated: bool
    reason_code: str
    active_version_id: Optional[str]
    previous_version_id: Optional[str]


def _record_from_row(row: Mapping[str, Any]) -> PolicyVersionRecord:
    return PolicyVersionRecord(
        tenant_id=str(row["tenant_id"]),
        version_id=str(row["version_id"]),
        params=PolicyParams.from_json(row["params"]),
        params_hash=str(row["params_hash"]),
        created_by=str(getattr(row["created_by"], "value", row["created_by"])),
        parent_version_id=row.get("parent_version_id"),
        created_at=row.get("created_at"),
    )


class PolicyStore:
    """Narrow read/activate/rollback contract over policy tables."""

    def __init__(self, db: PipelineDatabase, *, clock: PipelineClock | None = None) -> None:
        self._db = db
        self._clock = clock or PipelineClock()

    def create_version(
        self,
        tenant_id: str,
        version_id: str,
        params: PolicyParams,
        *,
        created_by: str = PolicyCreator.SYSTEM.value,
        parent_version_id: str | None = None,
    ) -> PolicyVersionRecord:
        """Insert an immutable version; re-inserting identical params is a no-op."""
        params.validate()
        created_by_value = PolicyCreator(created_by).value
        params_hash = params.params_hash()
        self._db.execute(
            """
            INSERT INTO policy_version (
                tenant_id, version_id, params, params_hash,
                created_by, parent_version_id, created_at
            ) VALUES (
                :tenant_id, :version_id, CAST(:params AS JSONB), :params_hash,
                CAST(:created_by AS policy_creator_enum), :parent_version_id, :created_at
            )
            ON CONFLICT (tenant_id, version_id) DO NOTHING
            """,
            {
                "tenant_id": tenant_id,
                "version_id": version_id,
                "params": canonical_json(params.to_json()),
                "params_hash": params_hash,
                "created_by": created_by_value,
                "parent_version_id": parent_version_id,
                "created_at": self._clock.now_utc(),
            },
        )
        stored = self.get_version(tenant_id, version_id)
        if stored is None:
            raise PermanentError(f"Policy version {version_id} missing after insert")
        if stored.params_hash != params_hash:
            raise PermanentError(f"Policy version {version_id} already exists with different params")
        return stored

    def get_version(self, tenant_id: str, version_id: str) -> PolicyVersionRecord | None:
        row = self._db.fetch_one(
            """
            SELECT tenant_id, version_id, params, params_hash, created_by, parent_version_id, created_at
            FROM policy_version
            WHERE tenant_id = :tenant_id
              AND version_id = :version_id
            """,
            {"tenant_id": tenant_id, "version_id": version_id},
        )
        return _record_from_row(row) if row is not None else None

    def list_versions(self, tenant_id: str) -> list[PolicyVersionRecord]:
        rows = self._db.fetch_all(
            """
            SELECT tenant_id, version_id, params, params_hash, created_by, parent_version_id, created_at
            FROM policy_version
            WHERE tenant_id = :tenant_id
            ORDER BY created_at ASC, version_id ASC
            """,
            {"tenant_id": tenant_id},
        )
        return [_record_from_row(row) for row in rows]

    def get_pointer(self, tenant_id: str) -> ActivePointer | None:
        row = self._db.fetch_one(
            """
            SELECT tenant_id, active_version_id, archived_version_id, swap_count
            FROM policy_active_pointer
            WHERE tenant_id = :tenant_id
            """,
            {"tenant_id": tenant_id},
        )
        if row is None:
            return None
        return ActivePointer(
            tenant_id=str(row["tenant_id"]),
            active_version_id=str(row["active_version_id"]),
            archived_version_id=row.get("archived_version_id"),
            swap_count=int(row["swap_count"]),
        )

    def get_active(self, tenant_id: str) -> PolicyVersionRecord | None:
        """Fresh read of the tenant's active version."""
        row = self._db.fetch_one(
            """
            SELECT v.tenant_id, v.version_id, v.params, v.params_hash,
                   v.created_by, v.parent_version_id, v.created_at
            FROM policy_active_pointer AS p
            JOIN policy_version AS v
              ON v.tenant_id = p.tenant_id
             AND v.version_id = p.active_version_id
            WHERE p.tenant_id = :tenant_id
            """,
            {"tenant_id": tenant_id},
        )
        return _record_from_row(row) if row is not None else None

    def ensure_baseline(self, tenant_id: str) -> PolicyVersionRecord:
        """Return the active version, bootstrapping default params on first use."""
        active = self.get_active(tenant_id)
        if active is not None:
            return active
        baseline = self.create_version(tenant_id, BASELINE_VERSION_ID, PolicyParams())
        row = self._db.fetch_one(
            """
            INSERT INTO policy_active_pointer (
                tenant_id, active_version_id, archived_version_id, swap_count, updated_at
            ) VALUES (
                :tenant_id, :version_id, NULL, 0, :now
            )
            ON CONFLICT (tenant_id) DO NOTHING
            RETURNING active_version_id
            """,
            {"tenant_id": tenant_id, "version_id": baseline.version_id, "now": self._clock.now_utc()},
        )
        if row is not None:
            self._log_activation(tenant_id, None, baseline.version_id, "bootstrap")
            logger.info("Bootstrapped baseline policy for tenant %s", tenant_id)
            return baseline
        active = self.get_active(tenant_id)
        if active is None:
            raise PermanentError(f"Active policy pointer for tenant {tenant_id} is dangling")
        return active

    def activate(
        self,
        tenant_id: str,
        version_id: str,
        *,
        expected_active_version_id: str | None = None,
        reason: str = "manual",
    ) -> ActivationResult:
        """Repoint the active pointer to ``version_id`` with compare-and-swap.

        ``expected_active_version_id`` defaults to the pointer as read now;
        callers that evaluated against a specific version pass it so a stale
        evaluation cannot overwrite a newer activation. A version whose
        replay-gate report rejected it is never activated.
        """
        if self.get_version(tenant_id, version_id) is None:
            raise RequestValidationError(f"Unknown policy version {version_id} for tenant {tenant_id}")

        pointer = self.get_pointer(tenant_id)
        if pointer is not None and pointer.active_version_id == version_id:
            return ActivationResult(False, "ALREADY_ACTIVE", version_id, pointer.archived_version_id)

        current = pointer.active_version_id if pointer is not None else None
        report = self.get_eval_verdict(tenant_id, version_id)
        if report is not None and not report["approved"]:
            logger.warning(
                "Refusing to activate %s for tenant %s: gate verdict %s",
                version_id,
                tenant_id,
                report["reason_code"],
            )
            return ActivationResult(False, "NOT_APPROVED", current, None)

        now = self._clock.now_utc()
        if pointer is None:
            row = self._db.fetch_one(
                """
                INSERT INTO policy_active_pointer (
                    tenant_id, active_version_id, archived_version_id, swap_count, updated_at
                ) VALUES (
                    :tenant_id, :version_id, NULL, 0, :now
                )
                ON CONFLICT (tenant_id) DO NOTHING
                RETURNING active_version_id
                """,
                {"tenant_id": tenant_id, "version_id": version_id, "now": now},
            )
            if row is None:
                return ActivationResult(False, "ACTIVE_POINTER_MOVED", None, None)
            self._log_activation(tenant_id, None, version_id, reason)
            return ActivationResult(True, "ACTIVATED", version_id, None)

        expected = expected_active_version_id or pointer.active_version_id
        row = self._db.fetch_one(
            """
            UPDATE policy_active_pointer
            SET archived_version_id = active_version_id,
                active_version_id = :version_id,
                swap_count = swap_count + 1,
                updated_at = :now
            WHERE tenant_id = :tenant_id
              AND active_version_id = :expected_version_id
            RETURNING active_version_id, archived_version_id
            """,
            {
                "tenant_id": tenant_id,
                "version_id": version_id,
                "expected_version_id": expected,
                "now": now,
            },
        )
        if row is None:
            logger.warning(
                "Activation of %s for tenant %s lost compare-and-swap (expected %s)",
                version_id,
                tenant_id,
                expected,
            )
            return ActivationResult(False, "ACTIVE_POINTER_MOVED", None, None)

        previous = row.get("archived_version_id")
        self._log_activation(tenant_id, previous, version_id, reason)
        logger.info("Tenant %s policy %s -> %s (%s)", tenant_id, previous, version_id, reason)
        return ActivationResult(True, "ACTIVATED", version_id, previous)

    def rollback(self, tenant_id: str, version_id: str) -> ActivationResult:
        """Repoint to the baseline or to a version that was active before."""
        if version_id != BASELINE_VERSION_ID and not self.was_active(tenant_id, version_id):
            pointer = self.get_pointer(tenant_id)
            logger.warning("Refusing rollback of tenant %s to never-active version %s", tenant_id, version_id)
            return ActivationResult(False, "NEVER_ACTIVE", pointer.active_version_id if pointer else None, None)
        return self.activate(tenant_id, version_id, reason="rollback")

    def get_eval_verdict(self, tenant_id: str, version_id: str) -> Mapping[str, Any] | None:
        """Replay-gate verdict stored for a candidate version, or None for versions never evaluated."""
        return self._db.fetch_one(
            """
            SELECT approved, reason_code
            FROM policy_eval_report
            WHERE tenant_id = :tenant_id
              AND candidate_version_id = :version_id
            """,
            {"tenant_id": tenant_id, "version_id": version_id},
        )

    def was_active(self, tenant_id: str, version_id: str) -> bool:
        row = self._db.fetch_one(
            """
            SELECT to_version_id
            FROM policy_activation_log
            WHERE tenant_id = :tenant_id
              AND to_version_id = :version_id
            LIMIT 1
            """,
            {"tenant_id": tenant_id, "version_id": version_id},
        )
        return row is not None

    def activation_history(self, tenant_id: str) -> list[dict[str, Any]]:
        rows = self._db.fetch_all(
            """
            SELECT from_version_id, to_version_id, reason, activated_at
            FROM policy_activation_log
            WHERE tenant_id = :tenant_id
            ORDER BY activation_id ASC
            """,
            {"tenant_id": tenant_id},
        )
        return [dict(row) for row in rows]

    def _log_activation(self, tenant_id: str, from_version_id: str | None, to_version_id: str, reason: str) -> None:
        now = self._clock.now_utc()
        self._db.execute(
            """
            INSERT INTO policy_activation_log (
                tenant_id, from_version_id, to_version_id, reason, activated_at, row_hash
            ) VALUES (
                :tenant_id, :from_version_id, :to_version_id, :reason, :activated_at, :row_hash
            )
            """,
            {
                "tenant_id": tenant_id,
                "from_version_id": from_version_id,
                "to_version_id": to_version_id,
                "reason": reason,
                "activated_at": now,
                "row_hash": stable_hash(("policy_activation", tenant_id, from_version_id, to_version_id, reason, now)),
            },
        )
