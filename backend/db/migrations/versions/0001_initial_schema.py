"""Initial production schema for the channel directive pipeline."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


ENUM_DDL: tuple[str, ...] = (
    "CREATE TYPE job_type_enum AS ENUM ('daily_channel', 'weekly_channel', 'backfill_outcome');",
    "CREATE TYPE task_status_enum AS ENUM ('pending', 'running', 'retrying', 'succeeded', 'failed', 'dead');",
    "CREATE TYPE direction_enum AS ENUM ('EXPLOIT', 'EXPLORE', 'PROTECT');",
    "CREATE TYPE subscription_status_enum AS ENUM ('trialing', 'active', 'past_due', 'canceled', 'downgraded');",
    "CREATE TYPE policy_creator_enum AS ENUM ('system', 'manual');",
)

TABLE_DDL: tuple[str, ...] = (
    """
    CREATE TABLE job_task (
        task_id BIGINT GENERATED ALWAYS AS IDENTITY,
        tenant_id TEXT NOT NULL,
        job_type job_type_enum NOT NULL,
        channel_id TEXT NOT NULL,
        target_date DATE NOT NULL,
        dedupe_key TEXT NOT NULL,
        status task_status_enum NOT NULL DEFAULT 'pending',
        attempt INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        not_before TIMESTAMPTZ NOT NULL DEFAULT now(),
        locked_by TEXT,
        lease_expires_at TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_job_task PRIMARY KEY (task_id),
        CONSTRAINT uq_job_task_dedupe_key UNIQUE (dedupe_key),
        CONSTRAINT ck_job_task_attempt_nonneg CHECK (attempt >= 0),
        CONSTRAINT ck_job_task_max_attempts_pos CHECK (max_attempts >= 1),
        CONSTRAINT ck_job_task_ids_not_blank CHECK (length(btrim(tenant_id)) > 0 AND length(btrim(channel_id)) > 0),
        CONSTRAINT ck_job_task_running_has_lease CHECK (status <> 'running' OR (locked_by IS NOT NULL AND lease_expires_at IS NOT NULL))
    );
    """,
    """
    CREATE TABLE pipeline_event_log (
        event_id BIGINT GENERATED ALWAYS AS IDENTITY,
        event_ts_utc TIMESTAMPTZ NOT NULL,
        event_type TEXT NOT NULL,
        status TEXT NOT NULL,
        details JSONB NOT NULL,
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_pipeline_event_log PRIMARY KEY (event_id),
        CONSTRAINT ck_pipeline_event_log_type_not_blank CHECK (length(btrim(event_type)) > 0)
    );
    """,
    """
    CREATE TABLE channel_connection (
        tenant_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        connected_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_channel_connection PRIMARY KEY (tenant_id, channel_id),
        CONSTRAINT ck_channel_connection_ids_not_blank CHECK (length(btrim(tenant_id)) > 0 AND length(btrim(channel_id)) > 0)
    );
    """,
    """
    CREATE TABLE channel_metric_daily (
        tenant_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        metric_date DATE NOT NULL,
        asset_id TEXT NOT NULL,
        revenue_usd NUMERIC(18,6) NOT NULL,
        impressions BIGINT NOT NULL DEFAULT 0,
        is_settled BOOLEAN NOT NULL DEFAULT FALSE,
        ingested_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_channel_metric_daily PRIMARY KEY (tenant_id, channel_id, metric_date, asset_id),
        CONSTRAINT fk_channel_metric_daily_channel FOREIGN KEY (tenant_id, channel_id)
            REFERENCES channel_connection (tenant_id, channel_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_channel_metric_daily_revenue_nonneg CHECK (revenue_usd >= 0),
        CONSTRAINT ck_channel_metric_daily_impressions_nonneg CHECK (impressions >= 0)
    );
    """,
    """
    CREATE TABLE decision_daily (
        tenant_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        as_of_date DATE NOT NULL,
        direction direction_enum NOT NULL,
        confidence NUMERIC(6,4) NOT NULL,
        evidence JSONB NOT NULL,
        forbidden_actions JSONB NOT NULL,
        reevaluate_triggers JSONB NOT NULL,
        signals JSONB NOT NULL,
        policy_version_id TEXT,
        degraded BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_decision_daily PRIMARY KEY (tenant_id, channel_id, as_of_date),
        CONSTRAINT ck_decision_daily_confidence_range CHECK (confidence >= 0 AND confidence <= 1),
        CONSTRAINT ck_decision_daily_lists_are_arrays CHECK (
            jsonb_typeof(evidence) = 'array'
            AND jsonb_typeof(forbidden_actions) = 'array'
            AND jsonb_typeof(reevaluate_triggers) = 'array'
        )
    );
    """,
    """
    CREATE TABLE decision_outcome (
        tenant_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        decision_date DATE NOT NULL,
        outcome_date DATE NOT NULL,
        horizon_days INTEGER NOT NULL,
        direction direction_enum NOT NULL,
        pre_revenue_usd NUMERIC(18,6) NOT NULL,
        post_revenue_usd NUMERIC(18,6) NOT NULL,
        revenue_change_pct NUMERIC(12,6),
        catastrophic_flag BOOLEAN NOT NULL,
        new_top_asset_flag BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_decision_outcome PRIMARY KEY (tenant_id, channel_id, decision_date),
        CONSTRAINT fk_decision_outcome_decision FOREIGN KEY (tenant_id, channel_id, decision_date)
            REFERENCES decision_daily (tenant_id, channel_id, as_of_date) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_decision_outcome_horizon_pos CHECK (horizon_days >= 1),
        CONSTRAINT ck_decision_outcome_date_matches_horizon CHECK (outcome_date = decision_date + horizon_days),
        CONSTRAINT ck_decision_outcome_revenue_nonneg CHECK (pre_revenue_usd >= 0 AND post_revenue_usd >= 0)
    );
    """,
    """
    CREATE TABLE policy_version (
        tenant_id TEXT NOT NULL,
        version_id TEXT NOT NULL,
        params JSONB NOT NULL,
        params_hash CHAR(64) NOT NULL,
        created_by policy_creator_enum NOT NULL,
        parent_version_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_policy_version PRIMARY KEY (tenant_id, version_id),
        CONSTRAINT ck_policy_version_id_not_blank CHECK (length(btrim(version_id)) > 0),
        CONSTRAINT ck_policy_version_params_object CHECK (jsonb_typeof(params) = 'object')
    );
    """,
    """
    CREATE TABLE policy_active_pointer (
        tenant_id TEXT NOT NULL,
        active_version_id TEXT NOT NULL,
        archived_version_id TEXT,
        swap_count BIGINT NOT NULL DEFAULT 0,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_policy_active_pointer PRIMARY KEY (tenant_id),
        CONSTRAINT fk_policy_active_pointer_active FOREIGN KEY (tenant_id, active_version_id)
            REFERENCES policy_version (tenant_id, version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT fk_policy_active_pointer_archived FOREIGN KEY (tenant_id, archived_version_id)
            REFERENCES policy_version (tenant_id, version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_policy_active_pointer_swap_count_nonneg CHECK (swap_count >= 0)
    );
    """,
    """
    CREATE TABLE policy_activation_log (
        activation_id BIGINT GENERATED ALWAYS AS IDENTITY,
        tenant_id TEXT NOT NULL,
        from_version_id TEXT,
        to_version_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        activated_at TIMESTAMPTZ NOT NULL,
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_policy_activation_log PRIMARY KEY (activation_id),
        CONSTRAINT ck_policy_activation_log_reason CHECK (reason IN ('bootstrap', 'replay_gate', 'manual', 'rollback'))
    );
    """,
    """
    CREATE TABLE policy_eval_report (
        tenant_id TEXT NOT NULL,
        candidate_version_id TEXT NOT NULL,
        active_version_id TEXT NOT NULL,
        channel_id TEXT NOT NULL,
        window_start_date DATE NOT NULL,
        window_end_date DATE NOT NULL,
        days INTEGER NOT NULL,
        outcome_days INTEGER NOT NULL,
        candidate_catastrophic_rate NUMERIC(8,6) NOT NULL,
        candidate_switch_rate NUMERIC(8,6) NOT NULL,
        candidate_protect_rate NUMERIC(8,6) NOT NULL,
        candidate_calibration_error NUMERIC(8,6) NOT NULL,
        active_catastrophic_rate NUMERIC(8,6) NOT NULL,
        active_switch_rate NUMERIC(8,6) NOT NULL,
        active_protect_rate NUMERIC(8,6) NOT NULL,
        active_calibration_error NUMERIC(8,6) NOT NULL,
        approved BOOLEAN NOT NULL,
        reason_code TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_policy_eval_report PRIMARY KEY (tenant_id, candidate_version_id),
        CONSTRAINT fk_policy_eval_report_candidate FOREIGN KEY (tenant_id, candidate_version_id)
            REFERENCES policy_version (tenant_id, version_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_policy_eval_report_window CHECK (window_start_date <= window_end_date),
        CONSTRAINT ck_policy_eval_report_days_nonneg CHECK (days >= 0)
    );
    """,
    """
    CREATE TABLE plan (
        plan_id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        entitlements JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_plan PRIMARY KEY (plan_id),
        CONSTRAINT ck_plan_entitlements_object CHECK (jsonb_typeof(entitlements) = 'object')
    );
    """,
    """
    CREATE TABLE subscription (
        tenant_id TEXT NOT NULL,
        status subscription_status_enum NOT NULL,
        plan_id TEXT,
        trial_started_at TIMESTAMPTZ,
        provider TEXT,
        provider_subscription_id TEXT,
        current_period_end TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_subscription PRIMARY KEY (tenant_id),
        CONSTRAINT fk_subscription_plan FOREIGN KEY (plan_id)
            REFERENCES plan (plan_id) ON UPDATE RESTRICT ON DELETE RESTRICT,
        CONSTRAINT ck_subscription_trial_has_start CHECK (status <> 'trialing' OR trial_started_at IS NOT NULL)
    );
    """,
    """
    CREATE TABLE entitlement_override (
        tenant_id TEXT NOT NULL,
        overrides JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT pk_entitlement_override PRIMARY KEY (tenant_id),
        CONSTRAINT ck_entitlement_override_object CHECK (jsonb_typeof(overrides) = 'object')
    );
    """,
    """
    CREATE TABLE billing_event (
        event_id BIGINT GENERATED ALWAYS AS IDENTITY,
        provider TEXT NOT NULL,
        provider_event_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        normalized_status subscription_status_enum,
        payload JSONB NOT NULL,
        received_at TIMESTAMPTZ NOT NULL,
        row_hash CHAR(64) NOT NULL,
        CONSTRAINT pk_billing_event PRIMARY KEY (event_id),
        CONSTRAINT uq_billing_event_provider_event UNIQUE (provider, provider_event_id)
    );
    """,
    """
    CREATE TABLE usage_event (
        usage_id BIGINT GENERATED ALWAYS AS IDENTITY,
        tenant_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        units INTEGER NOT NULL,
        cost_usd NUMERIC(18,8) NOT NULL,
        usage_date DATE NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL,
        CONSTRAINT pk_usage_event PRIMARY KEY (usage_id),
        CONSTRAINT uq_usage_event_tenant_type_key UNIQUE (tenant_id, event_type, idempotency_key),
        CONSTRAINT ck_usage_event_units_nonneg CHECK (units >= 0),
        CONSTRAINT ck_usage_event_cost_nonneg CHECK (cost_usd >= 0)
    );
    """,
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX idx_job_task_claimable ON job_task (not_before, task_id) WHERE status IN ('pending', 'retrying');",
    "CREATE INDEX idx_job_task_lease_expiry ON job_task (lease_expires_at) WHERE status = 'running';",
    "CREATE INDEX idx_job_task_tenant_channel ON job_task (tenant_id, channel_id, target_date);",
    "CREATE INDEX idx_pipeline_event_log_ts ON pipeline_event_log (event_ts_utc);",
    "CREATE INDEX idx_channel_connection_active ON channel_connection (tenant_id, channel_id) WHERE is_active = TRUE;",
    "CREATE INDEX idx_decision_daily_tenant_date ON decision_daily (tenant_id, as_of_date);",
    "CREATE INDEX idx_policy_activation_log_tenant ON policy_activation_log (tenant_id, activated_at);",
    "CREATE INDEX idx_billing_event_tenant ON billing_event (tenant_id, received_at);",
    "CREATE INDEX idx_usage_event_tenant_date ON usage_event (tenant_id, usage_date);",
)

APPEND_ONLY_TABLES: tuple[str, ...] = (
    "pipeline_event_log",
    "decision_daily",
    "decision_outcome",
    "policy_version",
    "policy_activation_log",
    "policy_eval_report",
    "billing_event",
    "usage_event",
)

APPEND_ONLY_DDL: tuple[str, ...] = (
    """
    CREATE OR REPLACE FUNCTION fn_enforce_append_only()
    RETURNS TRIGGER
    LANGUAGE plpgsql
    AS $$
    BEGIN
        RAISE EXCEPTION 'append-only table violation on %', TG_TABLE_NAME;
    END;
    $$;
    """,
    *(
        f"""
    CREATE TRIGGER trg_{table}_append_only
    BEFORE UPDATE OR DELETE ON {table}
    FOR EACH ROW EXECUTE FUNCTION fn_enforce_append_only();
    """
        for table in APPEND_ONLY_TABLES
    ),
)

DOWNGRADE_DDL: tuple[str, ...] = (
    *(f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table};" for table in reversed(APPEND_ONLY_TABLES)),
    "DROP FUNCTION IF EXISTS fn_enforce_append_only();",
    "DROP TABLE IF EXISTS usage_event;",
    "DROP TABLE IF EXISTS billing_event;",
    "DROP TABLE IF EXISTS entitlement_override;",
    "DROP TABLE IF EXISTS subscription;",
    "DROP TABLE IF EXISTS plan;",
    "DROP TABLE IF EXISTS policy_eval_report;",
    "DROP TABLE IF EXISTS policy_activation_log;",
    "DROP TABLE IF EXISTS policy_active_pointer;",
    "DROP TABLE IF EXISTS policy_version;",
    "DROP TABLE IF EXISTS decision_outcome;",
    "DROP TABLE IF EXISTS decision_daily;",
    "DROP TABLE IF EXISTS channel_metric_daily;",
    "DROP TABLE IF EXISTS channel_connection;",
    "DROP TABLE IF EXISTS pipeline_event_log;",
    "DROP TABLE IF EXISTS job_task;",
    "DROP TYPE IF EXISTS policy_creator_enum;",
    "DROP TYPE IF EXISTS subscription_status_enum;",
    "DROP TYPE IF EXISTS direction_enum;",
    "DROP TYPE IF EXISTS task_status_enum;",
    "DROP TYPE IF EXISTS job_type_enum;",
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def upgrade() -> None:
    """Apply the initial schema migration."""

    logger.info("Starting initial schema migration upgrade.")
    _execute_all(ENUM_DDL)
    _execute_all(TABLE_DDL)
    _execute_all(INDEX_DDL)
    _execute_all(APPEND_ONLY_DDL)
    logger.info("Completed initial schema migration upgrade.")


def downgrade() -> None:
    """Revert the initial schema migration."""

    logger.info("Starting initial schema migration downgrade.")
    _execute_all(DOWNGRADE_DDL)
    logger.info("Completed initial schema migration downgrade.")
