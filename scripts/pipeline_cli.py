#!/usr/bin/env python3
"""Operator CLI for the channel directive pipeline."""

from __future__ import annotations

import argparse
from dataclasses import asdict
from datetime import date, datetime, timezone
import json
import logging
import os
from pathlib import Path
import re
import sys
from typing import Any, Mapping, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.db.enums import JobType
from pipeline.config import load_pipeline_config
from pipeline.dispatcher import Dispatcher
from pipeline.interfaces import effective_directive, effective_entitlement, enqueue_task
from pipeline.metrics import SqlMetricsFactsProvider
from pipeline.policy_store import PolicyStore
from pipeline.worker_tick import WorkerTick, build_task_queue

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(r"(?<!:):([a-zA-Z_][a-zA-Z0-9_]*)")


def _convert_named_params(sql: str) -> str:
    return _NAMED_PARAM_RE.sub(r"%(\1)s", sql)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got {value!r}") from exc


def _parse_ts(value: str) -> datetime:
    normalized = value.strip().replace("Z", "+00:00")
    ts = datetime.fromisoformat(normalized)
    if ts.tzinfo is None:
        raise argparse.ArgumentTypeError("Timestamp must include timezone offset.")
    return ts.astimezone(timezone.utc)


class PsycopgPipelineDB:
    """Psycopg adapter for the pipeline DB protocol."""

    def __init__(self, conn: psycopg.Connection[Any]) -> None:
        self.conn = conn

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        converted = _convert_named_params(sql)
        with self.conn.cursor(row_factory=dict_row) as cur:
            cur.execute(converted, dict(params))
            if cur.description is None:
                return []
            return [dict(row) for row in cur.fetchall()]

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        converted = _convert_named_params(sql)
        with self.conn.cursor() as cur:
            cur.execute(converted, dict(params))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()


def _resolve_connection(args: argparse.Namespace) -> psycopg.Connection[Any]:
    if args.dsn:
        return psycopg.connect(args.dsn, autocommit=False)

    host = args.host or os.getenv("DB_HOST")
    port = args.port or os.getenv("DB_PORT")
    dbname = args.dbname or os.getenv("DB_NAME")
    user = args.user or os.getenv("DB_USER")
    password = args.password or os.getenv("DB_PASSWORD")

    missing = [
        key
        for key, value in (("host", host), ("port", port), ("dbname", dbname), ("user", user), ("password", password))
        if not value
    ]
    if missing:
        raise SystemExit(
            "Missing DB connection args. Provide --dsn or set --host/--port/--dbname/--user/--password "
            f"(missing: {', '.join(missing)})."
        )

    return psycopg.connect(host=host, port=port, dbname=dbname, user=user, password=password, autocommit=False)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Channel directive pipeline operator CLI")
    parser.add_argument("--dsn", help="PostgreSQL DSN (optional)")
    parser.add_argument("--host", help="DB host")
    parser.add_argument("--port", help="DB port")
    parser.add_argument("--dbname", help="DB name")
    parser.add_argument("--user", help="DB user")
    parser.add_argument("--password", help="DB password")

    subparsers = parser.add_subparsers(dest="command", required=True)

    dispatch = subparsers.add_parser("dispatch", help="Fan a job type out to every active channel")
    dispatch.add_argument("--job-type", required=True, choices=[job.value for job in JobType])
    dispatch.add_argument("--run-for-date", type=_parse_date, required=True)
    dispatch.add_argument("--backfill-weeks", type=int, default=None)
    dispatch.add_argument("--force", action="store_true", help="Re-arm finished tasks for the same keys")

    tick = subparsers.add_parser("tick", help="Run one worker tick")
    tick.add_argument("--batch-size", type=int, default=None)
    tick.add_argument("--time-budget-secs", type=float, default=None)

    enqueue = subparsers.add_parser("enqueue", help="Enqueue one task (idempotent)")
    enqueue.add_argument("--job-type", required=True)
    enqueue.add_argument("--tenant-id", required=True)
    enqueue.add_argument("--channel-id", required=True)
    enqueue.add_argument("--target-date", type=_parse_date, required=True)

    directive = subparsers.add_parser("directive", help="Show the effective directive")
    directive.add_argument("--tenant-id", required=True)
    directive.add_argument("--channel-id", required=True)
    directive.add_argument("--date", type=_parse_date, required=True)

    entitlement = subparsers.add_parser("entitlement", help="Show the effective entitlement window")
    entitlement.add_argument("--tenant-id", required=True)
    entitlement.add_argument("--at", type=_parse_ts, default=None)

    for name, help_text in (("activate", "Activate a policy version"), ("rollback", "Roll back to a policy version")):
        cmd = subparsers.add_parser(name, help=help_text)
        cmd.add_argument("--tenant-id", required=True)
        cmd.add_argument("--version-id", required=True)

    requeue = subparsers.add_parser("requeue-dead", help="Re-arm a dead task by dedupe key")
    requeue.add_argument("--dedupe-key", required=True)

    subparsers.add_parser("queue-status", help="Task counts per status")
    return parser


def _run_command(args: argparse.Namespace, db: PsycopgPipelineDB) -> dict[str, Any]:
    if args.command == "directive":
        found = effective_directive(db, args.tenant_id, args.channel_id, args.date)
        return {"directive": found.to_json() if found is not None else None}

    if args.command == "entitlement":
        return {"entitlement": effective_entitlement(db, args.tenant_id, args.at).to_json()}

    if args.command in {"activate", "rollback"}:
        store = PolicyStore(db)
        if args.command == "rollback":
            result = store.rollback(args.tenant_id, args.version_id)
        else:
            result = store.activate(args.tenant_id, args.version_id, reason="manual")
        return asdict(result)

    cfg = load_pipeline_config()
    queue = build_task_queue(db, cfg)

    if args.command == "enqueue":
        created = enqueue_task(db, args.job_type, args.tenant_id, args.channel_id, args.target_date, queue=queue)
        return {"created": created}

    if args.command == "requeue-dead":
        return {"requeued": queue.requeue_dead(args.dedupe_key)}

    if args.command == "queue-status":
        return {"counts": queue.status_counts()}

    provider = SqlMetricsFactsProvider(db)
    if args.command == "dispatch":
        dispatcher = Dispatcher(db, queue, provider, fresh_channel_backfill_weeks=cfg.dispatch_backfill_weeks)
        summary = dispatcher.dispatch(
            args.job_type, args.run_for_date, backfill_weeks=args.backfill_weeks, force=args.force
        )
        return asdict(summary)

    if args.command == "tick":
        worker = WorkerTick(db, provider, config=cfg, queue=queue)
        return asdict(worker.tick(args.batch_size, args.time_budget_secs))

    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    parser = _build_parser()
    args = parser.parse_args(argv)

    conn = _resolve_connection(args)
    db = PsycopgPipelineDB(conn)
    try:
        payload = _run_command(args, db)
        conn.commit()
    except Exception:
        logger.exception("Command %s failed", args.command)
        conn.rollback()
        raise
    finally:
        conn.close()
    print(json.dumps(payload, sort_keys=True, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
