"""PostgreSQL implementation of the crossflow repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..contracts import EventEnvelope, OutboxRecord
from ..workflows.models import (
    RunStatus,
    RunStep,
    StepStatus,
    WorkflowDefinition,
    WorkflowRun,
)
from .claims import claim_in_order
from .repository import Repository

_OUTBOX_COLUMNS = (
    "seq, id, tenant_id, event_type, schema_version, payload, actor_id, occurred_at, "
    "correlation_id, created_at, processed_at, delivery_attempts, last_error, "
    "lease_token, lease_expires_at, next_attempt_at, dead_lettered_at, "
    "completed_handlers, attempts_at_replay"
)

_RUN_COLUMNS = (
    "id, workflow_definition_id, tenant_id, trigger_event_id, correlation_id, "
    "trigger_payload, status, created_at, started_at, completed_at, error, "
    "next_attempt_at, dead_lettered, cancel_requested, lease_token, lease_expires_at"
)

_STEP_COLUMNS = (
    "id, run_id, action_index, status, result, error, attempt_count, "
    "idempotency_key, started_at, completed_at"
)

_INSERT_OUTBOX = """
    INSERT INTO outbox (
        id, tenant_id, event_type, schema_version, payload, actor_id, occurred_at,
        correlation_id, created_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    ON CONFLICT (id) DO NOTHING
"""

_DELIVERABLE = f"""
    SELECT {_OUTBOX_COLUMNS} FROM outbox o
    WHERE o.processed_at IS NULL AND o.dead_lettered_at IS NULL
      AND (o.lease_expires_at IS NULL OR o.lease_expires_at <= $1)
      AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= $1)
      AND NOT EXISTS (
        SELECT 1 FROM outbox p
        WHERE p.tenant_id = o.tenant_id AND p.event_type = o.event_type
          AND p.seq < o.seq
          AND p.processed_at IS NULL AND p.dead_lettered_at IS NULL
          AND (p.lease_expires_at > $1 OR p.next_attempt_at > $1)
      )
    ORDER BY o.seq
    LIMIT $2
"""

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS outbox (
        seq BIGSERIAL PRIMARY KEY,
        id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        schema_version INTEGER NOT NULL,
        payload JSONB NOT NULL,
        actor_id TEXT,
        occurred_at TIMESTAMPTZ NOT NULL,
        correlation_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ,
        delivery_attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        lease_token TEXT,
        lease_expires_at TIMESTAMPTZ,
        next_attempt_at TIMESTAMPTZ,
        dead_lettered_at TIMESTAMPTZ,
        completed_handlers JSONB NOT NULL DEFAULT '[]'::jsonb,
        attempts_at_replay INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_outbox_pending ON outbox (seq)
    WHERE processed_at IS NULL AND dead_lettered_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS ix_outbox_ordering ON outbox (tenant_id, event_type, seq)",
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        version INTEGER NOT NULL,
        enabled BOOLEAN NOT NULL,
        body JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        workflow_definition_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        trigger_event_id TEXT NOT NULL,
        correlation_id TEXT,
        trigger_payload JSONB,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        error TEXT,
        next_attempt_at TIMESTAMPTZ,
        dead_lettered BOOLEAN NOT NULL DEFAULT FALSE,
        cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
        lease_token TEXT,
        lease_expires_at TIMESTAMPTZ,
        UNIQUE (workflow_definition_id, trigger_event_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES workflow_runs (id),
        action_index INTEGER NOT NULL,
        status TEXT NOT NULL,
        result JSONB,
        error TEXT,
        attempt_count INTEGER NOT NULL DEFAULT 1,
        idempotency_key TEXT NOT NULL,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        UNIQUE (run_id, action_index)
    )
    """,
]


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 1``."""
    return int(status.rsplit(" ", 1)[-1])


def _outbox_params(record: OutboxRecord) -> tuple:
    env = record.envelope
    return (
        env.id,
        env.tenant_id,
        env.event_type,
        env.schema_version,
        env.payload,
        env.actor_id,
        env.occurred_at,
        env.correlation_id,
        record.created_at,
    )


def _record_from_row(row: asyncpg.Record) -> OutboxRecord:
    return OutboxRecord(
        envelope=EventEnvelope(
            id=row["id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            schema_version=row["schema_version"],
            payload=row["payload"],
            actor_id=row["actor_id"],
            occurred_at=row["occurred_at"],
            correlation_id=row["correlation_id"],
        ),
        seq=row["seq"],
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        delivery_attempts=row["delivery_attempts"],
        last_error=row["last_error"],
        lease_token=row["lease_token"],
        lease_expires_at=row["lease_expires_at"],
        next_attempt_at=row["next_attempt_at"],
        dead_lettered_at=row["dead_lettered_at"],
        completed_handlers=row["completed_handlers"] or [],
        attempts_at_replay=row["attempts_at_replay"],
    )


def _run_from_row(row: asyncpg.Record) -> WorkflowRun:
    data = dict(row)
    data["trigger_payload"] = data["trigger_payload"] or {}
    return WorkflowRun.model_validate(data)


def _step_from_row(row: asyncpg.Record) -> RunStep:
    return RunStep.model_validate(dict(row))


def _definition_from_row(row: asyncpg.Record) -> WorkflowDefinition:
    definition = WorkflowDefinition.model_validate(row["body"])
    definition.enabled = row["enabled"]
    return definition


class PostgresTransaction:
    """Transaction on a dedicated connection shared with domain statements."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.connection = conn
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    async def execute(self, query: str, *params: Any) -> int:
        if not self._active:
            raise RuntimeError("transaction is no longer active")
        return _affected(await self.connection.execute(query, *params))

    async def fetchall(self, query: str, *params: Any) -> list[asyncpg.Record]:
        if not self._active:
            raise RuntimeError("transaction is no longer active")
        return await self.connection.fetch(query, *params)

    async def insert_outbox_record(self, record: OutboxRecord) -> bool:
        return await self.execute(_INSERT_OUTBOX, *_outbox_params(record)) == 1


class PostgresRepository(Repository):
    """Persist outbox and workflow state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        for type_name in ("json", "jsonb"):
            await conn.set_type_codec(
                type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
            )

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                init=self._init_connection,
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            yield conn

    async def _execute(self, query: str, *params: Any) -> int:
        async with self._connect() as conn:
            return _affected(await conn.execute(query, *params))

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        async with self._connect() as conn:
            return await conn.fetchrow(query, *params)

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        async with self._connect() as conn:
            return await conn.fetch(query, *params)

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        async with self._connect() as conn:
            tx = PostgresTransaction(conn)
            try:
                async with conn.transaction():
                    yield tx
            finally:
                tx._active = False

    # ------------------------------------------------------------------
    async def claim_outbox_batch(
        self, token: str, now: datetime, lease_seconds: float, limit: int
    ) -> list[OutboxRecord]:
        expires = now + timedelta(seconds=lease_seconds)
        rows = await self._fetch(_DELIVERABLE, now, limit)

        async def try_claim(record: OutboxRecord) -> OutboxRecord | None:
            claimed = await self._execute(
                """
                UPDATE outbox SET lease_token = $1, lease_expires_at = $2
                WHERE id = $3 AND processed_at IS NULL AND dead_lettered_at IS NULL
                  AND (lease_expires_at IS NULL OR lease_expires_at <= $4)
                  AND (next_attempt_at IS NULL OR next_attempt_at <= $4)
                """,
                token,
                expires,
                record.id,
                now,
            )
            if claimed != 1:
                return None
            record.lease_token = token
            record.lease_expires_at = expires
            return record

        return await claim_in_order(
            [_record_from_row(r) for r in rows], now, limit, try_claim
        )

    async def mark_handler_completed(
        self,
        record_id: str,
        token: str,
        completed_handlers: list[str],
        lease_expires_at: datetime,
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox SET completed_handlers = $1, lease_expires_at = $2
            WHERE id = $3 AND lease_token = $4
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            completed_handlers,
            lease_expires_at,
            record_id,
            token,
        )
        return updated == 1

    async def mark_processed(self, record_id: str, token: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox
            SET processed_at = $1, delivery_attempts = delivery_attempts + 1,
                last_error = NULL, lease_token = NULL, lease_expires_at = NULL,
                next_attempt_at = NULL
            WHERE id = $2 AND lease_token = $3
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            now,
            record_id,
            token,
        )
        return updated == 1

    async def record_delivery_failure(
        self,
        record_id: str,
        token: str,
        error: str,
        now: datetime,
        next_attempt_at: Optional[datetime],
        dead_letter: bool,
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox
            SET delivery_attempts = delivery_attempts + 1, last_error = $1,
                lease_token = NULL, lease_expires_at = NULL,
                next_attempt_at = $2, dead_lettered_at = $3
            WHERE id = $4 AND lease_token = $5
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            error,
            None if dead_letter else next_attempt_at,
            now if dead_letter else None,
            record_id,
            token,
        )
        return updated == 1

    async def release_lease(self, record_id: str, token: str) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox SET lease_token = NULL, lease_expires_at = NULL
            WHERE id = $1 AND lease_token = $2
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            record_id,
            token,
        )
        return updated == 1

    async def get_outbox_record(self, record_id: str) -> OutboxRecord | None:
        row = await self._fetchrow(
            f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id = $1", record_id
        )
        return _record_from_row(row) if row else None

    async def list_outbox_records(
        self, dead_lettered: Optional[bool] = None, limit: int = 100
    ) -> list[OutboxRecord]:
        where = ""
        if dead_lettered is True:
            where = "WHERE dead_lettered_at IS NOT NULL"
        elif dead_lettered is False:
            where = "WHERE dead_lettered_at IS NULL"
        rows = await self._fetch(
            f"SELECT {_OUTBOX_COLUMNS} FROM outbox {where} ORDER BY seq LIMIT $1", limit
        )
        return [_record_from_row(r) for r in rows]

    async def count_backlog(self) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS n FROM outbox "
            "WHERE processed_at IS NULL AND dead_lettered_at IS NULL"
        )
        return row["n"]

    async def replay_dead_letter(self, record_id: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox
            SET dead_lettered_at = NULL, next_attempt_at = NULL,
                attempts_at_replay = delivery_attempts
            WHERE id = $1 AND dead_lettered_at IS NOT NULL
            """,
            record_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    async def insert_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            "INSERT INTO workflow_definitions (id, name, version, enabled, body) "
            "VALUES ($1, $2, $3, $4, $5)",
            definition.id,
            definition.name,
            definition.version,
            definition.enabled,
            definition.model_dump(mode="json"),
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await self._fetchrow(
            "SELECT enabled, body FROM workflow_definitions WHERE id = $1", definition_id
        )
        return _definition_from_row(row) if row else None

    async def list_definitions(self, name: Optional[str] = None) -> list[WorkflowDefinition]:
        rows = await self._fetch(
            "SELECT enabled, body FROM workflow_definitions "
            "WHERE $1::text IS NULL OR name = $1 ORDER BY name, version",
            name,
        )
        return [_definition_from_row(r) for r in rows]

    async def set_definition_enabled(self, definition_id: str, enabled: bool) -> bool:
        updated = await self._execute(
            "UPDATE workflow_definitions SET enabled = $1 WHERE id = $2",
            enabled,
            definition_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        inserted = await self._execute(
            f"""
            INSERT INTO workflow_runs ({_RUN_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            ON CONFLICT (workflow_definition_id, trigger_event_id) DO NOTHING
            """,
            run.id,
            run.workflow_definition_id,
            run.tenant_id,
            run.trigger_event_id,
            run.correlation_id,
            run.trigger_payload,
            run.status.value,
            run.created_at,
            run.started_at,
            run.completed_at,
            run.error,
            run.next_attempt_at,
            run.dead_lettered,
            run.cancel_requested,
            run.lease_token,
            run.lease_expires_at,
        )
        stored = await self.find_run(run.workflow_definition_id, run.trigger_event_id)
        if stored is None:
            raise RuntimeError(f"run for {run.trigger_event_id} vanished after insert")
        return stored, inserted == 1

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = $1", run_id
        )
        return _run_from_row(row) if row else None

    async def find_run(self, definition_id: str, trigger_event_id: str) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            "WHERE workflow_definition_id = $1 AND trigger_event_id = $2",
            definition_id,
            trigger_event_id,
        )
        return _run_from_row(row) if row else None

    async def claim_run(
        self, run_id: str, token: str, now: datetime, lease_seconds: float
    ) -> WorkflowRun | None:
        row = await self._fetchrow(
            f"""
            UPDATE workflow_runs SET lease_token = $1, lease_expires_at = $2
            WHERE id = $3 AND status IN ('pending', 'running')
              AND (lease_expires_at IS NULL OR lease_expires_at <= $4)
              AND (next_attempt_at IS NULL OR next_attempt_at <= $4)
            RETURNING {_RUN_COLUMNS}
            """,
            token,
            now + timedelta(seconds=lease_seconds),
            run_id,
            now,
        )
        return _run_from_row(row) if row else None

    async def extend_run_lease(
        self, run_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET lease_expires_at = $1 "
            "WHERE id = $2 AND lease_token = $3 AND status IN ('pending', 'running')",
            lease_expires_at,
            run_id,
            token,
        )
        return updated == 1

    async def mark_run_running(self, run_id: str, token: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE workflow_runs
            SET status = 'running', started_at = COALESCE(started_at, $1),
                next_attempt_at = NULL
            WHERE id = $2 AND lease_token = $3 AND status IN ('pending', 'running')
            """,
            now,
            run_id,
            token,
        )
        return updated == 1

    async def reschedule_run(
        self, run_id: str, token: str, error: str, next_attempt_at: datetime
    ) -> bool:
        updated = await self._execute(
            """
            UPDATE workflow_runs
            SET status = 'pending', error = $1, next_attempt_at = $2,
                lease_token = NULL, lease_expires_at = NULL
            WHERE id = $3 AND lease_token = $4 AND status IN ('pending', 'running')
            """,
            error,
            next_attempt_at,
            run_id,
            token,
        )
        return updated == 1

    async def finish_run(
        self,
        run_id: str,
        token: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str] = None,
        dead_lettered: bool = False,
        event: Optional[OutboxRecord] = None,
    ) -> bool:
        async with self.transaction() as tx:
            updated = await tx.execute(
                """
                UPDATE workflow_runs
                SET status = $1, completed_at = $2, error = $3, dead_lettered = $4,
                    next_attempt_at = NULL, lease_token = NULL, lease_expires_at = NULL
                WHERE id = $5 AND lease_token = $6 AND status IN ('pending', 'running')
                """,
                status.value,
                now,
                error,
                dead_lettered,
                run_id,
                token,
            )
            if updated == 1 and event is not None:
                await tx.insert_outbox_record(event)
        return updated == 1

    async def release_run(self, run_id: str, token: str) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET lease_token = NULL, lease_expires_at = NULL "
            "WHERE id = $1 AND lease_token = $2 AND status IN ('pending', 'running')",
            run_id,
            token,
        )
        return updated == 1

    async def request_run_cancel(self, run_id: str) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET cancel_requested = TRUE "
            "WHERE id = $1 AND status IN ('pending', 'running')",
            run_id,
        )
        return updated == 1

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        rows = await self._fetch(
            f"""
            SELECT {_RUN_COLUMNS} FROM workflow_runs
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::boolean IS NULL OR dead_lettered = $2)
            ORDER BY created_at LIMIT $3
            """,
            status.value if status is not None else None,
            dead_lettered,
            limit,
        )
        return [_run_from_row(r) for r in rows]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        rows = await self._fetch(
            f"""
            SELECT {_RUN_COLUMNS} FROM workflow_runs
            WHERE status IN ('pending', 'running')
              AND (lease_expires_at IS NULL OR lease_expires_at <= $1)
              AND (next_attempt_at IS NULL OR next_attempt_at <= $1)
            ORDER BY created_at LIMIT $2
            """,
            now,
            limit,
        )
        return [_run_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    async def start_step(
        self, run_id: str, action_index: int, idempotency_key: str, now: datetime
    ) -> RunStep:
        step = RunStep(
            run_id=run_id,
            action_index=action_index,
            idempotency_key=idempotency_key,
            started_at=now,
        )
        row = await self._fetchrow(
            f"""
            INSERT INTO run_steps ({_STEP_COLUMNS})
            VALUES ($1, $2, $3, 'pending', NULL, NULL, 1, $4, $5, NULL)
            ON CONFLICT (run_id, action_index) DO UPDATE SET
                status = 'pending', result = NULL, error = NULL,
                attempt_count = run_steps.attempt_count + 1,
                started_at = EXCLUDED.started_at, completed_at = NULL
            RETURNING {_STEP_COLUMNS}
            """,
            step.id,
            run_id,
            action_index,
            idempotency_key,
            now,
        )
        return _step_from_row(row)

    async def finish_step(
        self,
        step_id: str,
        status: StepStatus,
        now: datetime,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        await self._execute(
            "UPDATE run_steps SET status = $1, result = $2, error = $3, completed_at = $4 "
            "WHERE id = $5",
            status.value,
            result,
            error,
            now,
            step_id,
        )

    async def list_steps(self, run_id: str) -> list[RunStep]:
        rows = await self._fetch(
            f"SELECT {_STEP_COLUMNS} FROM run_steps WHERE run_id = $1 ORDER BY action_index",
            run_id,
        )
        return [_step_from_row(r) for r in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
