"""SQLite implementation of the crossflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

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
        correlation_id, created_at, delivery_attempts, completed_handlers
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, '[]')
    ON CONFLICT(id) DO NOTHING
"""

_DELIVERABLE = """
    SELECT {columns} FROM outbox o
    WHERE o.processed_at IS NULL AND o.dead_lettered_at IS NULL
      AND (o.lease_expires_at IS NULL OR o.lease_expires_at <= ?)
      AND (o.next_attempt_at IS NULL OR o.next_attempt_at <= ?)
      AND NOT EXISTS (
        SELECT 1 FROM outbox p
        WHERE p.tenant_id = o.tenant_id AND p.event_type = o.event_type
          AND p.seq < o.seq
          AND p.processed_at IS NULL AND p.dead_lettered_at IS NULL
          AND (p.lease_expires_at > ? OR p.next_attempt_at > ?)
      )
    ORDER BY o.seq
    LIMIT ?
""".format(columns=_OUTBOX_COLUMNS)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _outbox_params(record: OutboxRecord) -> tuple:
    env = record.envelope
    return (
        env.id,
        env.tenant_id,
        env.event_type,
        env.schema_version,
        json.dumps(env.payload),
        env.actor_id,
        _ts(env.occurred_at),
        env.correlation_id,
        _ts(record.created_at),
    )


def _record_from_row(row: sqlite3.Row) -> OutboxRecord:
    return OutboxRecord(
        envelope=EventEnvelope(
            id=row["id"],
            tenant_id=row["tenant_id"],
            event_type=row["event_type"],
            schema_version=row["schema_version"],
            payload=json.loads(row["payload"]),
            actor_id=row["actor_id"],
            occurred_at=_dt(row["occurred_at"]),
            correlation_id=row["correlation_id"],
        ),
        seq=row["seq"],
        created_at=_dt(row["created_at"]),
        processed_at=_dt(row["processed_at"]),
        delivery_attempts=row["delivery_attempts"],
        last_error=row["last_error"],
        lease_token=row["lease_token"],
        lease_expires_at=_dt(row["lease_expires_at"]),
        next_attempt_at=_dt(row["next_attempt_at"]),
        dead_lettered_at=_dt(row["dead_lettered_at"]),
        completed_handlers=json.loads(row["completed_handlers"] or "[]"),
        attempts_at_replay=row["attempts_at_replay"],
    )


def _run_from_row(row: sqlite3.Row) -> WorkflowRun:
    return WorkflowRun(
        id=row["id"],
        workflow_definition_id=row["workflow_definition_id"],
        tenant_id=row["tenant_id"],
        trigger_event_id=row["trigger_event_id"],
        correlation_id=row["correlation_id"],
        trigger_payload=json.loads(row["trigger_payload"] or "{}"),
        status=RunStatus(row["status"]),
        created_at=_dt(row["created_at"]),
        started_at=_dt(row["started_at"]),
        completed_at=_dt(row["completed_at"]),
        error=row["error"],
        next_attempt_at=_dt(row["next_attempt_at"]),
        dead_lettered=bool(row["dead_lettered"]),
        cancel_requested=bool(row["cancel_requested"]),
        lease_token=row["lease_token"],
        lease_expires_at=_dt(row["lease_expires_at"]),
    )


def _step_from_row(row: sqlite3.Row) -> RunStep:
    return RunStep(
        id=row["id"],
        run_id=row["run_id"],
        action_index=row["action_index"],
        status=StepStatus(row["status"]),
        result=json.loads(row["result"]) if row["result"] is not None else None,
        error=row["error"],
        attempt_count=row["attempt_count"],
        idempotency_key=row["idempotency_key"],
        started_at=_dt(row["started_at"]),
        completed_at=_dt(row["completed_at"]),
    )


def _definition_from_row(row: sqlite3.Row) -> WorkflowDefinition:
    definition = WorkflowDefinition.model_validate_json(row["body"])
    definition.enabled = bool(row["enabled"])
    return definition


class SQLiteTransaction:
    """Transaction bound to the repository connection.

    Domain code issues its own statements through :meth:`execute` so they
    commit or roll back together with the outbox rows.
    The repository lock is held for the whole block, so calling other
    repository methods inside it deadlocks; read through the transaction.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _run(self, query: str, params: tuple) -> sqlite3.Cursor:
        if not self._active:
            raise RuntimeError("transaction is no longer active")
        return self._conn.execute(query, params)

    async def execute(self, query: str, *params: Any) -> int:
        cur = await asyncio.to_thread(self._run, query, params)
        return cur.rowcount

    async def fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = await asyncio.to_thread(self._run, query, params)
        return cur.fetchall()

    async def insert_outbox_record(self, record: OutboxRecord) -> bool:
        return await self.execute(_INSERT_OUTBOX, *_outbox_params(record)) == 1


class SQLiteRepository(Repository):
    """Persist outbox and workflow state using SQLite.

    Several repositories (or processes) may share one database file: every
    lease and state transition is a single conditional ``UPDATE``.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS outbox (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                schema_version INTEGER NOT NULL,
                payload TEXT NOT NULL,
                actor_id TEXT,
                occurred_at TEXT NOT NULL,
                correlation_id TEXT,
                created_at TEXT NOT NULL,
                processed_at TEXT,
                delivery_attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                lease_token TEXT,
                lease_expires_at TEXT,
                next_attempt_at TEXT,
                dead_lettered_at TEXT,
                completed_handlers TEXT NOT NULL DEFAULT '[]',
                attempts_at_replay INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_outbox_pending "
            "ON outbox (processed_at, dead_lettered_at, seq)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_outbox_ordering "
            "ON outbox (tenant_id, event_type, seq)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                version INTEGER NOT NULL,
                enabled INTEGER NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_definition_id TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                trigger_event_id TEXT NOT NULL,
                correlation_id TEXT,
                trigger_payload TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                error TEXT,
                next_attempt_at TEXT,
                dead_lettered INTEGER NOT NULL DEFAULT 0,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                lease_token TEXT,
                lease_expires_at TEXT,
                UNIQUE (workflow_definition_id, trigger_event_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS run_steps (
                id TEXT PRIMARY KEY,
                run_id TEXT NOT NULL,
                action_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 1,
                idempotency_key TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                UNIQUE (run_id, action_index)
            )
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute_sync(self, query: str, params: Any) -> int:
        return self._conn.execute(query, params).rowcount

    def _fetchone_sync(self, query: str, params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall_sync(self, query: str, params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    async def _execute(self, query: str, *params: Any) -> int:
        async with self._lock:
            return await asyncio.to_thread(self._execute_sync, query, params)

    async def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        async with self._lock:
            return await asyncio.to_thread(self._fetchone_sync, query, params)

    async def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        async with self._lock:
            return await asyncio.to_thread(self._fetchall_sync, query, params)

    # ------------------------------------------------------------------
    # Transactions
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteTransaction]:
        async with self._lock:
            await asyncio.to_thread(self._conn.execute, "BEGIN IMMEDIATE")
            tx = SQLiteTransaction(self._conn)
            try:
                yield tx
            except BaseException:
                tx._active = False
                await asyncio.to_thread(self._conn.execute, "ROLLBACK")
                raise
            tx._active = False
            await asyncio.to_thread(self._conn.execute, "COMMIT")

    # ------------------------------------------------------------------
    # Outbox
    async def claim_outbox_batch(
        self, token: str, now: datetime, lease_seconds: float, limit: int
    ) -> list[OutboxRecord]:
        now_s = _ts(now)
        expires = _ts(now + timedelta(seconds=lease_seconds))
        rows = await self._fetchall(
            _DELIVERABLE, now_s, now_s, now_s, now_s, limit
        )

        async def try_claim(record: OutboxRecord) -> OutboxRecord | None:
            claimed = await self._execute(
                """
                UPDATE outbox SET lease_token = ?, lease_expires_at = ?
                WHERE id = ? AND processed_at IS NULL AND dead_lettered_at IS NULL
                  AND (lease_expires_at IS NULL OR lease_expires_at <= ?)
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                """,
                token,
                expires,
                record.id,
                now_s,
                now_s,
            )
            if claimed != 1:
                return None
            record.lease_token = token
            record.lease_expires_at = _dt(expires)
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
            UPDATE outbox SET completed_handlers = ?, lease_expires_at = ?
            WHERE id = ? AND lease_token = ?
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            json.dumps(completed_handlers),
            _ts(lease_expires_at),
            record_id,
            token,
        )
        return updated == 1

    async def mark_processed(self, record_id: str, token: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox
            SET processed_at = ?, delivery_attempts = delivery_attempts + 1,
                last_error = NULL, lease_token = NULL, lease_expires_at = NULL,
                next_attempt_at = NULL
            WHERE id = ? AND lease_token = ?
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            _ts(now),
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
            SET delivery_attempts = delivery_attempts + 1, last_error = ?,
                lease_token = NULL, lease_expires_at = NULL,
                next_attempt_at = ?, dead_lettered_at = ?
            WHERE id = ? AND lease_token = ?
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            error,
            None if dead_letter else _ts(next_attempt_at),
            _ts(now) if dead_letter else None,
            record_id,
            token,
        )
        return updated == 1

    async def release_lease(self, record_id: str, token: str) -> bool:
        updated = await self._execute(
            """
            UPDATE outbox SET lease_token = NULL, lease_expires_at = NULL
            WHERE id = ? AND lease_token = ?
              AND processed_at IS NULL AND dead_lettered_at IS NULL
            """,
            record_id,
            token,
        )
        return updated == 1

    async def get_outbox_record(self, record_id: str) -> OutboxRecord | None:
        row = await self._fetchone(
            f"SELECT {_OUTBOX_COLUMNS} FROM outbox WHERE id = ?", record_id
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
        rows = await self._fetchall(
            f"SELECT {_OUTBOX_COLUMNS} FROM outbox {where} ORDER BY seq LIMIT ?", limit
        )
        return [_record_from_row(r) for r in rows]

    async def count_backlog(self) -> int:
        row = await self._fetchone(
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
            WHERE id = ? AND dead_lettered_at IS NOT NULL
            """,
            record_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Workflow definitions
    async def insert_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            "INSERT INTO workflow_definitions (id, name, version, enabled, body) "
            "VALUES (?, ?, ?, ?, ?)",
            definition.id,
            definition.name,
            definition.version,
            int(definition.enabled),
            definition.model_dump_json(),
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await self._fetchone(
            "SELECT enabled, body FROM workflow_definitions WHERE id = ?", definition_id
        )
        return _definition_from_row(row) if row else None

    async def list_definitions(self, name: Optional[str] = None) -> list[WorkflowDefinition]:
        if name is None:
            rows = await self._fetchall(
                "SELECT enabled, body FROM workflow_definitions ORDER BY name, version"
            )
        else:
            rows = await self._fetchall(
                "SELECT enabled, body FROM workflow_definitions WHERE name = ? "
                "ORDER BY version",
                name,
            )
        return [_definition_from_row(r) for r in rows]

    async def set_definition_enabled(self, definition_id: str, enabled: bool) -> bool:
        updated = await self._execute(
            "UPDATE workflow_definitions SET enabled = ? WHERE id = ?",
            int(enabled),
            definition_id,
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: WorkflowRun) -> tuple[WorkflowRun, bool]:
        inserted = await self._execute(
            f"""
            INSERT INTO workflow_runs ({_RUN_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_definition_id, trigger_event_id) DO NOTHING
            """,
            run.id,
            run.workflow_definition_id,
            run.tenant_id,
            run.trigger_event_id,
            run.correlation_id,
            json.dumps(run.trigger_payload),
            run.status.value,
            _ts(run.created_at),
            _ts(run.started_at),
            _ts(run.completed_at),
            run.error,
            _ts(run.next_attempt_at),
            int(run.dead_lettered),
            int(run.cancel_requested),
            run.lease_token,
            _ts(run.lease_expires_at),
        )
        stored = await self.find_run(run.workflow_definition_id, run.trigger_event_id)
        if stored is None:
            raise RuntimeError(f"run for {run.trigger_event_id} vanished after insert")
        return stored, inserted == 1

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = ?", run_id
        )
        return _run_from_row(row) if row else None

    async def find_run(self, definition_id: str, trigger_event_id: str) -> WorkflowRun | None:
        row = await self._fetchone(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs "
            "WHERE workflow_definition_id = ? AND trigger_event_id = ?",
            definition_id,
            trigger_event_id,
        )
        return _run_from_row(row) if row else None

    async def claim_run(
        self, run_id: str, token: str, now: datetime, lease_seconds: float
    ) -> WorkflowRun | None:
        now_s = _ts(now)
        claimed = await self._execute(
            """
            UPDATE workflow_runs SET lease_token = ?, lease_expires_at = ?
            WHERE id = ? AND status IN ('pending', 'running')
              AND (lease_expires_at IS NULL OR lease_expires_at <= ?)
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            """,
            token,
            _ts(now + timedelta(seconds=lease_seconds)),
            run_id,
            now_s,
            now_s,
        )
        if claimed != 1:
            return None
        return await self.get_run(run_id)

    async def extend_run_lease(
        self, run_id: str, token: str, lease_expires_at: datetime
    ) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET lease_expires_at = ? "
            "WHERE id = ? AND lease_token = ? AND status IN ('pending', 'running')",
            _ts(lease_expires_at),
            run_id,
            token,
        )
        return updated == 1

    async def mark_run_running(self, run_id: str, token: str, now: datetime) -> bool:
        updated = await self._execute(
            """
            UPDATE workflow_runs
            SET status = 'running', started_at = COALESCE(started_at, ?),
                next_attempt_at = NULL
            WHERE id = ? AND lease_token = ? AND status IN ('pending', 'running')
            """,
            _ts(now),
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
            SET status = 'pending', error = ?, next_attempt_at = ?,
                lease_token = NULL, lease_expires_at = NULL
            WHERE id = ? AND lease_token = ? AND status IN ('pending', 'running')
            """,
            error,
            _ts(next_attempt_at),
            run_id,
            token,
        )
        return updated == 1

    def _finish_run_sync(
        self,
        run_id: str,
        token: str,
        status: RunStatus,
        now: datetime,
        error: Optional[str],
        dead_lettered: bool,
        event: Optional[OutboxRecord],
    ) -> bool:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            updated = self._conn.execute(
                """
                UPDATE workflow_runs
                SET status = ?, completed_at = ?, error = ?, dead_lettered = ?,
                    next_attempt_at = NULL, lease_token = NULL, lease_expires_at = NULL
                WHERE id = ? AND lease_token = ? AND status IN ('pending', 'running')
                """,
                (status.value, _ts(now), error, int(dead_lettered), run_id, token),
            ).rowcount
            if updated == 1 and event is not None:
                self._conn.execute(_INSERT_OUTBOX, _outbox_params(event))
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")
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
        async with self._lock:
            return await asyncio.to_thread(
                self._finish_run_sync, run_id, token, status, now, error, dead_lettered, event
            )

    async def release_run(self, run_id: str, token: str) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET lease_token = NULL, lease_expires_at = NULL "
            "WHERE id = ? AND lease_token = ? AND status IN ('pending', 'running')",
            run_id,
            token,
        )
        return updated == 1

    async def request_run_cancel(self, run_id: str) -> bool:
        updated = await self._execute(
            "UPDATE workflow_runs SET cancel_requested = 1 "
            "WHERE id = ? AND status IN ('pending', 'running')",
            run_id,
        )
        return updated == 1

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        dead_lettered: Optional[bool] = None,
        limit: int = 100,
    ) -> list[WorkflowRun]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if dead_lettered is not None:
            clauses.append("dead_lettered = ?")
            params.append(int(dead_lettered))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs {where} "
            "ORDER BY created_at LIMIT ?",
            *params,
            limit,
        )
        return [_run_from_row(r) for r in rows]

    async def list_due_runs(self, now: datetime, limit: int) -> list[WorkflowRun]:
        now_s = _ts(now)
        rows = await self._fetchall(
            f"""
            SELECT {_RUN_COLUMNS} FROM workflow_runs
            WHERE status IN ('pending', 'running')
              AND (lease_expires_at IS NULL OR lease_expires_at <= ?)
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            ORDER BY created_at LIMIT ?
            """,
            now_s,
            now_s,
            limit,
        )
        return [_run_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Steps
    async def start_step(
        self, run_id: str, action_index: int, idempotency_key: str, now: datetime
    ) -> RunStep:
        step = RunStep(
            run_id=run_id,
            action_index=action_index,
            idempotency_key=idempotency_key,
            started_at=now,
        )
        await self._execute(
            f"""
            INSERT INTO run_steps ({_STEP_COLUMNS})
            VALUES (?, ?, ?, 'pending', NULL, NULL, 1, ?, ?, NULL)
            ON CONFLICT (run_id, action_index) DO UPDATE SET
                status = 'pending', result = NULL, error = NULL,
                attempt_count = attempt_count + 1,
                started_at = excluded.started_at, completed_at = NULL
            """,
            step.id,
            run_id,
            action_index,
            idempotency_key,
            _ts(now),
        )
        row = await self._fetchone(
            f"SELECT {_STEP_COLUMNS} FROM run_steps WHERE run_id = ? AND action_index = ?",
            run_id,
            action_index,
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
            "UPDATE run_steps SET status = ?, result = ?, error = ?, completed_at = ? "
            "WHERE id = ?",
            status.value,
            json.dumps(result) if result is not None else None,
            error,
            _ts(now),
            step_id,
        )

    async def list_steps(self, run_id: str) -> list[RunStep]:
        rows = await self._fetchall(
            f"SELECT {_STEP_COLUMNS} FROM run_steps WHERE run_id = ? ORDER BY action_index",
            run_id,
        )
        return [_step_from_row(r) for r in rows]

    async def close(self) -> None:
        async with self._lock:
            self._conn.close()
