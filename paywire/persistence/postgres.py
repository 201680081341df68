"""PostgreSQL implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import asyncpg

from ..contracts import (
    CANCELLED_ERROR,
    LEASE_EXPIRED_ERROR,
    TERMINAL_STATUSES,
    RunResult,
    RunSubmission,
    StepOutcome,
)
from .models import (
    AttemptRecord,
    CancellationRecord,
    QueuedJob,
    QueueEntry,
    RunListItem,
    RunRecord,
    StepOutcomeRecord,
    TimelineRow,
)
from .repository import RunRepository

logger = logging.getLogger(__name__)

SCHEMA_LOCK_KEY = 7_301_114_201


class PostgresRunRepository(RunRepository):
    """Persist runs and the job queue using PostgreSQL.

    Claims use ``FOR UPDATE SKIP LOCKED`` so any number of workers can poll
    the same queue table.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        try:
            await conn.set_type_codec(
                "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
            )
            if not self._initialized:
                async with self._schema_lock:
                    if not self._initialized:
                        # serializes schema creation across processes too
                        async with conn.transaction():
                            await conn.execute(
                                "SELECT pg_advisory_xact_lock($1)", SCHEMA_LOCK_KEY
                            )
                            await self._ensure_schema(conn)
                        self._initialized = True
        except BaseException:
            await conn.close()
            raise
        return conn

    async def _lock_entry(
        self, conn: asyncpg.Connection, run_id: str
    ) -> tuple[asyncpg.Record | None, asyncpg.Record | None]:
        """Lock the queue entry, then the run; every writer uses this order."""
        entry = await conn.fetchrow(
            """
            SELECT queue_status, attempts FROM run_queue
            WHERE run_id = $1
            FOR UPDATE
            """,
            run_id,
        )
        run = await conn.fetchrow(
            """
            SELECT run_status, cancel_requested FROM runs
            WHERE run_id = $1
            FOR UPDATE
            """,
            run_id,
        )
        return entry, run

    @staticmethod
    def _holds_claim(entry: asyncpg.Record | None, claim: Optional[int]) -> bool:
        if claim is None:
            return True
        return (
            entry is not None
            and entry["queue_status"] == "running"
            and entry["attempts"] == claim
        )

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                ok BOOLEAN NOT NULL DEFAULT FALSE,
                run_status TEXT NOT NULL,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                error_message TEXT,
                run_output JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS run_queue (
                id BIGSERIAL PRIMARY KEY,
                run_id TEXT NOT NULL UNIQUE REFERENCES runs (run_id),
                workflow_id TEXT NOT NULL,
                submission JSONB NOT NULL,
                queue_status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                available_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                locked_at TIMESTAMPTZ,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS run_queue_claim_idx "
            "ON run_queue (queue_status, available_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_outcomes (
                run_id TEXT NOT NULL REFERENCES runs (run_id),
                step_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                succeeded BOOLEAN NOT NULL,
                chosen_service_id TEXT,
                attempts_count INTEGER NOT NULL,
                PRIMARY KEY (run_id, step_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_attempts (
                id BIGSERIAL PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES runs (run_id),
                step_id TEXT NOT NULL,
                attempt_index INTEGER NOT NULL,
                service_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                payment_proof TEXT NOT NULL,
                ok BOOLEAN NOT NULL,
                status_code INTEGER NOT NULL,
                error_code TEXT,
                response JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE (run_id, step_id, attempt_index)
            )
            """
        )

    # ------------------------------------------------------------------
    async def _insert_outcome(
        self,
        conn: asyncpg.Connection,
        run_id: str,
        position: int,
        record: StepOutcomeRecord,
    ) -> None:
        await conn.execute(
            """
            INSERT INTO step_outcomes
                (run_id, step_id, position, succeeded, chosen_service_id, attempts_count)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            run_id,
            record.step_id,
            position,
            record.succeeded,
            record.chosen_service_id,
            len(record.attempts),
        )
        await conn.executemany(
            """
            INSERT INTO step_attempts (
                run_id, step_id, attempt_index, service_id, request_id,
                payment_proof, ok, status_code, error_code, response, created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            """,
            [
                (
                    run_id,
                    record.step_id,
                    a.attempt_index,
                    a.service_id,
                    a.request_id,
                    a.payment_proof,
                    a.ok,
                    a.status_code,
                    a.error_code,
                    a.response,
                    a.created_at,
                )
                for a in record.attempts
            ],
        )

    async def _finish(
        self,
        conn: asyncpg.Connection,
        run_id: str,
        status: str,
        error_message: Optional[str],
    ) -> None:
        await conn.execute(
            """
            UPDATE runs
            SET run_status = $2, completed_at = NOW(), error_message = $3,
                ok = CASE WHEN $2 = 'completed' THEN ok ELSE FALSE END
            WHERE run_id = $1
            """,
            run_id,
            status,
            error_message,
        )
        await conn.execute(
            """
            UPDATE run_queue
            SET queue_status = $2, locked_at = NULL, updated_at = NOW(),
                last_error = CASE WHEN $2 = 'failed' THEN $3 ELSE last_error END
            WHERE run_id = $1
            """,
            run_id,
            status,
            error_message,
        )

    async def _release_in(
        self,
        conn: asyncpg.Connection,
        run_id: str,
        error: str,
        retry_delay_ms: int,
        max_claim_attempts: int,
    ) -> str | None:
        entry, run = await self._lock_entry(conn, run_id)
        if entry is None or entry["queue_status"] != "running":
            return None
        if run["cancel_requested"]:
            status = "cancelled"
            await self._finish(conn, run_id, status, CANCELLED_ERROR)
        elif entry["attempts"] >= max_claim_attempts:
            status = "failed"
            await self._finish(conn, run_id, status, error)
        else:
            status = "queued"
            await conn.execute(
                """
                UPDATE run_queue
                SET queue_status = 'queued',
                    available_at = NOW() + make_interval(secs => $2::double precision / 1000),
                    locked_at = NULL, last_error = $3, updated_at = NOW()
                WHERE run_id = $1
                """,
                run_id,
                retry_delay_ms,
                error,
            )
        logger.warning(f"Released run {run_id} after '{error}'; queue status {status}")
        return status

    # ------------------------------------------------------------------
    async def enqueue_run(self, submission: RunSubmission) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    INSERT INTO runs (run_id, workflow_id, ok, run_status)
                    VALUES ($1, $2, FALSE, 'queued')
                    ON CONFLICT (run_id) DO NOTHING
                    RETURNING run_id
                    """,
                    submission.run_id,
                    submission.workflow_id,
                )
                if inserted is None:
                    return False
                await conn.execute(
                    """
                    INSERT INTO run_queue (run_id, workflow_id, submission, queue_status)
                    VALUES ($1, $2, $3, 'queued')
                    """,
                    submission.run_id,
                    submission.workflow_id,
                    submission.to_wire(),
                )
                return True
        finally:
            await conn.close()

    async def claim_next(self) -> QueuedJob | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    WITH next_job AS (
                        SELECT id
                        FROM run_queue
                        WHERE queue_status = 'queued'
                          AND available_at <= NOW()
                        ORDER BY created_at ASC, id ASC
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    UPDATE run_queue q
                    SET queue_status = 'running',
                        attempts = q.attempts + 1,
                        locked_at = NOW(),
                        updated_at = NOW()
                    FROM next_job
                    WHERE q.id = next_job.id
                    RETURNING q.run_id, q.workflow_id, q.submission, q.attempts
                    """
                )
                if row is None:
                    return None
                run_status = await conn.fetchval(
                    "SELECT run_status FROM runs WHERE run_id = $1 FOR UPDATE",
                    row["run_id"],
                )
                if run_status in TERMINAL_STATUSES:
                    await conn.execute(
                        """
                        UPDATE run_queue
                        SET queue_status = $2, locked_at = NULL, updated_at = NOW()
                        WHERE run_id = $1
                        """,
                        row["run_id"],
                        run_status,
                    )
                    return None
                await conn.execute(
                    """
                    UPDATE runs
                    SET run_status = 'running',
                        started_at = COALESCE(started_at, NOW()),
                        error_message = NULL
                    WHERE run_id = $1
                    """,
                    row["run_id"],
                )
        finally:
            await conn.close()
        return QueuedJob(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            submission=RunSubmission.model_validate(row["submission"]),
            attempts=row["attempts"],
        )

    async def is_cancel_requested(self, run_id: str) -> bool:
        conn = await self._connect()
        try:
            value = await conn.fetchval(
                "SELECT cancel_requested FROM runs WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        return bool(value)

    async def request_cancellation(self, run_id: str) -> CancellationRecord | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                entry, run = await self._lock_entry(conn, run_id)
                if entry is None or run is None:
                    return None
                if run["run_status"] in TERMINAL_STATUSES:
                    return CancellationRecord(
                        run_id=run_id,
                        status=run["run_status"],
                        cancel_requested=run["cancel_requested"],
                        already_terminal=True,
                    )
                await conn.execute(
                    "UPDATE runs SET cancel_requested = TRUE WHERE run_id = $1", run_id
                )
                status = run["run_status"]
                if entry["queue_status"] == "queued":
                    status = "cancelled"
                    await self._finish(conn, run_id, status, CANCELLED_ERROR)
        finally:
            await conn.close()
        return CancellationRecord(run_id=run_id, status=status, cancel_requested=True)

    async def touch_lease(self, run_id: str, claim: int) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                entry = await conn.fetchrow(
                    """
                    SELECT queue_status, attempts FROM run_queue
                    WHERE run_id = $1
                    FOR UPDATE
                    """,
                    run_id,
                )
                if not self._holds_claim(entry, claim):
                    return False
                await conn.execute(
                    """
                    UPDATE run_queue SET locked_at = NOW(), updated_at = NOW()
                    WHERE run_id = $1
                    """,
                    run_id,
                )
                return True
        finally:
            await conn.close()

    async def save_step_outcome(
        self, run_id: str, outcome: StepOutcome, claim: Optional[int] = None
    ) -> None:
        record = StepOutcomeRecord.from_outcome(outcome)
        conn = await self._connect()
        try:
            async with conn.transaction():
                entry, run = await self._lock_entry(conn, run_id)
                if run is None or run["run_status"] != "running":
                    return
                if not self._holds_claim(entry, claim):
                    return
                position = await conn.fetchval(
                    """
                    SELECT COALESCE(
                        (SELECT position FROM step_outcomes
                         WHERE run_id = $1 AND step_id = $2),
                        (SELECT COUNT(*) FROM step_outcomes WHERE run_id = $1)
                    )
                    """,
                    run_id,
                    record.step_id,
                )
                await conn.execute(
                    "DELETE FROM step_attempts WHERE run_id = $1 AND step_id = $2",
                    run_id,
                    record.step_id,
                )
                await conn.execute(
                    "DELETE FROM step_outcomes WHERE run_id = $1 AND step_id = $2",
                    run_id,
                    record.step_id,
                )
                await self._insert_outcome(conn, run_id, int(position), record)
        finally:
            await conn.close()

    async def finalize_run(
        self,
        result: RunResult,
        status: str,
        error_message: Optional[str] = None,
        claim: Optional[int] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                entry, run = await self._lock_entry(conn, result.run_id)
                if run is None or run["run_status"] != "running":
                    return False
                if not self._holds_claim(entry, claim):
                    return False
                await conn.execute(
                    "UPDATE runs SET ok = $2, run_output = $3 WHERE run_id = $1",
                    result.run_id,
                    result.ok,
                    result.run_output.to_wire(),
                )
                await conn.execute(
                    "DELETE FROM step_attempts WHERE run_id = $1", result.run_id
                )
                await conn.execute(
                    "DELETE FROM step_outcomes WHERE run_id = $1", result.run_id
                )
                for position, outcome in enumerate(result.steps):
                    await self._insert_outcome(
                        conn,
                        result.run_id,
                        position,
                        StepOutcomeRecord.from_outcome(outcome),
                    )
                await self._finish(conn, result.run_id, status, error_message)
        finally:
            await conn.close()
        return True

    async def release_run(
        self,
        run_id: str,
        error: str,
        retry_delay_ms: int = 0,
        max_claim_attempts: int = 3,
        claim: Optional[int] = None,
    ) -> str | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if claim is not None:
                    entry, _ = await self._lock_entry(conn, run_id)
                    if not self._holds_claim(entry, claim):
                        return None
                return await self._release_in(
                    conn, run_id, error, retry_delay_ms, max_claim_attempts
                )
        finally:
            await conn.close()

    async def reclaim_expired(
        self, lease_timeout_ms: int, max_claim_attempts: int = 3
    ) -> list[str]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT run_id FROM run_queue
                    WHERE queue_status = 'running'
                      AND locked_at < NOW() - make_interval(secs => $1::double precision / 1000)
                    ORDER BY locked_at
                    FOR UPDATE SKIP LOCKED
                    """,
                    lease_timeout_ms,
                )
                expired = [r["run_id"] for r in rows]
                for run_id in expired:
                    await self._release_in(
                        conn, run_id, LEASE_EXPIRED_ERROR, 0, max_claim_attempts
                    )
        finally:
            await conn.close()
        return expired

    async def get_run(self, run_id: str) -> RunRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM runs WHERE run_id = $1", run_id)
            if not row:
                return None
            outcome_rows = await conn.fetch(
                "SELECT * FROM step_outcomes WHERE run_id = $1 ORDER BY position",
                run_id,
            )
            attempt_rows = await conn.fetch(
                "SELECT * FROM step_attempts WHERE run_id = $1 ORDER BY attempt_index",
                run_id,
            )
        finally:
            await conn.close()
        attempts: dict[str, list[AttemptRecord]] = {}
        for a in attempt_rows:
            attempts.setdefault(a["step_id"], []).append(
                AttemptRecord(
                    attempt_index=a["attempt_index"],
                    service_id=a["service_id"],
                    request_id=a["request_id"],
                    payment_proof=a["payment_proof"],
                    ok=a["ok"],
                    status_code=a["status_code"],
                    error_code=a["error_code"],
                    response=a["response"],
                    created_at=a["created_at"],
                )
            )
        return RunRecord(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            status=row["run_status"],
            ok=row["ok"],
            cancel_requested=row["cancel_requested"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error_message=row["error_message"],
            run_output=row["run_output"],
            steps=[
                StepOutcomeRecord(
                    step_id=o["step_id"],
                    succeeded=o["succeeded"],
                    chosen_service_id=o["chosen_service_id"],
                    attempts=attempts.get(o["step_id"], []),
                )
                for o in outcome_rows
            ],
        )

    async def get_queue_entry(self, run_id: str) -> QueueEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM run_queue WHERE run_id = $1", run_id
            )
        finally:
            await conn.close()
        if row is None:
            return None
        return QueueEntry(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            queue_status=row["queue_status"],
            attempts=row["attempts"],
            available_at=row["available_at"],
            locked_at=row["locked_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def list_runs(self, limit: int = 30) -> list[RunListItem]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT r.*,
                    (SELECT COUNT(*) FROM step_outcomes so WHERE so.run_id = r.run_id)
                        AS step_count,
                    (SELECT COUNT(*) FROM step_attempts sa WHERE sa.run_id = r.run_id)
                        AS attempt_count
                FROM runs r
                ORDER BY r.created_at DESC
                LIMIT $1
                """,
                limit,
            )
        finally:
            await conn.close()
        return [
            RunListItem(
                run_id=r["run_id"],
                workflow_id=r["workflow_id"],
                ok=r["ok"],
                status=r["run_status"],
                created_at=r["created_at"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                error_message=r["error_message"],
                step_count=r["step_count"],
                attempt_count=r["attempt_count"],
            )
            for r in rows
        ]

    async def get_timeline(self, run_id: str) -> list[TimelineRow]:
        run = await self.get_run(run_id)
        return run.timeline() if run else []
