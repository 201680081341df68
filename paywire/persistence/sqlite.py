"""SQLite implementation of the run repository."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ..contracts import (
    CANCELLED_ERROR,
    LEASE_EXPIRED_ERROR,
    TERMINAL_STATUSES,
    RunResult,
    RunSubmission,
    StepOutcome,
    utcnow,
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


def _ts(value: datetime) -> str:
    # fixed-width text so that string comparison orders timestamps
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunRepository(RunRepository):
    """Persist runs and the job queue using SQLite.

    Several repository instances (or processes) may share one database
    file. Every mutation runs in a ``BEGIN IMMEDIATE`` transaction, and
    claims are a compare-and-swap on ``queue_status``.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=timeout,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    ok INTEGER NOT NULL DEFAULT 0,
                    run_status TEXT NOT NULL,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    error_message TEXT,
                    run_output TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS run_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL UNIQUE,
                    workflow_id TEXT NOT NULL,
                    submission TEXT NOT NULL,
                    queue_status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    available_at TEXT NOT NULL,
                    locked_at TEXT,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS run_queue_claim_idx "
                "ON run_queue (queue_status, available_at)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS step_outcomes (
                    run_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    succeeded INTEGER NOT NULL,
                    chosen_service_id TEXT,
                    attempts_count INTEGER NOT NULL,
                    PRIMARY KEY (run_id, step_id)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS step_attempts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    attempt_index INTEGER NOT NULL,
                    service_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    payment_proof TEXT NOT NULL,
                    ok INTEGER NOT NULL,
                    status_code INTEGER NOT NULL,
                    error_code TEXT,
                    response TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (run_id, step_id, attempt_index)
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_outcome(
        self, cur: sqlite3.Cursor, run_id: str, position: int, record: StepOutcomeRecord
    ) -> None:
        cur.execute(
            """
            INSERT INTO step_outcomes
                (run_id, step_id, position, succeeded, chosen_service_id, attempts_count)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                record.step_id,
                position,
                int(record.succeeded),
                record.chosen_service_id,
                len(record.attempts),
            ),
        )
        cur.executemany(
            """
            INSERT INTO step_attempts (
                run_id, step_id, attempt_index, service_id, request_id,
                payment_proof, ok, status_code, error_code, response, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    run_id,
                    record.step_id,
                    a.attempt_index,
                    a.service_id,
                    a.request_id,
                    a.payment_proof,
                    int(a.ok),
                    a.status_code,
                    a.error_code,
                    json.dumps(a.response, default=str),
                    _ts(a.created_at),
                )
                for a in record.attempts
            ],
        )

    def _holds_claim(
        self, cur: sqlite3.Cursor, run_id: str, claim: Optional[int]
    ) -> bool:
        if claim is None:
            return True
        row = cur.execute(
            "SELECT queue_status, attempts FROM run_queue WHERE run_id = ?", (run_id,)
        ).fetchone()
        return (
            row is not None
            and row["queue_status"] == "running"
            and row["attempts"] == claim
        )

    def _finish(
        self,
        cur: sqlite3.Cursor,
        run_id: str,
        status: str,
        error_message: Optional[str],
        now: str,
    ) -> None:
        cur.execute(
            """
            UPDATE runs
            SET run_status = ?, completed_at = ?, error_message = ?,
                ok = CASE WHEN ? = 'completed' THEN ok ELSE 0 END
            WHERE run_id = ?
            """,
            (status, now, error_message, status, run_id),
        )
        cur.execute(
            """
            UPDATE run_queue
            SET queue_status = ?, locked_at = NULL, updated_at = ?,
                last_error = CASE WHEN ? = 'failed' THEN ? ELSE last_error END
            WHERE run_id = ?
            """,
            (status, now, status, error_message, run_id),
        )

    def _release_in(
        self,
        cur: sqlite3.Cursor,
        run_id: str,
        error: str,
        retry_delay_ms: int,
        max_claim_attempts: int,
    ) -> str | None:
        row = cur.execute(
            """
            SELECT q.queue_status, q.attempts, r.cancel_requested
            FROM run_queue q JOIN runs r ON r.run_id = q.run_id
            WHERE q.run_id = ?
            """,
            (run_id,),
        ).fetchone()
        if row is None or row["queue_status"] != "running":
            return None
        now = utcnow()
        if row["cancel_requested"]:
            status = "cancelled"
            self._finish(cur, run_id, status, CANCELLED_ERROR, _ts(now))
        elif row["attempts"] >= max_claim_attempts:
            status = "failed"
            self._finish(cur, run_id, status, error, _ts(now))
        else:
            status = "queued"
            cur.execute(
                """
                UPDATE run_queue
                SET queue_status = 'queued', available_at = ?, locked_at = NULL,
                    last_error = ?, updated_at = ?
                WHERE run_id = ?
                """,
                (
                    _ts(now + timedelta(milliseconds=retry_delay_ms)),
                    error,
                    _ts(now),
                    run_id,
                ),
            )
        logger.warning(f"Released run {run_id} after '{error}'; queue status {status}")
        return status

    # ------------------------------------------------------------------
    # Synchronous operations, run in a worker thread
    def _enqueue_sync(self, submission: RunSubmission) -> bool:
        now = _ts(utcnow())
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT OR IGNORE INTO runs (run_id, workflow_id, ok, run_status, created_at)
                VALUES (?, ?, 0, 'queued', ?)
                """,
                (submission.run_id, submission.workflow_id, now),
            )
            if cur.rowcount == 0:
                return False
            cur.execute(
                """
                INSERT INTO run_queue (
                    run_id, workflow_id, submission, queue_status, attempts,
                    available_at, created_at, updated_at
                )
                VALUES (?, ?, ?, 'queued', 0, ?, ?, ?)
                """,
                (
                    submission.run_id,
                    submission.workflow_id,
                    submission.to_json(),
                    now,
                    now,
                    now,
                ),
            )
            return True

    def _claim_sync(self) -> QueuedJob | None:
        now = _ts(utcnow())
        with self._transaction() as cur:
            row = cur.execute(
                """
                SELECT q.id, q.run_id, q.workflow_id, q.submission, q.attempts, r.run_status
                FROM run_queue q JOIN runs r ON r.run_id = q.run_id
                WHERE q.queue_status = 'queued' AND q.available_at <= ?
                ORDER BY q.created_at ASC, q.id ASC
                LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None
            if row["run_status"] in TERMINAL_STATUSES:
                cur.execute(
                    """
                    UPDATE run_queue SET queue_status = ?, locked_at = NULL, updated_at = ?
                    WHERE id = ? AND queue_status = 'queued'
                    """,
                    (row["run_status"], now, row["id"]),
                )
                return None
            cur.execute(
                """
                UPDATE run_queue
                SET queue_status = 'running', attempts = attempts + 1,
                    locked_at = ?, updated_at = ?
                WHERE id = ? AND queue_status = 'queued'
                """,
                (now, now, row["id"]),
            )
            if cur.rowcount != 1:
                return None
            cur.execute(
                """
                UPDATE runs
                SET run_status = 'running', started_at = COALESCE(started_at, ?),
                    error_message = NULL
                WHERE run_id = ? AND run_status IN ('queued', 'running')
                """,
                (now, row["run_id"]),
            )
        return QueuedJob(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            submission=RunSubmission.model_validate_json(row["submission"]),
            attempts=row["attempts"] + 1,
        )

    def _cancel_sync(self, run_id: str) -> CancellationRecord | None:
        with self._transaction() as cur:
            row = cur.execute(
                """
                SELECT r.run_status, r.cancel_requested, q.queue_status
                FROM runs r LEFT JOIN run_queue q ON q.run_id = r.run_id
                WHERE r.run_id = ?
                """,
                (run_id,),
            ).fetchone()
            if row is None:
                return None
            if row["run_status"] in TERMINAL_STATUSES:
                return CancellationRecord(
                    run_id=run_id,
                    status=row["run_status"],
                    cancel_requested=bool(row["cancel_requested"]),
                    already_terminal=True,
                )
            cur.execute("UPDATE runs SET cancel_requested = 1 WHERE run_id = ?", (run_id,))
            status = row["run_status"]
            if row["queue_status"] == "queued":
                status = "cancelled"
                self._finish(cur, run_id, status, CANCELLED_ERROR, _ts(utcnow()))
        return CancellationRecord(run_id=run_id, status=status, cancel_requested=True)

    def _touch_sync(self, run_id: str, claim: int) -> bool:
        with self._transaction() as cur:
            if not self._holds_claim(cur, run_id, claim):
                return False
            now = _ts(utcnow())
            cur.execute(
                "UPDATE run_queue SET locked_at = ?, updated_at = ? WHERE run_id = ?",
                (now, now, run_id),
            )
            return True

    def _save_step_sync(
        self, run_id: str, outcome: StepOutcome, claim: Optional[int]
    ) -> None:
        record = StepOutcomeRecord.from_outcome(outcome)
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT run_status FROM runs WHERE run_id = ?", (run_id,)
            ).fetchone()
            if row is None or row["run_status"] != "running":
                return
            if not self._holds_claim(cur, run_id, claim):
                return
            existing = cur.execute(
                "SELECT position FROM step_outcomes WHERE run_id = ? AND step_id = ?",
                (run_id, record.step_id),
            ).fetchone()
            if existing is not None:
                position = existing["position"]
            else:
                position = cur.execute(
                    "SELECT COUNT(*) FROM step_outcomes WHERE run_id = ?", (run_id,)
                ).fetchone()[0]
            cur.execute(
                "DELETE FROM step_attempts WHERE run_id = ? AND step_id = ?",
                (run_id, record.step_id),
            )
            cur.execute(
                "DELETE FROM step_outcomes WHERE run_id = ? AND step_id = ?",
                (run_id, record.step_id),
            )
            self._insert_outcome(cur, run_id, position, record)

    def _finalize_sync(
        self,
        result: RunResult,
        status: str,
        error_message: Optional[str],
        claim: Optional[int],
    ) -> bool:
        now = _ts(utcnow())
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT run_status FROM runs WHERE run_id = ?", (result.run_id,)
            ).fetchone()
            if row is None or row["run_status"] != "running":
                return False
            if not self._holds_claim(cur, result.run_id, claim):
                return False
            cur.execute(
                "UPDATE runs SET ok = ?, run_output = ? WHERE run_id = ?",
                (
                    int(result.ok),
                    json.dumps(result.run_output.to_wire()),
                    result.run_id,
                ),
            )
            cur.execute("DELETE FROM step_attempts WHERE run_id = ?", (result.run_id,))
            cur.execute("DELETE FROM step_outcomes WHERE run_id = ?", (result.run_id,))
            for position, outcome in enumerate(result.steps):
                self._insert_outcome(
                    cur, result.run_id, position, StepOutcomeRecord.from_outcome(outcome)
                )
            self._finish(cur, result.run_id, status, error_message, now)
        return True

    def _release_sync(
        self,
        run_id: str,
        error: str,
        retry_delay_ms: int,
        max_claim_attempts: int,
        claim: Optional[int],
    ) -> str | None:
        with self._transaction() as cur:
            if not self._holds_claim(cur, run_id, claim):
                return None
            return self._release_in(cur, run_id, error, retry_delay_ms, max_claim_attempts)

    def _reclaim_sync(self, lease_timeout_ms: int, max_claim_attempts: int) -> list[str]:
        cutoff = _ts(utcnow() - timedelta(milliseconds=lease_timeout_ms))
        with self._transaction() as cur:
            rows = cur.execute(
                """
                SELECT run_id FROM run_queue
                WHERE queue_status = 'running' AND locked_at < ?
                ORDER BY locked_at
                """,
                (cutoff,),
            ).fetchall()
            expired = [r["run_id"] for r in rows]
            for run_id in expired:
                self._release_in(cur, run_id, LEASE_EXPIRED_ERROR, 0, max_claim_attempts)
        return expired

    def _get_run_sync(self, run_id: str) -> RunRecord | None:
        row = self._fetchone("SELECT * FROM runs WHERE run_id = ?", run_id)
        if row is None:
            return None
        outcome_rows = self._fetchall(
            "SELECT * FROM step_outcomes WHERE run_id = ? ORDER BY position",
            run_id,
        )
        attempt_rows = self._fetchall(
            "SELECT * FROM step_attempts WHERE run_id = ? ORDER BY attempt_index",
            run_id,
        )
        attempts: dict[str, list[AttemptRecord]] = {}
        for a in attempt_rows:
            attempts.setdefault(a["step_id"], []).append(
                AttemptRecord(
                    attempt_index=a["attempt_index"],
                    service_id=a["service_id"],
                    request_id=a["request_id"],
                    payment_proof=a["payment_proof"],
                    ok=bool(a["ok"]),
                    status_code=a["status_code"],
                    error_code=a["error_code"],
                    response=json.loads(a["response"]) if a["response"] else None,
                    created_at=_dt(a["created_at"]),
                )
            )
        return RunRecord(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            status=row["run_status"],
            ok=bool(row["ok"]),
            cancel_requested=bool(row["cancel_requested"]),
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            error_message=row["error_message"],
            run_output=json.loads(row["run_output"]) if row["run_output"] else None,
            steps=[
                StepOutcomeRecord(
                    step_id=o["step_id"],
                    succeeded=bool(o["succeeded"]),
                    chosen_service_id=o["chosen_service_id"],
                    attempts=attempts.get(o["step_id"], []),
                )
                for o in outcome_rows
            ],
        )

    # ------------------------------------------------------------------
    # Repository API
    async def enqueue_run(self, submission: RunSubmission) -> bool:
        return await asyncio.to_thread(self._enqueue_sync, submission)

    async def claim_next(self) -> QueuedJob | None:
        return await asyncio.to_thread(self._claim_sync)

    async def is_cancel_requested(self, run_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT cancel_requested FROM runs WHERE run_id = ?",
            run_id,
        )
        return bool(row and row["cancel_requested"])

    async def request_cancellation(self, run_id: str) -> CancellationRecord | None:
        return await asyncio.to_thread(self._cancel_sync, run_id)

    async def touch_lease(self, run_id: str, claim: int) -> bool:
        return await asyncio.to_thread(self._touch_sync, run_id, claim)

    async def save_step_outcome(
        self, run_id: str, outcome: StepOutcome, claim: Optional[int] = None
    ) -> None:
        await asyncio.to_thread(self._save_step_sync, run_id, outcome, claim)

    async def finalize_run(
        self,
        result: RunResult,
        status: str,
        error_message: Optional[str] = None,
        claim: Optional[int] = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._finalize_sync, result, status, error_message, claim
        )

    async def release_run(
        self,
        run_id: str,
        error: str,
        retry_delay_ms: int = 0,
        max_claim_attempts: int = 3,
        claim: Optional[int] = None,
    ) -> str | None:
        return await asyncio.to_thread(
            self._release_sync,
            run_id,
            error,
            retry_delay_ms,
            max_claim_attempts,
            claim,
        )

    async def reclaim_expired(
        self, lease_timeout_ms: int, max_claim_attempts: int = 3
    ) -> list[str]:
        return await asyncio.to_thread(
            self._reclaim_sync, lease_timeout_ms, max_claim_attempts
        )

    async def get_run(self, run_id: str) -> RunRecord | None:
        return await asyncio.to_thread(self._get_run_sync, run_id)

    async def get_queue_entry(self, run_id: str) -> QueueEntry | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM run_queue WHERE run_id = ?", run_id
        )
        if row is None:
            return None
        return QueueEntry(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            queue_status=row["queue_status"],
            attempts=row["attempts"],
            available_at=_dt(row["available_at"]),
            locked_at=_dt(row["locked_at"]),
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    async def list_runs(self, limit: int = 30) -> list[RunListItem]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT r.*,
                (SELECT COUNT(*) FROM step_outcomes so WHERE so.run_id = r.run_id)
                    AS step_count,
                (SELECT COUNT(*) FROM step_attempts sa WHERE sa.run_id = r.run_id)
                    AS attempt_count
            FROM runs r
            ORDER BY r.created_at DESC, r.rowid DESC
            LIMIT ?
            """,
            limit,
        )
        return [
            RunListItem(
                run_id=r["run_id"],
                workflow_id=r["workflow_id"],
                ok=bool(r["ok"]),
                status=r["run_status"],
                created_at=_dt(r["created_at"]),
                started_at=_dt(r["started_at"]),
                completed_at=_dt(r["completed_at"]),
                error_message=r["error_message"],
                step_count=r["step_count"],
                attempt_count=r["attempt_count"],
            )
            for r in rows
        ]

    async def get_timeline(self, run_id: str) -> list[TimelineRow]:
        run = await self.get_run(run_id)
        return run.timeline() if run else []
