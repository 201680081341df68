"""In-memory implementation of the run repository."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

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


class InMemoryRunRepository(RunRepository):
    """Store runs and their queue in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts and claims are only exclusive
    between coroutines of one event loop.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._queue: Dict[str, QueueEntry] = {}
        self._submissions: Dict[str, RunSubmission] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def enqueue_run(self, submission: RunSubmission) -> bool:
        async with self._lock:
            if submission.run_id in self._runs:
                return False
            now = utcnow()
            self._runs[submission.run_id] = RunRecord(
                run_id=submission.run_id,
                workflow_id=submission.workflow_id,
                created_at=now,
            )
            self._queue[submission.run_id] = QueueEntry(
                run_id=submission.run_id,
                workflow_id=submission.workflow_id,
                available_at=now,
                created_at=now,
                updated_at=now,
            )
            self._submissions[submission.run_id] = submission
            return True

    async def claim_next(self) -> QueuedJob | None:
        async with self._lock:
            now = utcnow()
            # dict order is insertion order, so ties on created_at keep FIFO
            ready = [
                e
                for e in self._queue.values()
                if e.queue_status == "queued" and e.available_at <= now
            ]
            if not ready:
                return None
            entry = min(ready, key=lambda e: e.created_at)
            run = self._runs[entry.run_id]
            if run.status in TERMINAL_STATUSES:
                entry.queue_status = run.status
                entry.updated_at = now
                return None

            entry.queue_status = "running"
            entry.attempts += 1
            entry.locked_at = now
            entry.updated_at = now
            run.status = "running"
            run.started_at = run.started_at or now
            run.error_message = None
            return QueuedJob(
                run_id=entry.run_id,
                workflow_id=entry.workflow_id,
                submission=self._submissions[entry.run_id],
                attempts=entry.attempts,
            )

    async def is_cancel_requested(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return bool(run and run.cancel_requested)

    async def request_cancellation(self, run_id: str) -> CancellationRecord | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None
            if run.status in TERMINAL_STATUSES:
                return CancellationRecord(
                    run_id=run_id,
                    status=run.status,
                    cancel_requested=run.cancel_requested,
                    already_terminal=True,
                )
            run.cancel_requested = True
            entry = self._queue[run_id]
            if entry.queue_status == "queued":
                now = utcnow()
                self._finish(run, entry, "cancelled", CANCELLED_ERROR, now)
            return CancellationRecord(
                run_id=run_id, status=run.status, cancel_requested=True
            )

    async def touch_lease(self, run_id: str, claim: int) -> bool:
        async with self._lock:
            if not self._holds_claim(run_id, claim):
                return False
            self._queue[run_id].locked_at = utcnow()
            return True

    async def save_step_outcome(
        self, run_id: str, outcome: StepOutcome, claim: Optional[int] = None
    ) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status != "running":
                return
            if not self._holds_claim(run_id, claim):
                return
            record = StepOutcomeRecord.from_outcome(outcome)
            run.steps = [s for s in run.steps if s.step_id != outcome.step_id]
            run.steps.append(record)

    async def finalize_run(
        self,
        result: RunResult,
        status: str,
        error_message: Optional[str] = None,
        claim: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            run = self._runs.get(result.run_id)
            if run is None or run.status != "running":
                return False
            if not self._holds_claim(result.run_id, claim):
                return False
            run.ok = result.ok
            run.run_output = result.run_output.to_wire()
            run.steps = [StepOutcomeRecord.from_outcome(s) for s in result.steps]
            self._finish(run, self._queue[result.run_id], status, error_message, utcnow())
            return True

    async def release_run(
        self,
        run_id: str,
        error: str,
        retry_delay_ms: int = 0,
        max_claim_attempts: int = 3,
        claim: Optional[int] = None,
    ) -> str | None:
        async with self._lock:
            if not self._holds_claim(run_id, claim):
                return None
            return self._release(run_id, error, retry_delay_ms, max_claim_attempts)

    async def reclaim_expired(
        self, lease_timeout_ms: int, max_claim_attempts: int = 3
    ) -> list[str]:
        async with self._lock:
            cutoff = utcnow() - timedelta(milliseconds=lease_timeout_ms)
            expired = [
                e.run_id
                for e in self._queue.values()
                if e.queue_status == "running" and e.locked_at and e.locked_at < cutoff
            ]
            for run_id in expired:
                self._release(run_id, LEASE_EXPIRED_ERROR, 0, max_claim_attempts)
            return expired

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def get_queue_entry(self, run_id: str) -> QueueEntry | None:
        entry = self._queue.get(run_id)
        return entry.model_copy() if entry else None

    async def list_runs(self, limit: int = 30) -> list[RunListItem]:
        runs = sorted(
            reversed(list(self._runs.values())),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [
            RunListItem(
                run_id=r.run_id,
                workflow_id=r.workflow_id,
                ok=r.ok,
                status=r.status,
                created_at=r.created_at,
                started_at=r.started_at,
                completed_at=r.completed_at,
                error_message=r.error_message,
                step_count=len(r.steps),
                attempt_count=sum(len(s.attempts) for s in r.steps),
            )
            for r in runs[:limit]
        ]

    async def get_timeline(self, run_id: str) -> list[TimelineRow]:
        run = self._runs.get(run_id)
        return run.timeline() if run else []

    # ------------------------------------------------------------------
    def _holds_claim(self, run_id: str, claim: Optional[int]) -> bool:
        if claim is None:
            return True
        entry = self._queue.get(run_id)
        return (
            entry is not None
            and entry.queue_status == "running"
            and entry.attempts == claim
        )

    def _finish(self, run, entry, status, error_message, now) -> None:
        run.status = status
        run.completed_at = now
        run.error_message = error_message
        if status != "completed":
            run.ok = False
        entry.queue_status = status
        entry.locked_at = None
        entry.updated_at = now
        if status == "failed":
            entry.last_error = error_message

    def _release(self, run_id, error, retry_delay_ms, max_claim_attempts) -> str | None:
        entry = self._queue.get(run_id)
        if entry is None or entry.queue_status != "running":
            return None
        run = self._runs[run_id]
        now = utcnow()
        if run.cancel_requested:
            self._finish(run, entry, "cancelled", CANCELLED_ERROR, now)
        elif entry.attempts >= max_claim_attempts:
            self._finish(run, entry, "failed", error, now)
        else:
            entry.queue_status = "queued"
            entry.available_at = now + timedelta(milliseconds=retry_delay_ms)
            entry.locked_at = None
            entry.last_error = error
            entry.updated_at = now
        logger.warning(
            f"Released run {run_id} after '{error}'; queue status {entry.queue_status}"
        )
        return entry.queue_status
