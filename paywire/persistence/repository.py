"""Repository abstraction for run, queue and attempt persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import RunResult, RunSubmission, StepOutcome
from .models import (
    CancellationRecord,
    QueuedJob,
    QueueEntry,
    RunListItem,
    RunRecord,
    TimelineRow,
)


class RunRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def enqueue_run(self, submission: RunSubmission) -> bool:
        """Create the run and its queue entry; ``False`` if the run exists."""

    async def claim_next(self) -> QueuedJob | None:
        """Exclusively claim the oldest available queue entry."""

    async def is_cancel_requested(self, run_id: str) -> bool:
        """Return the run's cancellation flag."""

    async def request_cancellation(self, run_id: str) -> CancellationRecord | None:
        """Flag a run for cancellation, finalizing it when still queued."""

    async def touch_lease(self, run_id: str, claim: int) -> bool:
        """Renew the lease of a running entry; ``False`` if ``claim`` no longer holds it."""

    async def save_step_outcome(
        self, run_id: str, outcome: StepOutcome, claim: Optional[int] = None
    ) -> None:
        """Persist one finished step while the run is running.

        When ``claim`` is given, the write only applies while that claim
        still holds the queue entry. The same holds for ``finalize_run`` and
        ``release_run``.
        """

    async def finalize_run(
        self,
        result: RunResult,
        status: str,
        error_message: Optional[str] = None,
        claim: Optional[int] = None,
    ) -> bool:
        """Write the terminal run, its step history and queue status atomically."""

    async def release_run(
        self,
        run_id: str,
        error: str,
        retry_delay_ms: int = 0,
        max_claim_attempts: int = 3,
        claim: Optional[int] = None,
    ) -> str | None:
        """Return a claimed entry to the queue after a worker failure."""

    async def reclaim_expired(
        self, lease_timeout_ms: int, max_claim_attempts: int = 3
    ) -> list[str]:
        """Release running entries whose lease has expired."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve the run with its step outcomes and attempts."""

    async def get_queue_entry(self, run_id: str) -> QueueEntry | None:
        """Retrieve the queue entry backing a run."""

    async def list_runs(self, limit: int = 30) -> list[RunListItem]:
        """Return the most recent runs, newest first."""

    async def get_timeline(self, run_id: str) -> list[TimelineRow]:
        """Return every attempt of the run in execution order."""
