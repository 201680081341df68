"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import Attempt, RunStatus, RunSubmission, StepOutcome
from ..utils.retry import get_error_code


class QueuedJob(BaseModel):
    """A queue entry claimed by a worker."""

    run_id: str
    workflow_id: str
    submission: RunSubmission
    attempts: int


class QueueEntry(BaseModel):
    """Durable job-queue row backing a run."""

    run_id: str
    workflow_id: str
    queue_status: RunStatus = "queued"
    attempts: int = 0
    available_at: datetime
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AttemptRecord(Attempt):
    """Attempt as stored, with its position in the step."""

    attempt_index: int
    error_code: Optional[str] = None


class StepOutcomeRecord(BaseModel):
    step_id: str
    succeeded: bool
    chosen_service_id: Optional[str] = None
    attempts: list[AttemptRecord] = Field(default_factory=list)

    @classmethod
    def from_outcome(cls, outcome: StepOutcome) -> "StepOutcomeRecord":
        return cls(
            step_id=outcome.step_id,
            succeeded=outcome.succeeded,
            chosen_service_id=outcome.chosen_service_id,
            attempts=[
                AttemptRecord(
                    **attempt.model_dump(),
                    attempt_index=index,
                    error_code=get_error_code(attempt.response),
                )
                for index, attempt in enumerate(outcome.attempts, start=1)
            ],
        )


class RunSummary(BaseModel):
    """Aggregated view of one run."""

    run_id: str
    workflow_id: str
    ok: bool
    status: RunStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    step_count: int = 0
    successful_step_count: int = 0
    attempt_count: int = 0
    selected_providers: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    run_output: Optional[dict[str, Any]] = None


class RunRecord(BaseModel):
    """Persisted run with its step outcomes."""

    run_id: str
    workflow_id: str
    status: RunStatus = "queued"
    ok: bool = False
    cancel_requested: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    run_output: Optional[dict[str, Any]] = None
    steps: list[StepOutcomeRecord] = Field(default_factory=list)

    def summary(self) -> RunSummary:
        duration_ms = None
        if self.started_at and self.completed_at:
            duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        providers: list[str] = []
        for step in self.steps:
            if step.chosen_service_id and step.chosen_service_id not in providers:
                providers.append(step.chosen_service_id)
        return RunSummary(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            ok=self.ok,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_ms=duration_ms,
            step_count=len(self.steps),
            successful_step_count=sum(1 for s in self.steps if s.succeeded),
            attempt_count=sum(len(s.attempts) for s in self.steps),
            selected_providers=providers,
            error_message=self.error_message,
            run_output=self.run_output,
        )

    def timeline(self) -> list["TimelineRow"]:
        return [
            TimelineRow(
                step_id=step.step_id,
                succeeded=step.succeeded,
                chosen_service_id=step.chosen_service_id,
                attempt_index=attempt.attempt_index,
                service_id=attempt.service_id,
                request_id=attempt.request_id,
                payment_proof=attempt.payment_proof,
                ok=attempt.ok,
                status_code=attempt.status_code,
                error_code=attempt.error_code,
                created_at=attempt.created_at,
            )
            for step in self.steps
            for attempt in step.attempts
        ]


class RunListItem(BaseModel):
    run_id: str
    workflow_id: str
    ok: bool
    status: RunStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    step_count: int = 0
    attempt_count: int = 0


class TimelineRow(BaseModel):
    """One attempt in the order it happened within the run."""

    step_id: str
    succeeded: bool
    chosen_service_id: Optional[str] = None
    attempt_index: int
    service_id: str
    request_id: str
    payment_proof: str
    ok: bool
    status_code: int
    error_code: Optional[str] = None
    created_at: datetime


class CancellationRecord(BaseModel):
    run_id: str
    status: RunStatus
    cancel_requested: bool
    already_terminal: bool = False
