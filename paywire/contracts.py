"""Core contracts for paywire orchestration runs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .exceptions import SubmissionInvalid
from .utils.retry import RetryPolicyOverride

RunStatus = Literal["queued", "running", "completed", "failed", "cancelled"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

CANCELLED_ERROR = "CANCELLED"
FAILED_ERROR = "ORCHESTRATION_FAILED"
LEASE_EXPIRED_ERROR = "LEASE_EXPIRED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Candidate(CamelModel):
    """One provider option for a step, with the payment proof to spend."""

    service_id: str = Field(min_length=1)
    payment_proof: str = Field(min_length=1)


class StepSpec(CamelModel):
    """Defines one step in a run."""

    step_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    candidates: List[Candidate] = Field(min_length=1)
    retry_policy: Optional[RetryPolicyOverride] = None


class RunSubmission(CamelModel):
    """A multi-step workflow submitted for execution."""

    run_id: str = Field(min_length=1, max_length=128)
    workflow_id: str = Field(min_length=1, max_length=128)
    steps: List[StepSpec] = Field(min_length=1, max_length=10)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: List[StepSpec]) -> List[StepSpec]:
        seen: set[str] = set()
        for step in steps:
            if step.step_id in seen:
                raise ValueError(f"duplicate stepId: {step.step_id}")
            seen.add(step.step_id)
        return steps

    @classmethod
    def parse(cls, data: Any) -> "RunSubmission":
        """Validate raw submission data.

        Raises:
            SubmissionInvalid: If ``data`` is not a well-formed submission.
        """
        if isinstance(data, cls):
            return data
        try:
            if isinstance(data, (str, bytes)):
                return cls.model_validate_json(data)
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SubmissionInvalid(
                "Invalid orchestration run payload",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def make_request_id(run_id: str, step_id: str, candidate_index: int, retries: int) -> str:
    """Deterministic id for one attempt; indices are zero-based."""
    return f"{run_id}_{step_id}_{candidate_index + 1}_a{retries + 1}"


class ExecuteResult(BaseModel):
    """What the execute capability reports for one attempt."""

    ok: bool
    status_code: int
    response: Any = None


class Attempt(CamelModel):
    """One execution try of one candidate."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    request_id: str
    payment_proof: str
    ok: bool
    status_code: int
    response: Any = None
    created_at: datetime = Field(default_factory=utcnow)


class StepOutcome(CamelModel):
    """Aggregated result of a step."""

    step_id: str
    succeeded: bool = False
    chosen_service_id: Optional[str] = None
    attempts: List[Attempt] = Field(default_factory=list)

    @property
    def output(self) -> Any:
        """Response of the attempt that made the step succeed."""
        if not self.succeeded:
            return None
        for attempt in reversed(self.attempts):
            if attempt.ok:
                return attempt.response
        return None


class StepOutput(CamelModel):
    step_id: str
    succeeded: bool
    chosen_service_id: Optional[str] = None
    attempt_count: int = 0
    output: Any = None


class RunOutput(CamelModel):
    """Structured output derived from the step outcomes of a run."""

    steps: List[StepOutput] = Field(default_factory=list)
    final_step_id: Optional[str] = None
    final_output: Any = None


def build_run_output(steps: List[StepOutcome]) -> RunOutput:
    """Summarize step outcomes; the last succeeded step provides the final output."""
    outputs = [
        StepOutput(
            step_id=step.step_id,
            succeeded=step.succeeded,
            chosen_service_id=step.chosen_service_id,
            attempt_count=len(step.attempts),
            output=step.output,
        )
        for step in steps
    ]
    final = next((s for s in reversed(outputs) if s.succeeded), None)
    return RunOutput(
        steps=outputs,
        final_step_id=final.step_id if final else None,
        final_output=final.output if final else None,
    )


class RunResult(CamelModel):
    """Outcome of executing a run's steps."""

    run_id: str
    workflow_id: str
    ok: bool
    cancelled: bool = False
    steps: List[StepOutcome] = Field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        if self.cancelled:
            return "cancelled"
        return "completed" if self.ok else "failed"

    @property
    def error_message(self) -> Optional[str]:
        if self.cancelled:
            return CANCELLED_ERROR
        return None if self.ok else FAILED_ERROR

    @property
    def run_output(self) -> RunOutput:
        return build_run_output(self.steps)


class SubmissionAccepted(CamelModel):
    run_id: str
    workflow_id: str
    status: RunStatus = "queued"
