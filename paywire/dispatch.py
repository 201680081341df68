"""Run dispatcher for paywire."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from .contracts import (
    Candidate,
    RunSubmission,
    StepSpec,
    SubmissionAccepted,
)
from .exceptions import RunConflict, RunNotFound, SubmissionInvalid
from .persistence import CancellationRecord, RunRepository, get_repository
from .utils.retry import RetryPolicyOverride

logger = logging.getLogger(__name__)

CandidateInput = Union[Candidate, Tuple[str, str], Dict[str, Any]]


class RunDispatcher:
    """Service responsible for submitting and cancelling runs."""

    def __init__(self, repository: RunRepository | None = None) -> None:
        self._repository = repository or get_repository()
        self._itinerary: List[StepSpec] = []

    def add_step(
        self,
        step_id: str,
        candidates: Sequence[CandidateInput],
        payload: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[RetryPolicyOverride | Dict[str, Any]] = None,
    ) -> StepSpec:
        """Append a step to the itinerary of the next dispatched run.

        Candidates may be given as ``Candidate`` models, ``(service_id,
        payment_proof)`` pairs or dicts; they are tried in the given order.
        """
        parsed: List[Candidate] = []
        try:
            for candidate in candidates:
                if isinstance(candidate, tuple):
                    service_id, payment_proof = candidate
                    candidate = Candidate(
                        service_id=service_id, payment_proof=payment_proof
                    )
                parsed.append(Candidate.model_validate(candidate))
            step = StepSpec(
                step_id=step_id,
                payload=payload or {},
                candidates=parsed,
                retry_policy=retry_policy,
            )
        except ValidationError as exc:
            raise SubmissionInvalid(
                f"Invalid step {step_id}",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc
        self._itinerary.append(step)
        return step

    async def dispatch(
        self, workflow_id: str, run_id: Optional[str] = None
    ) -> SubmissionAccepted:
        """Submit the current itinerary as a new run and reset it.

        Args:
            workflow_id: Workflow the run belongs to.
            run_id: Optional idempotency key; a random id is used if omitted.

        Returns:
            The accepted submission, in ``queued`` state.
        """
        submission = RunSubmission.parse(
            {
                "run_id": run_id or f"run_{uuid.uuid4().hex}",
                "workflow_id": workflow_id,
                "steps": [s.model_dump() for s in self._itinerary],
            }
        )
        accepted = await self.submit(submission)
        self._itinerary = []
        return accepted

    async def submit(
        self, submission: Union[RunSubmission, Dict[str, Any], str, bytes]
    ) -> SubmissionAccepted:
        """Validate and enqueue a run.

        Raises:
            SubmissionInvalid: If the submission is malformed.
            RunConflict: If a run with the same ``run_id`` already exists.
        """
        submission = RunSubmission.parse(submission)
        created = await self._repository.enqueue_run(submission)
        if not created:
            logger.info(f"Duplicate submission for run {submission.run_id}")
            raise RunConflict(submission.run_id, message="Run already exists")
        logger.info(
            f"Queued run {submission.run_id} for workflow {submission.workflow_id} "
            f"with {len(submission.steps)} steps"
        )
        return SubmissionAccepted(
            run_id=submission.run_id, workflow_id=submission.workflow_id
        )

    async def cancel(self, run_id: str) -> CancellationRecord:
        """Request cancellation of a run.

        A queued run is cancelled immediately; a running run stops before its
        next attempt.

        Raises:
            RunNotFound: If the run does not exist.
            RunConflict: If the run is already terminal.
        """
        record = await self._repository.request_cancellation(run_id)
        if record is None:
            raise RunNotFound(run_id)
        if record.already_terminal:
            raise RunConflict(
                run_id, status=record.status, message=f"Run is already {record.status}"
            )
        logger.info(f"Cancellation requested for run {run_id}; status {record.status}")
        return record
