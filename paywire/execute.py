"""Step execution engine for paywire runs."""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

from .clients import BaseExecuteClient
from .contracts import (
    Attempt,
    RunResult,
    RunSubmission,
    StepOutcome,
    StepSpec,
    make_request_id,
)
from .utils.retry import build_retry_policy, compute_backoff, should_retry, sleep_ms

logger = logging.getLogger(__name__)

ShouldContinue = Callable[[str, str, int], Union[bool, Awaitable[bool]]]
StepFinished = Callable[[str, StepOutcome], Awaitable[None]]
Sleep = Callable[[int], Awaitable[None]]


class RunCancelled(Exception):
    """Raised inside the executor when cancellation is observed."""


class StepExecutor:
    """Executes a run's steps in order against ranked candidates.

    Each step tries its candidates in submission order. A failed attempt is
    retried on the same candidate while the step's retry policy allows it,
    then the next candidate is tried. The first step whose candidates are
    all exhausted fails the run; later steps are never attempted.

    Cancellation is cooperative: ``should_continue(run_id, step_id,
    attempts_so_far)`` is polled before every attempt, and an attempt that
    is already in flight always completes.
    """

    def __init__(self, client: BaseExecuteClient, sleep: Sleep = sleep_ms) -> None:
        self._client = client
        self._sleep = sleep

    async def run(
        self,
        submission: RunSubmission,
        should_continue: Optional[ShouldContinue] = None,
        on_step_finished: Optional[StepFinished] = None,
    ) -> RunResult:
        """Execute every step of ``submission`` and return the outcome."""
        steps: list[StepOutcome] = []

        for step in submission.steps:
            outcome = StepOutcome(step_id=step.step_id)
            try:
                await self._run_step(submission.run_id, step, outcome, should_continue)
            except RunCancelled:
                if outcome.attempts:
                    steps.append(outcome)
                    if on_step_finished is not None:
                        await on_step_finished(submission.run_id, outcome)
                logger.info(
                    f"Run {submission.run_id} cancelled during step {step.step_id}"
                )
                return RunResult(
                    run_id=submission.run_id,
                    workflow_id=submission.workflow_id,
                    ok=False,
                    cancelled=True,
                    steps=steps,
                )

            steps.append(outcome)
            if on_step_finished is not None:
                await on_step_finished(submission.run_id, outcome)

            if not outcome.succeeded:
                logger.info(
                    f"Step {step.step_id} exhausted all candidates for run {submission.run_id}"
                )
                return RunResult(
                    run_id=submission.run_id,
                    workflow_id=submission.workflow_id,
                    ok=False,
                    steps=steps,
                )
            logger.info(
                f"Step {step.step_id} succeeded via {outcome.chosen_service_id} "
                f"for run {submission.run_id}"
            )

        return RunResult(
            run_id=submission.run_id,
            workflow_id=submission.workflow_id,
            ok=True,
            steps=steps,
        )

    async def _run_step(
        self,
        run_id: str,
        step: StepSpec,
        outcome: StepOutcome,
        should_continue: Optional[ShouldContinue],
    ) -> None:
        policy = build_retry_policy(step.retry_policy)

        for index, candidate in enumerate(step.candidates):
            retries = 0
            while True:
                if not await self._check_continue(
                    should_continue, run_id, step.step_id, len(outcome.attempts)
                ):
                    raise RunCancelled(run_id)

                request_id = make_request_id(run_id, step.step_id, index, retries)
                result = await self._client.execute(
                    candidate.service_id,
                    request_id,
                    candidate.payment_proof,
                    step.payload,
                )
                attempt = Attempt(
                    service_id=candidate.service_id,
                    request_id=request_id,
                    payment_proof=candidate.payment_proof,
                    ok=result.ok,
                    status_code=result.status_code,
                    response=result.response,
                )
                outcome.attempts.append(attempt)

                if attempt.ok:
                    outcome.succeeded = True
                    outcome.chosen_service_id = candidate.service_id
                    return

                if not should_retry(attempt, retries, policy):
                    break

                retries += 1
                delay = compute_backoff(policy, retries)
                logger.warning(
                    f"Attempt {request_id} failed with {attempt.status_code}; "
                    f"retrying in {delay}ms"
                )
                await self._sleep(delay)

            logger.info(
                f"Candidate {candidate.service_id} exhausted for step {step.step_id} "
                f"of run {run_id}"
            )

    @staticmethod
    async def _check_continue(
        should_continue: Optional[ShouldContinue],
        run_id: str,
        step_id: str,
        attempts: int,
    ) -> bool:
        if should_continue is None:
            return True
        answer = should_continue(run_id, step_id, attempts)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)
