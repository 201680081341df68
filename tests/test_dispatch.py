"""Run submission and cancellation through the dispatcher."""

import pytest

from paywire import Candidate, RunDispatcher
from paywire.exceptions import RunConflict, RunNotFound, SubmissionInvalid
from paywire.persistence import InMemoryRunRepository


@pytest.mark.asyncio
async def test_dispatch_queues_run():
    repository = InMemoryRunRepository()
    dispatcher = RunDispatcher(repository)
    dispatcher.add_step(
        "quote",
        candidates=[("svc-a", "0x1"), {"serviceId": "svc-b", "paymentProof": "0x2"}],
        payload={"sku": "abc"},
        retry_policy={"maxRetries": 3},
    )
    dispatcher.add_step(
        "confirm", candidates=[Candidate(service_id="svc-c", payment_proof="0x3")]
    )

    accepted = await dispatcher.dispatch("wf_dispatch")

    assert accepted.status == "queued"
    assert accepted.workflow_id == "wf_dispatch"
    assert accepted.run_id.startswith("run_")

    job = await repository.claim_next()
    assert job.run_id == accepted.run_id
    steps = job.submission.steps
    assert [s.step_id for s in steps] == ["quote", "confirm"]
    assert [c.service_id for c in steps[0].candidates] == ["svc-a", "svc-b"]
    assert steps[0].retry_policy.max_retries == 3
    assert steps[0].payload == {"sku": "abc"}


@pytest.mark.asyncio
async def test_dispatch_resets_itinerary():
    dispatcher = RunDispatcher(InMemoryRunRepository())
    dispatcher.add_step("only", candidates=[("svc-a", "0x1")])
    await dispatcher.dispatch("wf")

    with pytest.raises(SubmissionInvalid):
        await dispatcher.dispatch("wf")


@pytest.mark.asyncio
async def test_duplicate_run_id_conflicts():
    dispatcher = RunDispatcher(InMemoryRunRepository())
    submission = {
        "runId": "run_fixed",
        "workflowId": "wf",
        "steps": [
            {"stepId": "s1", "candidates": [{"serviceId": "svc", "paymentProof": "0x1"}]}
        ],
    }

    accepted = await dispatcher.submit(submission)
    assert accepted.run_id == "run_fixed"
    assert accepted.to_wire() == {
        "runId": "run_fixed",
        "workflowId": "wf",
        "status": "queued",
    }

    with pytest.raises(RunConflict):
        await dispatcher.submit(submission)


def test_add_step_rejects_invalid_step():
    dispatcher = RunDispatcher(InMemoryRunRepository())
    with pytest.raises(SubmissionInvalid):
        dispatcher.add_step("empty", candidates=[])
    with pytest.raises(SubmissionInvalid):
        dispatcher.add_step("bad", candidates=[("svc", "")])
    with pytest.raises(SubmissionInvalid):
        dispatcher.add_step("policy", candidates=[("svc", "0x1")], retry_policy={"maxRetries": 50})


@pytest.mark.asyncio
async def test_submit_rejects_invalid_payload():
    dispatcher = RunDispatcher(InMemoryRunRepository())
    with pytest.raises(SubmissionInvalid) as exc_info:
        await dispatcher.submit({"runId": "r", "workflowId": "wf", "steps": []})
    assert exc_info.value.details


@pytest.mark.asyncio
async def test_cancel_outcomes():
    repository = InMemoryRunRepository()
    dispatcher = RunDispatcher(repository)

    with pytest.raises(RunNotFound):
        await dispatcher.cancel("missing")

    dispatcher.add_step("s1", candidates=[("svc", "0x1")])
    accepted = await dispatcher.dispatch("wf", run_id="run_cancel")

    record = await dispatcher.cancel(accepted.run_id)
    assert record.status == "cancelled"
    assert record.cancel_requested is True

    with pytest.raises(RunConflict) as exc_info:
        await dispatcher.cancel(accepted.run_id)
    assert exc_info.value.status == "cancelled"
