"""Behavioural tests shared by the in-memory and SQLite repositories."""

import asyncio
import uuid

import pytest

from paywire.contracts import Attempt, RunResult, RunSubmission, StepOutcome
from paywire.persistence import InMemoryRunRepository, SQLiteRunRepository


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryRunRepository()
    return SQLiteRunRepository(tmp_path / "runs.db")


def _submission(run_id=None, step_ids=("step1",)) -> RunSubmission:
    return RunSubmission.parse(
        {
            "runId": run_id or f"run_{uuid.uuid4().hex[:8]}",
            "workflowId": "wf_test",
            "steps": [
                {
                    "stepId": step_id,
                    "payload": {"n": i},
                    "candidates": [{"serviceId": "svc-a", "paymentProof": "0x1"}],
                }
                for i, step_id in enumerate(step_ids)
            ],
        }
    )


def _outcome(step_id, statuses, service_id="svc-a") -> StepOutcome:
    attempts = [
        Attempt(
            service_id=service_id,
            request_id=f"{step_id}_{i}",
            payment_proof="0x1",
            ok=200 <= status < 300,
            status_code=status,
            response=(
                {"value": step_id}
                if 200 <= status < 300
                else {"error": {"code": "DOWNSTREAM_ERROR"}}
            ),
        )
        for i, status in enumerate(statuses, start=1)
    ]
    succeeded = bool(attempts and attempts[-1].ok)
    return StepOutcome(
        step_id=step_id,
        succeeded=succeeded,
        chosen_service_id=service_id if succeeded else None,
        attempts=attempts,
    )


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(repo):
    submission = _submission("run_dup")
    assert await repo.enqueue_run(submission) is True
    assert await repo.enqueue_run(submission) is False

    run = await repo.get_run("run_dup")
    assert run is not None
    assert run.status == "queued"
    assert run.steps == []
    entry = await repo.get_queue_entry("run_dup")
    assert entry.queue_status == "queued"
    assert entry.attempts == 0


@pytest.mark.asyncio
async def test_claim_marks_run_running(repo):
    submission = _submission("run_claim", step_ids=("a", "b"))
    await repo.enqueue_run(submission)

    job = await repo.claim_next()
    assert job is not None
    assert job.run_id == "run_claim"
    assert job.attempts == 1
    assert job.submission == submission
    assert await repo.claim_next() is None

    run = await repo.get_run("run_claim")
    assert run.status == "running"
    assert run.started_at is not None
    entry = await repo.get_queue_entry("run_claim")
    assert entry.queue_status == "running"
    assert entry.locked_at is not None


@pytest.mark.asyncio
async def test_claim_is_fifo(repo):
    for run_id in ("run_first", "run_second", "run_third"):
        await repo.enqueue_run(_submission(run_id))

    claimed = [(await repo.claim_next()).run_id for _ in range(3)]
    assert claimed == ["run_first", "run_second", "run_third"]


@pytest.mark.asyncio
async def test_cancel_queued_run_is_immediate(repo):
    await repo.enqueue_run(_submission("run_cancel"))

    record = await repo.request_cancellation("run_cancel")
    assert record.status == "cancelled"
    assert record.cancel_requested is True
    assert record.already_terminal is False

    run = await repo.get_run("run_cancel")
    assert run.status == "cancelled"
    assert run.error_message == "CANCELLED"
    assert run.completed_at is not None
    assert await repo.claim_next() is None

    again = await repo.request_cancellation("run_cancel")
    assert again.already_terminal is True
    assert again.status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_running_run_sets_flag(repo):
    await repo.enqueue_run(_submission("run_live"))
    await repo.claim_next()

    record = await repo.request_cancellation("run_live")
    assert record.status == "running"
    assert record.cancel_requested is True
    assert await repo.is_cancel_requested("run_live") is True

    entry = await repo.get_queue_entry("run_live")
    assert entry.queue_status == "running"


@pytest.mark.asyncio
async def test_cancel_unknown_run(repo):
    assert await repo.request_cancellation("missing") is None
    assert await repo.is_cancel_requested("missing") is False


@pytest.mark.asyncio
async def test_save_step_outcome_upserts(repo):
    await repo.enqueue_run(_submission("run_steps", step_ids=("a", "b")))
    await repo.claim_next()

    await repo.save_step_outcome("run_steps", _outcome("a", [503, 200]))
    await repo.save_step_outcome("run_steps", _outcome("b", [503]))
    await repo.save_step_outcome("run_steps", _outcome("b", [503, 503]))

    run = await repo.get_run("run_steps")
    assert [s.step_id for s in run.steps] == ["a", "b"]
    assert run.steps[0].succeeded is True
    assert run.steps[0].chosen_service_id == "svc-a"
    assert [a.attempt_index for a in run.steps[1].attempts] == [1, 2]
    assert run.status == "running"


@pytest.mark.asyncio
async def test_save_step_outcome_ignored_when_not_running(repo):
    await repo.enqueue_run(_submission("run_idle"))
    await repo.save_step_outcome("run_idle", _outcome("step1", [200]))

    run = await repo.get_run("run_idle")
    assert run.steps == []


@pytest.mark.asyncio
async def test_finalize_replaces_steps(repo):
    await repo.enqueue_run(_submission("run_final", step_ids=("a", "b")))
    await repo.claim_next()
    await repo.save_step_outcome("run_final", _outcome("a", [503]))

    result = RunResult(
        run_id="run_final",
        workflow_id="wf_test",
        ok=True,
        steps=[_outcome("a", [503, 200]), _outcome("b", [200])],
    )
    assert await repo.finalize_run(result, "completed") is True

    run = await repo.get_run("run_final")
    assert run.status == "completed"
    assert run.ok is True
    assert run.error_message is None
    assert run.completed_at is not None
    assert [len(s.attempts) for s in run.steps] == [2, 1]
    assert run.run_output["finalStepId"] == "b"
    assert run.run_output["finalOutput"] == {"value": "b"}

    entry = await repo.get_queue_entry("run_final")
    assert entry.queue_status == "completed"
    assert entry.locked_at is None

    summary = run.summary()
    assert summary.step_count == 2
    assert summary.successful_step_count == 2
    assert summary.attempt_count == 3
    assert summary.selected_providers == ["svc-a"]
    assert summary.duration_ms is not None


@pytest.mark.asyncio
async def test_finalize_only_applies_to_running_runs(repo):
    await repo.enqueue_run(_submission("run_guard"))
    result = RunResult(run_id="run_guard", workflow_id="wf_test", ok=True)
    assert await repo.finalize_run(result, "completed") is False

    await repo.claim_next()
    failed = RunResult(
        run_id="run_guard", workflow_id="wf_test", ok=False, steps=[_outcome("step1", [400])]
    )
    assert await repo.finalize_run(failed, "failed", "ORCHESTRATION_FAILED") is True
    assert await repo.finalize_run(result, "completed") is False

    run = await repo.get_run("run_guard")
    assert run.status == "failed"
    assert run.ok is False
    assert run.error_message == "ORCHESTRATION_FAILED"
    entry = await repo.get_queue_entry("run_guard")
    assert entry.last_error == "ORCHESTRATION_FAILED"


@pytest.mark.asyncio
async def test_release_requeues_then_fails(repo):
    await repo.enqueue_run(_submission("run_release"))
    await repo.claim_next()

    status = await repo.release_run("run_release", "worker crashed", max_claim_attempts=2)
    assert status == "queued"
    entry = await repo.get_queue_entry("run_release")
    assert entry.queue_status == "queued"
    assert entry.last_error == "worker crashed"
    assert (await repo.get_run("run_release")).status == "running"

    job = await repo.claim_next()
    assert job.attempts == 2
    status = await repo.release_run("run_release", "worker crashed", max_claim_attempts=2)
    assert status == "failed"

    run = await repo.get_run("run_release")
    assert run.status == "failed"
    assert run.error_message == "worker crashed"
    assert await repo.release_run("run_release", "again") is None


@pytest.mark.asyncio
async def test_release_respects_delay(repo):
    await repo.enqueue_run(_submission("run_delay"))
    await repo.claim_next()

    await repo.release_run("run_delay", "busy", retry_delay_ms=60_000)
    assert await repo.claim_next() is None


@pytest.mark.asyncio
async def test_release_of_cancel_requested_run_cancels(repo):
    await repo.enqueue_run(_submission("run_stop"))
    await repo.claim_next()
    await repo.request_cancellation("run_stop")

    assert await repo.release_run("run_stop", "worker crashed") == "cancelled"
    run = await repo.get_run("run_stop")
    assert run.status == "cancelled"
    assert run.error_message == "CANCELLED"


@pytest.mark.asyncio
async def test_reclaim_expired_leases(repo):
    await repo.enqueue_run(_submission("run_lease"))
    await repo.claim_next()

    assert await repo.reclaim_expired(60_000) == []
    await asyncio.sleep(0.02)
    assert await repo.reclaim_expired(1) == ["run_lease"]

    entry = await repo.get_queue_entry("run_lease")
    assert entry.queue_status == "queued"
    assert entry.last_error == "LEASE_EXPIRED"

    job = await repo.claim_next()
    assert job.run_id == "run_lease"
    await asyncio.sleep(0.02)
    assert await repo.reclaim_expired(1, max_claim_attempts=2) == ["run_lease"]
    run = await repo.get_run("run_lease")
    assert run.status == "failed"
    assert run.error_message == "LEASE_EXPIRED"


@pytest.mark.asyncio
async def test_timeline_orders_attempts(repo):
    await repo.enqueue_run(_submission("run_tl", step_ids=("a", "b")))
    await repo.claim_next()
    result = RunResult(
        run_id="run_tl",
        workflow_id="wf_test",
        ok=True,
        steps=[_outcome("a", [503, 200]), _outcome("b", [200])],
    )
    await repo.finalize_run(result, "completed")

    rows = await repo.get_timeline("run_tl")
    assert [(r.step_id, r.attempt_index) for r in rows] == [("a", 1), ("a", 2), ("b", 1)]
    assert rows[0].error_code == "DOWNSTREAM_ERROR"
    assert rows[1].error_code is None
    assert rows[0].request_id == "a_1"
    assert await repo.get_timeline("missing") == []


@pytest.mark.asyncio
async def test_list_runs_newest_first(repo):
    for run_id in ("run_a", "run_b", "run_c"):
        await repo.enqueue_run(_submission(run_id))

    runs = await repo.list_runs()
    assert [r.run_id for r in runs] == ["run_c", "run_b", "run_a"]
    assert all(r.status == "queued" for r in runs)
    assert [r.run_id for r in await repo.list_runs(limit=2)] == ["run_c", "run_b"]
    assert await repo.get_run("missing") is None


@pytest.mark.asyncio
async def test_writes_are_fenced_on_the_claim_number(repo):
    await repo.enqueue_run(_submission("run_fence"))
    stale = await repo.claim_next()
    await repo.release_run("run_fence", "lease expired")
    current = await repo.claim_next()
    assert (stale.attempts, current.attempts) == (1, 2)

    assert await repo.touch_lease("run_fence", stale.attempts) is False
    await repo.save_step_outcome("run_fence", _outcome("step1", [200]), claim=stale.attempts)
    result = RunResult(
        run_id="run_fence", workflow_id="wf_test", ok=True, steps=[_outcome("step1", [200])]
    )
    assert await repo.finalize_run(result, "completed", claim=stale.attempts) is False
    assert await repo.release_run("run_fence", "stale", claim=stale.attempts) is None

    run = await repo.get_run("run_fence")
    assert run.status == "running"
    assert run.steps == []
    entry = await repo.get_queue_entry("run_fence")
    assert entry.queue_status == "running"
    assert entry.last_error == "lease expired"

    await repo.save_step_outcome("run_fence", _outcome("step1", [200]), claim=current.attempts)
    assert len((await repo.get_run("run_fence")).steps) == 1
    assert await repo.finalize_run(result, "completed", claim=current.attempts) is True


@pytest.mark.asyncio
async def test_touch_lease_keeps_entry_from_expiring(repo):
    await repo.enqueue_run(_submission("run_touch"))
    job = await repo.claim_next()
    before = (await repo.get_queue_entry("run_touch")).locked_at

    await asyncio.sleep(0.05)
    assert await repo.touch_lease("run_touch", job.attempts) is True
    after = (await repo.get_queue_entry("run_touch")).locked_at
    assert after > before
    assert await repo.reclaim_expired(40) == []

    await repo.finalize_run(
        RunResult(run_id="run_touch", workflow_id="wf_test", ok=True),
        "completed",
        claim=job.attempts,
    )
    assert await repo.touch_lease("run_touch", job.attempts) is False
