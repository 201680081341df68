import asyncio
import json

from typer.testing import CliRunner

import paywire.persistence as persistence
from paywire.cli import app
from paywire.contracts import Attempt, RunResult, RunSubmission, StepOutcome
from paywire.persistence import InMemoryRunRepository


def _setup_repo() -> InMemoryRunRepository:
    repo = InMemoryRunRepository()
    persistence._repository_instance = repo
    return repo


def _submission_dict(run_id: str) -> dict:
    return {
        "runId": run_id,
        "workflowId": "wf_cli",
        "steps": [
            {
                "stepId": "step1",
                "payload": {"city": "NYC"},
                "candidates": [{"serviceId": "weather-api", "paymentProof": "0xabc"}],
            }
        ],
    }


def _completed_run(repo: InMemoryRunRepository, run_id: str) -> None:
    asyncio.run(repo.enqueue_run(RunSubmission.parse(_submission_dict(run_id))))
    asyncio.run(repo.claim_next())
    outcome = StepOutcome(
        step_id="step1",
        succeeded=True,
        chosen_service_id="weather-api",
        attempts=[
            Attempt(
                service_id="weather-api",
                request_id=f"{run_id}_step1_1_a1",
                payment_proof="0xabc",
                ok=True,
                status_code=200,
                response={"forecast": "sunny"},
            )
        ],
    )
    result = RunResult(run_id=run_id, workflow_id="wf_cli", ok=True, steps=[outcome])
    asyncio.run(repo.finalize_run(result, "completed"))


def test_template_is_a_valid_submission():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["run", "template"])
    assert result.exit_code == 0, result.output

    submission = RunSubmission.parse(result.output)
    assert submission.workflow_id == "wf_agent_commerce_demo"
    assert len(submission.steps) == 2


def test_submit_command_queues_and_rejects_duplicates(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "run.json"
    path.write_text(json.dumps(_submission_dict("run_cli")))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "submit", str(path)])
    assert result.exit_code == 0, result.output
    assert "run_cli" in result.output
    assert asyncio.run(repo.get_run("run_cli")).status == "queued"

    duplicate = runner.invoke(app, ["run", "submit", str(path)])
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output


def test_submit_command_reports_validation_errors(tmp_path):
    _setup_repo()
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"runId": "r", "workflowId": "wf", "steps": []}))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "submit", str(path)])
    assert result.exit_code == 1
    assert "Invalid orchestration run payload" in result.output
    assert "steps" in result.output


def test_list_and_show_commands():
    repo = _setup_repo()
    _completed_run(repo, "run_done")
    asyncio.run(repo.enqueue_run(RunSubmission.parse(_submission_dict("run_waiting"))))

    runner = CliRunner()
    listed = runner.invoke(app, ["run", "list"])
    assert listed.exit_code == 0, listed.output
    assert "run_done" in listed.output
    assert "run_waiting" in listed.output

    shown = runner.invoke(app, ["run", "show", "run_done"])
    assert shown.exit_code == 0, shown.output
    assert "completed" in shown.output
    assert "step1: succeeded via weather-api (1 attempts)" in shown.output
    assert "sunny" in shown.output

    missing = runner.invoke(app, ["run", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.output


def test_list_command_without_runs():
    _setup_repo()
    result = CliRunner().invoke(app, ["run", "list"])
    assert result.exit_code == 0
    assert "No runs found" in result.output


def test_timeline_command():
    repo = _setup_repo()
    _completed_run(repo, "run_tl")

    runner = CliRunner()
    result = runner.invoke(app, ["run", "timeline", "run_tl"])
    assert result.exit_code == 0, result.output
    assert "run_tl_step1_1_a1" in result.output
    assert "200" in result.output

    missing = runner.invoke(app, ["run", "timeline", "missing-id"])
    assert missing.exit_code == 1


def test_cancel_command():
    repo = _setup_repo()
    asyncio.run(repo.enqueue_run(RunSubmission.parse(_submission_dict("run_stop"))))

    runner = CliRunner()
    result = runner.invoke(app, ["run", "cancel", "run_stop"])
    assert result.exit_code == 0, result.output
    assert "cancelled" in result.output

    again = runner.invoke(app, ["run", "cancel", "run_stop"])
    assert again.exit_code == 1
    assert "already cancelled" in again.output

    missing = runner.invoke(app, ["run", "cancel", "missing-id"])
    assert missing.exit_code == 1
    assert "not found" in missing.output
