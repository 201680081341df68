"""Command line interface for paywire workers and runs."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Optional

import typer

from paywire import OrchestratorWorker, RunDispatcher, get_client, get_repository
from paywire.config import load_config
from paywire.exceptions import RunConflict, RunNotFound, SubmissionInvalid

app = typer.Typer(help="CLI for paywire orchestration runs")

# Command groups
worker_app = typer.Typer(help="Commands for running orchestrator workers")
run_app = typer.Typer(help="Commands for submitting and inspecting runs")

app.add_typer(worker_app, name="worker")
app.add_typer(run_app, name="run")


@app.callback()
def main() -> None:
    """paywire CLI entry point."""
    pass


@worker_app.command("start")
def worker_start(
    lifespan: Optional[float] = None,
    poll_interval_ms: Optional[int] = None,
    execute_url: Optional[str] = None,
    log_level: str = typer.Option("INFO", help="Logging level for the worker"),
) -> None:
    """
    Run an orchestrator worker process.

    Polls the configured repository for queued runs, claims one at a time and
    executes its steps through the execute endpoint. Any number of workers can
    share one PostgreSQL or SQLite database.

    Example:
        paywire worker start
        paywire worker start --lifespan 300 --poll-interval-ms 250
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    if poll_interval_ms is not None:
        config.worker.poll_interval_ms = poll_interval_ms
    repository = get_repository(config=config)
    client = get_client(base_url=execute_url, config=config)
    worker = OrchestratorWorker(repository, client, config=config.worker)

    async def _run() -> None:
        async with client:
            await worker.start(lifespan=lifespan)

    typer.echo(f"Starting orchestrator worker against {client.base_url}")
    asyncio.run(_run())


@run_app.command("submit")
def run_submit(submission_path: Path) -> None:
    """
    Submit a run from a JSON file.

    The file holds ``{runId, workflowId, steps: [{stepId, payload,
    candidates: [{serviceId, paymentProof}], retryPolicy?}]}``; see
    ``paywire run template``.
    """
    try:
        raw = submission_path.read_text()
    except OSError as exc:
        typer.secho(f"Cannot read {submission_path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    dispatcher = RunDispatcher(get_repository())
    try:
        accepted = asyncio.run(dispatcher.submit(raw))
    except SubmissionInvalid as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for detail in exc.details:
            location = ".".join(str(part) for part in detail.get("loc", ()))
            typer.secho(f"  {location}: {detail.get('msg')}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except RunConflict as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Run {accepted.run_id} queued for workflow {accepted.workflow_id}")


@run_app.command("cancel")
def run_cancel(run_id: str) -> None:
    """Request cancellation of a queued or running run."""
    dispatcher = RunDispatcher(get_repository())
    try:
        record = asyncio.run(dispatcher.cancel(run_id))
    except (RunNotFound, RunConflict) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Run {record.run_id}: {record.status} (cancel requested)")


@run_app.command("list")
def run_list(limit: int = typer.Option(30, min=1, max=200)) -> None:
    """
    List recent runs with their status.

    Example:
        paywire run list --limit 10
        # Output: run_42    completed    wf_demo    steps=2    attempts=3
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.run_id}\t{run.status}\t{run.workflow_id}"
            f"\tsteps={run.step_count}\tattempts={run.attempt_count}"
        )


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run's summary and step outcomes.

    Example:
        paywire run show run_42
        # Output: Run run_42 (wf_demo): completed
        #         - step_1_price_discovery: succeeded via weather-api (2 attempts)
    """
    repo = get_repository()
    run = asyncio.run(repo.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    summary = run.summary()
    typer.echo(f"Run {run.run_id} ({run.workflow_id}): {run.status}")
    if run.cancel_requested:
        typer.echo("Cancellation requested")
    if run.error_message:
        typer.echo(f"Error: {run.error_message}")
    if summary.duration_ms is not None:
        typer.echo(f"Duration: {summary.duration_ms:.0f}ms")
    for step in run.steps:
        outcome = (
            f"succeeded via {step.chosen_service_id}" if step.succeeded else "failed"
        )
        typer.echo(f"- {step.step_id}: {outcome} ({len(step.attempts)} attempts)")
    if run.run_output and run.run_output.get("finalOutput") is not None:
        typer.echo(f"Output: {json.dumps(run.run_output['finalOutput'])}")


@run_app.command("timeline")
def run_timeline(run_id: str) -> None:
    """Show every attempt of a run in execution order."""
    repo = get_repository()
    rows = asyncio.run(repo.get_timeline(run_id))
    if not rows:
        typer.echo("Run not found or no timeline data available")
        raise typer.Exit(code=1)
    for row in rows:
        result = "ok" if row.ok else f"error {row.error_code or '-'}"
        typer.echo(
            f"{row.step_id}\t#{row.attempt_index}\t{row.service_id}"
            f"\t{row.status_code}\t{result}\t{row.request_id}"
        )


@run_app.command("template")
def run_template() -> None:
    """Print an example run submission."""
    template = {
        "runId": f"run_{int(time.time() * 1000)}",
        "workflowId": "wf_agent_commerce_demo",
        "steps": [
            {
                "stepId": "step_1_price_discovery",
                "payload": {"location": "NYC"},
                "retryPolicy": {
                    "maxRetries": 2,
                    "backoffMs": 200,
                    "backoffMultiplier": 2,
                },
                "candidates": [
                    {"serviceId": "weather-api", "paymentProof": "0xREPLACE_PRIMARY_TX_HASH"},
                    {
                        "serviceId": "weather-api-fallback",
                        "paymentProof": "0xREPLACE_FALLBACK_TX_HASH",
                    },
                ],
            },
            {
                "stepId": "step_2_confirmation",
                "payload": {"location": "NYC", "mode": "confirm"},
                "candidates": [
                    {"serviceId": "weather-api", "paymentProof": "0xREPLACE_SECOND_STEP_TX_HASH"},
                ],
            },
        ],
    }
    typer.echo(json.dumps(template, indent=2))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
