"""Example running a worker against an in-process execute handler."""

import asyncio
import random

from paywire import OrchestratorWorker, RunDispatcher
from paywire.clients import ExecuteRequest, InProcessExecuteClient
from paywire.contracts import ExecuteResult
from paywire.persistence import InMemoryRunRepository


async def flaky_provider(request: ExecuteRequest) -> ExecuteResult:
    # The primary provider is overloaded half of the time
    if request.service_id == "weather-api" and random.random() < 0.5:
        return ExecuteResult(
            ok=False,
            status_code=503,
            response={"error": {"code": "DOWNSTREAM_ERROR", "message": "busy"}},
        )
    return ExecuteResult(
        ok=True,
        status_code=200,
        response={"service": request.service_id, "forecast": "sunny"},
    )


async def main():
    repository = InMemoryRunRepository()
    dispatcher = RunDispatcher(repository)
    dispatcher.add_step(
        "forecast",
        candidates=[("weather-api", "0xTX1"), ("weather-api-fallback", "0xTX2")],
        payload={"location": "NYC"},
    )
    accepted = await dispatcher.dispatch("wf_forecast")

    worker = OrchestratorWorker(repository, InProcessExecuteClient(flaky_provider))
    await worker.tick()

    run = await repository.get_run(accepted.run_id)
    print(f"Run {run.run_id}: {run.status}")
    for row in await repository.get_timeline(run.run_id):
        print(f"  {row.request_id} -> {row.status_code}")


if __name__ == "__main__":
    asyncio.run(main())
