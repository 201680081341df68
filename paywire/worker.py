"""Polling worker that claims queued runs and drives the step executor."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Optional

from .clients import BaseExecuteClient
from .config import WorkerConfig
from .execute import Sleep, StepExecutor
from .persistence import QueuedJob, RunRepository
from .utils.retry import sleep_ms

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL_MS = 100
MIN_LEASE_RENEWAL_S = 0.01


class OrchestratorWorker:
    """Claims one queued run at a time and executes it to a terminal state.

    ``start`` fires ``tick`` on a fixed interval. A tick that fires while
    another is still processing a run returns immediately, so one worker
    never holds more than one claim. Several workers may share a
    repository; the repository's exclusive claim keeps each run on a single
    worker. While a run is processed its lease is renewed in the
    background, and every write is fenced on the claim number so a worker
    whose lease was reclaimed cannot overwrite the new owner.
    """

    def __init__(
        self,
        repository: RunRepository,
        client: BaseExecuteClient,
        config: Optional[WorkerConfig] = None,
        sleep: Sleep = sleep_ms,
    ) -> None:
        self._repository = repository
        self._config = config or WorkerConfig()
        self._executor = StepExecutor(client, sleep=sleep)
        self._poll_interval = (
            max(MIN_POLL_INTERVAL_MS, self._config.poll_interval_ms) / 1000
        )
        self._in_flight = False
        self._stopped = asyncio.Event()
        self._ticks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def tick(self) -> Optional[str]:
        """Claim and process at most one run; return its id if one ran."""
        if self._in_flight:
            return None
        self._in_flight = True
        try:
            await self._reclaim_expired()
            job = await self._repository.claim_next()
            if job is None:
                return None
            logger.info(f"Claimed run {job.run_id} (claim #{job.attempts})")
            await self._process(job)
            return job.run_id
        except Exception:
            logger.exception("Orchestrator worker tick failed")
            return None
        finally:
            self._in_flight = False

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run the polling loop until ``stop`` is called or ``lifespan`` elapses.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs
                indefinitely.
        """
        self._stopped.clear()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        logger.info(f"Orchestrator worker polling every {self._poll_interval:.3f}s")

        try:
            while not self._stopped.is_set():
                if deadline is not None and loop.time() >= deadline:
                    break
                task = asyncio.create_task(self.tick())
                self._ticks.add(task)
                task.add_done_callback(self._ticks.discard)
                try:
                    await asyncio.wait_for(
                        self._stopped.wait(), timeout=self._poll_interval
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._ticks:
                await asyncio.gather(*self._ticks)
            logger.info("Orchestrator worker stopped")

    def stop(self) -> None:
        """Stop scheduling ticks; the run in progress is allowed to finish."""
        self._stopped.set()

    # ------------------------------------------------------------------
    async def _reclaim_expired(self) -> None:
        try:
            reclaimed = await self._repository.reclaim_expired(
                self._config.lease_timeout_ms, self._config.max_claim_attempts
            )
        except Exception:
            logger.exception("Lease reclaim failed; claiming anyway")
            return
        for run_id in reclaimed:
            logger.warning(f"Lease expired for run {run_id}; released for reclaim")

    async def _process(self, job: QueuedJob) -> None:
        lease = _Lease(job)
        heartbeat = asyncio.create_task(self._keep_lease(lease))
        try:
            result = await self._executor.run(
                job.submission,
                should_continue=partial(self._should_continue, lease),
                on_step_finished=partial(
                    self._repository.save_step_outcome, claim=job.attempts
                ),
            )
            finalized = await self._repository.finalize_run(
                result, result.status, result.error_message, claim=job.attempts
            )
        except Exception as e:
            logger.exception(f"Orchestrator worker job failed for run {job.run_id}")
            status = await self._repository.release_run(
                job.run_id,
                str(e) or type(e).__name__,
                retry_delay_ms=self._config.release_delay_ms,
                max_claim_attempts=self._config.max_claim_attempts,
                claim=job.attempts,
            )
            logger.info(f"Run {job.run_id} released with queue status {status}")
            return
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        if finalized:
            logger.info(f"Run {job.run_id} finished as {result.status}")
        elif lease.lost:
            logger.warning(
                f"Lease on run {job.run_id} was lost; result of claim "
                f"#{job.attempts} not persisted"
            )
        else:
            logger.warning(
                f"Run {job.run_id} was no longer running; result not persisted"
            )

    async def _keep_lease(self, lease: _Lease) -> None:
        """Renew the lease at a third of its timeout until cancelled."""
        interval = max(self._config.lease_timeout_ms / 3000, MIN_LEASE_RENEWAL_S)
        while not lease.lost:
            await asyncio.sleep(interval)
            try:
                held = await self._repository.touch_lease(
                    lease.job.run_id, lease.job.attempts
                )
            except Exception:
                logger.exception(f"Lease renewal failed for run {lease.job.run_id}")
                continue
            if not held:
                logger.warning(
                    f"Run {lease.job.run_id} is no longer held by claim "
                    f"#{lease.job.attempts}; stopping"
                )
                lease.lost = True

    async def _should_continue(
        self, lease: _Lease, run_id: str, step_id: str, attempts: int
    ) -> bool:
        if lease.lost:
            return False
        if not await self._repository.touch_lease(run_id, lease.job.attempts):
            lease.lost = True
            return False
        return not await self._repository.is_cancel_requested(run_id)


class _Lease:
    """Claim held by a worker while it processes one run."""

    def __init__(self, job: QueuedJob) -> None:
        self.job = job
        self.lost = False
