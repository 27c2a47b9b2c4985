"""Worker pool — claims steps, runs their handlers, reports outcomes.

Workers share nothing but the store. Two workers racing for the same step is
normal: the claim lets exactly one through and the other just polls again.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from opsloop.types import Step
from opsloop.worker.handlers import StepExecutionResult, StepHandlerRegistry

logger = structlog.get_logger()


class StepSource(Protocol):
    """Where steps come from: the local scheduler or a remote API."""

    async def claim_next_step(self, worker_id: str) -> Step | None: ...

    async def record_outcome(
        self,
        step_id: str,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str = "",
    ) -> bool: ...


class MissionWorker:
    """Single polling worker."""

    def __init__(
        self,
        scheduler: StepSource,
        handlers: StepHandlerRegistry,
        worker_id: str = "worker-1",
        poll_seconds: float = 10.0,
        max_consecutive_errors: int = 5,
        backoff_seconds: float = 60.0,
    ) -> None:
        self._scheduler = scheduler
        self._handlers = handlers
        self._worker_id = worker_id
        self._poll_seconds = poll_seconds
        self._max_errors = max_consecutive_errors
        self._backoff_seconds = backoff_seconds
        self._running = False
        self._task: asyncio.Task | None = None
        self._completed = 0

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def completed(self) -> int:
        return self._completed

    async def run_once(self) -> StepExecutionResult | None:
        """Claim and execute one step. None when there was nothing to claim."""
        step = await self._scheduler.claim_next_step(self._worker_id)
        if step is None:
            return None

        logger.info("step_started", worker=self._worker_id, step_id=step.id, kind=step.kind)
        outcome = await self._handlers.execute(step)
        recorded = await self._scheduler.record_outcome(
            step.id, outcome.success, result=outcome.result, error=outcome.error,
        )
        if not recorded:
            # the sweeper declared it stale while we were working
            logger.warning("step_outcome_discarded", worker=self._worker_id, step_id=step.id)
        elif outcome.success:
            logger.info(
                "step_succeeded",
                worker=self._worker_id,
                step_id=step.id,
                duration_ms=round(outcome.execution_time_ms),
            )
        else:
            logger.warning(
                "step_failed", worker=self._worker_id, step_id=step.id, error=outcome.error,
            )
        self._completed += 1
        return outcome

    async def drain(self, limit: int = 100) -> list[StepExecutionResult]:
        """Run steps until none are claimable (or `limit` is reached)."""
        results = []
        while len(results) < limit:
            outcome = await self.run_once()
            if outcome is None:
                break
            results.append(outcome)
        return results

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("worker_started", worker=self._worker_id, poll_seconds=self._poll_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("worker_stopped", worker=self._worker_id, completed=self._completed)

    async def run_forever(self) -> None:
        self._running = True
        await self._run_loop()

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            delay = self._poll_seconds
            try:
                outcome = await self.run_once()
                consecutive_errors = 0
                if outcome is not None:
                    delay = 0  # more work is likely waiting
            except Exception as e:
                consecutive_errors += 1
                logger.error(
                    "worker_error",
                    worker=self._worker_id,
                    error=str(e),
                    consecutive=consecutive_errors,
                )
                if consecutive_errors > self._max_errors:
                    logger.warning(
                        "worker_backing_off", worker=self._worker_id, seconds=self._backoff_seconds,
                    )
                    delay = self._backoff_seconds
                    consecutive_errors = 0

            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break


class WorkerPool:
    """N workers polling the same store."""

    def __init__(
        self,
        scheduler: StepSource,
        handlers: StepHandlerRegistry,
        size: int = 2,
        worker_prefix: str = "worker",
        poll_seconds: float = 10.0,
        max_consecutive_errors: int = 5,
        backoff_seconds: float = 60.0,
    ) -> None:
        self._workers = [
            MissionWorker(
                scheduler,
                handlers,
                worker_id=f"{worker_prefix}-{i + 1}",
                poll_seconds=poll_seconds,
                max_consecutive_errors=max_consecutive_errors,
                backoff_seconds=backoff_seconds,
            )
            for i in range(size)
        ]

    @property
    def workers(self) -> list[MissionWorker]:
        return list(self._workers)

    async def start(self) -> None:
        for worker in self._workers:
            await worker.start()

    async def stop(self) -> None:
        await asyncio.gather(*(w.stop() for w in self._workers))

    async def run_round(self) -> list[StepExecutionResult]:
        """Every worker attempts one step at the same time."""
        outcomes = await asyncio.gather(*(w.run_once() for w in self._workers))
        return [o for o in outcomes if o is not None]
