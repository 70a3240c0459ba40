"""
Automation Queue Worker
=======================

Pool of asyncio tasks draining the automation queue with a fixed
concurrency limit. Failed jobs are retried with exponential backoff until
their attempt budget is spent, then recorded as failed.
"""

import asyncio
from typing import Awaitable, Callable, List

from deskflow.automation.application.dispatcher import DispatcherStateHolder, JobWorker
from deskflow.core import BrokerUnavailableException
from deskflow.infrastructure.queue import BrokerConnection, Job
from deskflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


def retry_delay_ms(attempts_made: int, backoff_ms: int) -> int:
    """Exponential backoff: base, 2 x base, 4 x base, ..."""
    return backoff_ms * 2 ** max(attempts_made - 1, 0)


class QueueWorker(JobWorker):
    """
    Consumes jobs while the dispatcher is ENABLED.

    Args:
        connection: Shared broker connection
        handler: Coroutine run for each job
        state: Dispatcher state; workers stop reserving once DEGRADED
        concurrency: Number of consumer tasks (max jobs in flight)
        backoff_ms: First retry delay
        poll_timeout: Blocking reserve timeout in seconds
        stalled_after_ms: Active jobs reserved longer ago than this are
            returned to waiting when the workers start
    """

    def __init__(
        self,
        connection: BrokerConnection,
        handler: JobHandler,
        state: DispatcherStateHolder,
        concurrency: int = 5,
        backoff_ms: int = 10_000,
        poll_timeout: float = 1.0,
        stalled_after_ms: int = 300_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connection = connection
        self._handler = handler
        self._state = state
        self._concurrency = concurrency
        self._backoff_ms = backoff_ms
        self._poll_timeout = poll_timeout
        self._stalled_after_ms = stalled_after_ms
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        try:
            await self._connection.run(
                self._connection.queue.recover_stalled, self._stalled_after_ms
            )
        except BrokerUnavailableException as e:
            self._state.degrade(e.message)
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume(slot), name=f"automation-worker-{slot}")
            for slot in range(self._concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._promote(), name="automation-promoter"))
        logger.info("Automation workers started", extra={"concurrency": self._concurrency})

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Automation workers stopped")

    async def process(self, job: Job) -> None:
        """Run one reserved job and settle it as completed, delayed or failed."""
        try:
            await self._handler(job)
        except Exception as e:
            await self._handle_failure(job, e)
            return

        job.attempts_made += 1
        await self._connection.run(self._connection.queue.complete, job)

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.attempts_made += 1
        context = {
            "correlation_id": job.id,
            "job_id": job.id,
            "ticket_id": job.data.get("ticket_id"),
            "trigger": job.data.get("trigger"),
            "attempt": job.attempts_made,
            "max_attempts": job.max_attempts,
            "error_type": type(error).__name__,
            "error": str(error),
        }

        if job.has_attempts_left:
            delay = retry_delay_ms(job.attempts_made, self._backoff_ms)
            logger.warning(
                "Automation job failed, retry scheduled",
                extra={**context, "retry_in_ms": delay},
            )
            await self._connection.run(
                self._connection.queue.retry_later, job, delay, str(error)
            )
        else:
            logger.error("Automation job failed permanently", extra=context)
            await self._connection.run(self._connection.queue.fail, job, str(error))

    async def _consume(self, slot: int) -> None:
        while self._running and not self._state.is_degraded:
            job = None
            try:
                job = await self._connection.run(
                    self._connection.queue.reserve, self._poll_timeout
                )
                if job is not None:
                    await self.process(job)
            except BrokerUnavailableException as e:
                self._state.degrade(e.message)
                break
            except Exception as e:
                logger.error(
                    "Automation worker error",
                    extra={
                        "slot": slot,
                        "job_id": job.id if job is not None else None,
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                    exc_info=True,
                )
                if job is not None:
                    await self._fail_unsettled(job, e)
                await self._sleep(self._poll_timeout)

    async def _fail_unsettled(self, job: Job, error: Exception) -> None:
        """Record a job whose settlement itself crashed as failed."""
        try:
            await self._connection.run(self._connection.queue.fail, job, str(error))
        except BrokerUnavailableException as e:
            self._state.degrade(e.message)
        except Exception as e:
            logger.error(
                "Could not record automation job failure",
                extra={"job_id": job.id, "error_type": type(e).__name__, "error": str(e)},
                exc_info=True,
            )

    async def _promote(self) -> None:
        while self._running and not self._state.is_degraded:
            try:
                await self._connection.run(self._connection.queue.promote_delayed)
            except BrokerUnavailableException as e:
                self._state.degrade(e.message)
                break
            await self._sleep(self._poll_timeout)
