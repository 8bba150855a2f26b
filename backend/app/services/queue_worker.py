"""Queue worker: polls a RedisJobQueue and runs handlers by job type.

Background task loop, one per queue:
1. Put back jobs whose lease expired (crashed worker)
2. Claim up to `concurrency` due jobs
3. Run their handlers concurrently; complete or fail each one
4. Jobs out of retries go to the dead-letter queue when one is attached
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from services.job_queue import QueuedJob

logger = logging.getLogger("linewatch.queue_worker")

JobHandler = Callable[[dict], Awaitable[object]]


class QueueWorker:
    """Background task: executes due jobs of one queue."""

    def __init__(
        self,
        queue,
        handlers: dict[str, JobHandler],
        *,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        dead_letter=None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.dead_letter = dead_letter
        self._running = False

    async def start(self) -> None:
        self._running = True
        logger.info(
            "QueueWorker[%s] started (concurrency=%d, job types: %s, dead-letter=%s)",
            self.queue.name, self.concurrency, ", ".join(self.handlers),
            "on" if self.dead_letter else "off",
        )
        while self._running:
            try:
                processed = await self.poll_once()
            except Exception as exc:
                logger.error("QueueWorker[%s] cycle error: %s", self.queue.name, exc, exc_info=True)
                processed = 0
            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        logger.info("QueueWorker[%s] stopped", self.queue.name)

    async def poll_once(self) -> int:
        await self.queue.requeue_stalled()
        jobs = await self.queue.claim_due(self.concurrency)
        if jobs:
            await asyncio.gather(*(self._run(job) for job in jobs))
        return len(jobs)

    async def _run(self, job: QueuedJob) -> None:
        handler = self.handlers.get(job.job_type)
        try:
            if handler is None:
                raise LookupError(f"No handler for job type {job.job_type!r}")
            result = await handler(job.payload)
        except Exception as exc:
            will_retry = await self.queue.fail(job, exc)
            if not will_retry and self.dead_letter is not None:
                await self.dead_letter.add(job, exc)
            return

        await self.queue.complete(job)
        logger.debug("QueueWorker[%s] job %s done: %s", self.queue.name, job.id, result)
