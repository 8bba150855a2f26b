"""Redis-backed delayed job queue with retries and a dead-letter queue.

Layout per queue (prefix 'queue:<name>'):
  :jobs     HASH  job id -> JSON job record
  :delayed  ZSET  job id scored by due time (epoch ms)
  :active   ZSET  job id scored by lease deadline (epoch ms)

A job is claimed by moving it from :delayed to :active. ZREM decides which
worker wins when two race for the same job, and also makes cancel() and
claim mutually exclusive. Jobs whose lease expires are put back, so
delivery is at-least-once.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Callable

from redis.asyncio import Redis

from core.errors import EntityNotFoundError

logger = logging.getLogger("linewatch.queue")


def now_ms() -> int:
    return int(time.time() * 1000)


def _decode(raw) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


@dataclass
class QueuedJob:
    id: str
    job_type: str
    payload: dict
    attempts: int = 0
    max_attempts: int = 3
    backoff_ms: int = 3000
    created_at: int = 0
    run_at: int = 0
    last_error: str | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw) -> "QueuedJob":
        return cls(**json.loads(_decode(raw)))

    def retry_delay_ms(self) -> int:
        """Exponential backoff after the current (already counted) attempt."""
        return self.backoff_ms * 2 ** max(self.attempts - 1, 0)


class RedisJobQueue:

    def __init__(
        self,
        redis: Redis,
        name: str,
        *,
        max_attempts: int = 3,
        backoff_ms: int = 3000,
        lease_ms: int = 15 * 60 * 1000,
        clock: Callable[[], int] = now_ms,
    ):
        self.redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.lease_ms = lease_ms
        self.clock = clock
        prefix = f"queue:{name}"
        self._jobs_key = f"{prefix}:jobs"
        self._delayed_key = f"{prefix}:delayed"
        self._active_key = f"{prefix}:active"

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def schedule(
        self,
        job_type: str,
        payload: dict,
        delay_ms: int = 0,
        *,
        job_id: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        now = self.clock()
        job = QueuedJob(
            id=job_id or uuid.uuid4().hex,
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts or self.max_attempts,
            backoff_ms=self.backoff_ms,
            created_at=now,
            run_at=now + max(int(delay_ms), 0),
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._jobs_key, job.id, job.to_json())
            pipe.zadd(self._delayed_key, {job.id: job.run_at})
            await pipe.execute()
        logger.debug("[%s] scheduled %s (%s) in %d ms", self.name, job.id, job_type, delay_ms)
        return job.id

    async def get_job(self, job_id: str) -> QueuedJob | None:
        raw = await self.redis.hget(self._jobs_key, job_id)
        return QueuedJob.from_json(raw) if raw else None

    async def cancel(self, job_id: str) -> bool:
        """Remove a job that has not been picked up yet."""
        removed = await self.redis.zrem(self._delayed_key, job_id)
        if removed:
            await self.redis.hdel(self._jobs_key, job_id)
            logger.debug("[%s] cancelled %s", self.name, job_id)
        return bool(removed)

    async def get_pending(self, job_type: str | None = None) -> list[QueuedJob]:
        ids = await self.redis.zrange(self._delayed_key, 0, -1)
        if not ids:
            return []
        raws = await self.redis.hmget(self._jobs_key, ids)
        jobs = [QueuedJob.from_json(raw) for raw in raws if raw]
        if job_type is not None:
            jobs = [job for job in jobs if job.job_type == job_type]
        return jobs

    async def cancel_matching(self, job_type: str, predicate: Callable[[dict], bool]) -> int:
        """Cancel every pending job of job_type whose payload satisfies predicate."""
        cancelled = 0
        for job in await self.get_pending(job_type):
            if predicate(job.payload) and await self.cancel(job.id):
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim_due(self, limit: int) -> list[QueuedJob]:
        now = self.clock()
        ids = await self.redis.zrangebyscore(self._delayed_key, "-inf", now, start=0, num=limit)
        claimed = []
        for raw_id in ids:
            job_id = _decode(raw_id)
            if not await self.redis.zrem(self._delayed_key, job_id):
                continue
            await self.redis.zadd(self._active_key, {job_id: now + self.lease_ms})
            raw = await self.redis.hget(self._jobs_key, job_id)
            if raw is None:
                await self.redis.zrem(self._active_key, job_id)
                continue
            claimed.append(QueuedJob.from_json(raw))
        return claimed

    async def complete(self, job: QueuedJob) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._active_key, job.id)
            pipe.hdel(self._jobs_key, job.id)
            await pipe.execute()

    async def fail(self, job: QueuedJob, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when the job will be retried."""
        job.attempts += 1
        job.last_error = f"{type(error).__name__}: {error}"

        if job.attempts < job.max_attempts:
            delay = job.retry_delay_ms()
            job.run_at = self.clock() + delay
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._jobs_key, job.id, job.to_json())
                pipe.zrem(self._active_key, job.id)
                pipe.zadd(self._delayed_key, {job.id: job.run_at})
                await pipe.execute()
            logger.warning(
                "[%s] job %s failed (attempt %d/%d), retry in %d ms: %s",
                self.name, job.id, job.attempts, job.max_attempts, delay, error,
            )
            return True

        await self.complete(job)
        logger.error(
            "[%s] job %s failed permanently after %d attempt(s): %s",
            self.name, job.id, job.attempts, error,
        )
        return False

    async def requeue_stalled(self) -> int:
        now = self.clock()
        ids = await self.redis.zrangebyscore(self._active_key, "-inf", now)
        requeued = 0
        for raw_id in ids:
            job_id = _decode(raw_id)
            if await self.redis.zrem(self._active_key, job_id):
                await self.redis.zadd(self._delayed_key, {job_id: now})
                requeued += 1
        if requeued:
            logger.warning("[%s] requeued %d stalled job(s)", self.name, requeued)
        return requeued

    async def stats(self) -> dict:
        now = self.clock()
        return {
            "name": self.name,
            "delayed": await self.redis.zcard(self._delayed_key),
            "due": await self.redis.zcount(self._delayed_key, "-inf", now),
            "active": await self.redis.zcard(self._active_key),
        }


class RedisDeadLetterQueue:
    """Holding area for jobs that exhausted their retries."""

    def __init__(self, redis: Redis, name: str, source: RedisJobQueue):
        self.redis = redis
        self.name = name
        self.source = source
        self._entries_key = f"queue:{name}:entries"
        self._index_key = f"queue:{name}:index"

    async def add(self, job: QueuedJob, error: BaseException) -> str:
        failed_at = self.source.clock()
        dlq_id = f"dlq-{job.id}-{failed_at}"
        record = {
            "dlqId": dlq_id,
            "originalJobId": job.id,
            "sourceQueue": self.source.name,
            "jobType": job.job_type,
            "payload": job.payload,
            "error": {"message": str(error), "name": type(error).__name__},
            "attempts": job.attempts,
            "failedAt": failed_at,
        }
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._entries_key, dlq_id, json.dumps(record, default=str))
            pipe.zadd(self._index_key, {dlq_id: failed_at})
            await pipe.execute()
        logger.error(
            "[%s] job %s moved to dead-letter queue as %s: %s",
            self.name, job.id, dlq_id, error,
        )
        return dlq_id

    async def list_jobs(self, limit: int = 50) -> list[dict]:
        ids = await self.redis.zrevrange(self._index_key, 0, max(limit, 1) - 1)
        if not ids:
            return []
        raws = await self.redis.hmget(self._entries_key, ids)
        return [json.loads(_decode(raw)) for raw in raws if raw]

    async def count(self) -> int:
        return await self.redis.zcard(self._index_key)

    async def retry(self, dlq_id: str) -> str:
        """Re-enqueue a dead job on its source queue with a fresh attempt budget."""
        raw = await self.redis.hget(self._entries_key, dlq_id)
        if raw is None:
            raise EntityNotFoundError("Dead-letter job", dlq_id)
        record = json.loads(_decode(raw))
        job_id = await self.source.schedule(
            record["jobType"],
            record["payload"],
            0,
            job_id=f"{record['originalJobId']}-retry-{self.source.clock()}",
        )
        await self.remove(dlq_id)
        logger.info("[%s] %s re-enqueued as %s", self.name, dlq_id, job_id)
        return job_id

    async def remove(self, dlq_id: str) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._entries_key, dlq_id)
            pipe.zrem(self._index_key, dlq_id)
            await pipe.execute()

    async def clear(self) -> int:
        count = await self.count()
        await self.redis.delete(self._entries_key, self._index_key)
        logger.info("[%s] cleared %d dead-letter job(s)", self.name, count)
        return count
