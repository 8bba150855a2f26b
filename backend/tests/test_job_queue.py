"""Tests for the Redis delayed job queue and its dead-letter queue."""
import pytest

from conftest import MillisClock
from core.errors import EntityNotFoundError
from services.job_queue import RedisDeadLetterQueue, RedisJobQueue


@pytest.fixture
def clock():
    return MillisClock()


@pytest.fixture
def queue(redis, clock):
    return RedisJobQueue(
        redis, "checks", max_attempts=3, backoff_ms=1000, lease_ms=60_000, clock=clock,
    )


@pytest.fixture
def dead_letter(redis, queue):
    return RedisDeadLetterQueue(redis, "checks-dlq", queue)


class TestScheduling:

    @pytest.mark.asyncio
    async def test_delayed_job_is_claimed_once_due(self, queue, clock):
        job_id = await queue.schedule("check-duration", {"event_id": 1}, 5000, job_id="d-1")

        assert job_id == "d-1"
        assert await queue.claim_due(10) == []

        clock.advance(5000)
        [job] = await queue.claim_due(10)

        assert (job.id, job.job_type, job.payload) == ("d-1", "check-duration", {"event_id": 1})
        assert job.max_attempts == 3
        assert await queue.claim_due(10) == []
        assert await queue.stats() == {"name": "checks", "delayed": 0, "due": 0, "active": 1}

    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_due_order(self, queue, clock):
        await queue.schedule("t", {}, 300, job_id="late")
        await queue.schedule("t", {}, 100, job_id="early")
        await queue.schedule("t", {}, 200, job_id="middle")
        clock.advance(300)

        first = await queue.claim_due(2)
        rest = await queue.claim_due(2)

        assert [job.id for job in first] == ["early", "middle"]
        assert [job.id for job in rest] == ["late"]

    @pytest.mark.asyncio
    async def test_get_pending_filters_by_type(self, queue):
        await queue.schedule("check-duration", {"n": 1}, 1000, job_id="a")
        await queue.schedule("escalation-check", {"n": 2}, 1000, job_id="b")

        pending = await queue.get_pending("escalation-check")

        assert [job.id for job in pending] == ["b"]
        assert {job.id for job in await queue.get_pending()} == {"a", "b"}
        assert (await queue.get_job("a")).payload == {"n": 1}


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, queue, clock):
        await queue.schedule("t", {}, 1000, job_id="x")

        assert await queue.cancel("x") is True
        assert await queue.cancel("x") is False
        assert await queue.get_job("x") is None
        clock.advance(1000)
        assert await queue.claim_due(10) == []

    @pytest.mark.asyncio
    async def test_claimed_job_cannot_be_cancelled(self, queue, clock):
        await queue.schedule("t", {}, 0, job_id="x")
        await queue.claim_due(1)

        assert await queue.cancel("x") is False

    @pytest.mark.asyncio
    async def test_cancel_matching(self, queue):
        await queue.schedule("check-duration", {"event_id": 1, "tag_id": 10}, 1000, job_id="a")
        await queue.schedule("check-duration", {"event_id": 1, "tag_id": 10}, 2000, job_id="b")
        await queue.schedule("check-duration", {"event_id": 2, "tag_id": 10}, 1000, job_id="c")
        await queue.schedule("escalation-check", {"event_id": 1, "tag_id": 10}, 1000, job_id="d")

        cancelled = await queue.cancel_matching(
            "check-duration", lambda p: p["event_id"] == 1 and p["tag_id"] == 10,
        )

        assert cancelled == 2
        assert sorted(job.id for job in await queue.get_pending()) == ["c", "d"]


class TestFailures:

    @pytest.mark.asyncio
    async def test_fail_backs_off_exponentially_then_gives_up(self, queue, clock):
        await queue.schedule("t", {}, 0, job_id="x")
        [job] = await queue.claim_due(1)

        assert await queue.fail(job, RuntimeError("boom")) is True
        clock.advance(999)
        assert await queue.claim_due(1) == []
        clock.advance(1)
        [job] = await queue.claim_due(1)
        assert job.attempts == 1
        assert job.last_error == "RuntimeError: boom"

        assert await queue.fail(job, RuntimeError("boom")) is True
        clock.advance(1999)
        assert await queue.claim_due(1) == []
        clock.advance(1)
        [job] = await queue.claim_due(1)

        assert await queue.fail(job, RuntimeError("boom")) is False
        assert await queue.get_job("x") is None
        assert (await queue.stats())["active"] == 0

    @pytest.mark.asyncio
    async def test_complete_removes_job(self, queue):
        await queue.schedule("t", {}, 0, job_id="x")
        [job] = await queue.claim_due(1)

        await queue.complete(job)

        assert await queue.get_job("x") is None
        assert (await queue.stats())["active"] == 0

    @pytest.mark.asyncio
    async def test_stalled_job_is_redelivered(self, queue, clock):
        await queue.schedule("t", {"n": 1}, 0, job_id="x")
        await queue.claim_due(1)

        assert await queue.requeue_stalled() == 0
        clock.advance(60_000)
        assert await queue.requeue_stalled() == 1

        [job] = await queue.claim_due(1)
        assert job.id == "x"
        assert job.payload == {"n": 1}


class TestDeadLetter:

    @pytest.mark.asyncio
    async def test_add_and_list(self, queue, dead_letter, clock):
        await queue.schedule("recalculate", {"job_id": 7}, 0, job_id="r-7")
        [job] = await queue.claim_due(1)
        job.attempts = 3

        dlq_id = await dead_letter.add(job, ValueError("job vanished"))

        assert dlq_id == f"dlq-r-7-{clock()}"
        assert await dead_letter.count() == 1
        [record] = await dead_letter.list_jobs()
        assert record["originalJobId"] == "r-7"
        assert record["sourceQueue"] == "checks"
        assert record["payload"] == {"job_id": 7}
        assert record["error"] == {"message": "job vanished", "name": "ValueError"}
        assert record["attempts"] == 3

    @pytest.mark.asyncio
    async def test_list_is_newest_first_and_limited(self, queue, dead_letter, clock):
        for n in range(3):
            await queue.schedule("t", {"n": n}, 0, job_id=f"j{n}")
            [job] = await queue.claim_due(1)
            await dead_letter.add(job, RuntimeError("x"))
            clock.advance(10)

        records = await dead_letter.list_jobs(limit=2)

        assert [r["originalJobId"] for r in records] == ["j2", "j1"]

    @pytest.mark.asyncio
    async def test_retry_reenqueues_on_source(self, queue, dead_letter, clock):
        await queue.schedule("recalculate", {"job_id": 7}, 0, job_id="r-7")
        [job] = await queue.claim_due(1)
        dlq_id = await dead_letter.add(job, RuntimeError("db down"))
        clock.advance(50)

        new_id = await dead_letter.retry(dlq_id)

        assert new_id == f"r-7-retry-{clock()}"
        assert await dead_letter.count() == 0
        [pending] = await queue.get_pending("recalculate")
        assert pending.id == new_id
        assert pending.payload == {"job_id": 7}
        assert pending.attempts == 0

    @pytest.mark.asyncio
    async def test_retry_unknown_entry(self, dead_letter):
        with pytest.raises(EntityNotFoundError):
            await dead_letter.retry("dlq-missing")

    @pytest.mark.asyncio
    async def test_clear(self, queue, dead_letter):
        for n in range(2):
            await queue.schedule("t", {}, 0, job_id=f"j{n}")
            [job] = await queue.claim_due(1)
            await dead_letter.add(job, RuntimeError("x"))

        assert await dead_letter.clear() == 2
        assert await dead_letter.count() == 0
        assert await dead_letter.list_jobs() == []
