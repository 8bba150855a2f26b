"""Aggregation orchestrator: idempotent per-job recalculation.

recalculate(job_id):
1. Snapshot annotated alarm episodes (reason / note) of the job
2. Delete all alarm and machine-state episodes of the job
3. Re-segment alarms, then machine states, over the job window
4. Copy annotations back onto episodes with the same composite key
5. Drop carve-out alarms (one known noisy line/machine/tag)
6. Rebuild the per-minute efficiency series (non-fatal unless the job is gone)

Steps 1-5 run in a single store transaction. recalculate() without a job id
sweeps every closed job that has no episodes yet.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from config import settings
from core.durations import utcnow
from core.errors import JobNotFoundError, TransientInfrastructureError
from aggregation.segmenter import (
    AlarmEpisode,
    AnnotationKey,
    segment_alarms,
    segment_machine_states,
)

logger = logging.getLogger("linewatch.aggregation.orchestrator")

PROGRESS_CHANNEL = "jobs:recalculation"


class AggregationKind(str, enum.Enum):
    alarms = "alarms"
    machine_states = "machine_states"


@dataclass(frozen=True)
class JobWindow:
    id: int
    line_id: int
    start_time: datetime | None
    end_time: datetime | None

    @property
    def is_closed(self) -> bool:
        return self.start_time is not None and self.end_time is not None


@dataclass(frozen=True)
class Annotation:
    reason_id: int | None
    reason_name: str | None
    note: str | None


@dataclass(frozen=True)
class DurationCarveOut:
    line_id: int
    machine_id: int
    tag_id: int
    max_minutes: float

    @classmethod
    def from_settings(cls) -> "DurationCarveOut":
        return cls(
            line_id=settings.CARVE_OUT_LINE_ID,
            machine_id=settings.CARVE_OUT_MACHINE_ID,
            tag_id=settings.CARVE_OUT_TAG_ID,
            max_minutes=settings.CARVE_OUT_MAX_MINUTES,
        )

    def drops(self, episode: AlarmEpisode) -> bool:
        ctx = episode.context
        return (
            ctx.line_id == self.line_id
            and ctx.machine_id == self.machine_id
            and ctx.tag_id == self.tag_id
            and episode.duration_minutes > self.max_minutes
        )


@dataclass
class RecalculationResult:
    job_id: int
    alarm_episodes: int = 0
    state_episodes: int = 0
    annotations_restored: int = 0
    carved_out: int = 0
    failed_tags: list[int] = field(default_factory=list)
    efficiency_ok: bool | None = None
    skipped: bool = False


class AggregationOrchestrator:
    """Drives segmentation for jobs and replaces their stored episodes.

    ``store_factory()`` returns an async context manager yielding an episode
    store bound to one transaction (see aggregation.repository). The
    efficiency service and the progress publisher are optional.
    """

    def __init__(
        self,
        store_factory: Callable,
        *,
        efficiency=None,
        publisher=None,
        carve_out: DurationCarveOut | None = None,
    ):
        self.store_factory = store_factory
        self.efficiency = efficiency
        self.publisher = publisher
        self.carve_out = carve_out or DurationCarveOut.from_settings()

    async def recalculate(self, job_id: int | None = None):
        """Recalculate one job, or sweep all jobs lacking episodes when job_id is None."""
        if job_id is None:
            return await self.sweep()
        return await self.recalculate_job(job_id)

    async def sweep(self) -> list[RecalculationResult]:
        async with self.store_factory() as store:
            pending = set(await store.list_jobs_needing_aggregation(AggregationKind.alarms))
            pending |= set(await store.list_jobs_needing_aggregation(AggregationKind.machine_states))

        if not pending:
            logger.debug("Aggregation sweep: nothing to do")
            return []

        logger.info("Aggregation sweep: %d job(s) need episodes", len(pending))
        results = []
        for job_id in sorted(pending):
            try:
                results.append(await self.recalculate_job(job_id))
            except TransientInfrastructureError:
                raise
            except Exception as exc:
                logger.error("Aggregation of job %s failed: %s", job_id, exc, exc_info=True)
        return results

    async def recalculate_job(self, job_id: int) -> RecalculationResult:
        result = RecalculationResult(job_id=job_id)
        await self._publish(job_id, "aggregation", "started")

        async with self.store_factory() as store:
            job = await store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id, stage="aggregation")
            if not job.is_closed:
                logger.warning("Job %s has no closed time window, skipping aggregation", job_id)
                result.skipped = True
                return result

            annotations = await store.load_annotations(job_id)
            await store.delete_episodes(job_id)

            alarms = await self._segment_alarms(store, job, result)
            states = await self._segment_states(store, job, result)

            result.annotations_restored = self._restore_annotations(alarms, annotations)
            alarms = self._apply_carve_out(alarms, result)

            await store.insert_alarm_episodes(job_id, alarms)
            await store.insert_machine_state_episodes(job_id, states)

        result.alarm_episodes = len(alarms)
        result.state_episodes = len(states)
        logger.info(
            "Job %s aggregated: %d alarm episode(s), %d state episode(s), "
            "%d annotation(s) restored, %d carved out",
            job_id, result.alarm_episodes, result.state_episodes,
            result.annotations_restored, result.carved_out,
        )
        await self._publish(job_id, "aggregation", "completed")

        await self._recalculate_efficiency(job_id, result)
        return result

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    async def _segment_alarms(self, store, job: JobWindow, result: RecalculationResult) -> list:
        contexts = await store.list_alarm_tags(job)
        return await self._collect(store, job, contexts, segment_alarms, result)

    async def _segment_states(self, store, job: JobWindow, result: RecalculationResult) -> list:
        contexts = await store.list_state_tags(job)
        return await self._collect(store, job, contexts, segment_machine_states, result)

    async def _collect(self, store, job, contexts, segmenter, result) -> list:
        episodes = []
        for ctx in contexts:
            try:
                async with store.isolate():
                    samples = await store.get_samples(ctx.tag_id, job.start_time, job.end_time)
                episodes.extend(segmenter(samples, ctx))
            except TransientInfrastructureError:
                raise
            except Exception as exc:
                result.failed_tags.append(ctx.tag_id)
                logger.error(
                    "Segmentation failed for job %s machine %s tag %s: %s",
                    job.id, ctx.machine_id, ctx.tag_id, exc, exc_info=True,
                )
        return episodes

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    @staticmethod
    def _restore_annotations(
        episodes: list[AlarmEpisode], annotations: dict[AnnotationKey, Annotation],
    ) -> int:
        restored = 0
        for episode in episodes:
            saved = annotations.get(episode.key)
            if saved is None:
                continue
            episode.reason_id = saved.reason_id
            episode.reason_name = saved.reason_name
            episode.note = saved.note
            restored += 1
        return restored

    def _apply_carve_out(self, episodes: list[AlarmEpisode], result: RecalculationResult) -> list:
        kept = []
        for episode in episodes:
            if self.carve_out.drops(episode):
                result.carved_out += 1
                logger.info(
                    "Dropped %.1f min alarm %s (line %s, machine %s, tag %s) over %.0f min limit",
                    episode.duration_minutes, episode.alarm_code, episode.context.line_id,
                    episode.context.machine_id, episode.context.tag_id, self.carve_out.max_minutes,
                )
                continue
            kept.append(episode)
        return kept

    async def _recalculate_efficiency(self, job_id: int, result: RecalculationResult) -> None:
        if self.efficiency is None:
            return
        await self._publish(job_id, "efficiency", "started")
        try:
            await self.efficiency.recalculate_for_job(job_id)
        except JobNotFoundError:
            await self._publish(job_id, "efficiency", "failed")
            raise
        except Exception as exc:
            result.efficiency_ok = False
            logger.error(
                "Efficiency series for job %s failed (aggregation kept): %s",
                job_id, exc, exc_info=True,
            )
            await self._publish(job_id, "efficiency", "failed")
        else:
            result.efficiency_ok = True
            await self._publish(job_id, "efficiency", "completed")

    async def _publish(self, job_id: int, section: str, status: str) -> None:
        if self.publisher is None:
            return
        payload = {
            "type": "recalculation",
            "jobId": job_id,
            "section": section,
            "status": status,
            "timestamp": utcnow().isoformat(),
        }
        try:
            await self.publisher.publish(PROGRESS_CHANNEL, payload)
        except Exception as exc:
            logger.warning("Progress publish failed for job %s: %s", job_id, exc)
