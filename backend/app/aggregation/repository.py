"""SQLAlchemy episode store used by the aggregation orchestrator.

One store instance wraps one session and one transaction; the transaction
commits when the ``episode_store_scope`` context exits cleanly.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import TransientInfrastructureError
from aggregation.orchestrator import AggregationKind, Annotation, JobWindow
from aggregation.segmenter import (
    AlarmEpisode,
    AnnotationKey,
    EpisodeContext,
    MachineStateEpisode,
    TagSample,
)
from models.aggregation import AlarmAggregation, MachineStateAggregation
from models.job import Job, JobLineMachineTag
from models.line import Line, Machine
from models.tag import Tag, TagRef, TagValue

logger = logging.getLogger("linewatch.aggregation.repository")

_EPISODE_TABLES = {
    AggregationKind.alarms: AlarmAggregation,
    AggregationKind.machine_states: MachineStateAggregation,
}


class SqlEpisodeStore:

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def isolate(self):
        """Savepoint around one machine-tag so its failure can be rolled back alone."""
        try:
            async with self.session.begin_nested():
                yield
        except (OperationalError, InterfaceError) as exc:
            raise TransientInfrastructureError(f"Database unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job(self, job_id: int) -> JobWindow | None:
        job = await self.session.get(Job, job_id)
        if job is None:
            return None
        return JobWindow(
            id=job.id,
            line_id=job.line_id,
            start_time=job.actual_start_time,
            end_time=job.actual_end_time,
        )

    async def list_jobs_needing_aggregation(self, kind: AggregationKind) -> list[int]:
        table = _EPISODE_TABLES[AggregationKind(kind)]
        stmt = (
            select(Job.id)
            .where(
                and_(
                    Job.actual_start_time.is_not(None),
                    Job.actual_end_time.is_not(None),
                    Job.id.not_in(select(table.job_id).distinct()),
                )
            )
            .order_by(Job.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Tags and samples
    # ------------------------------------------------------------------

    async def list_alarm_tags(self, job: JobWindow) -> list[EpisodeContext]:
        stmt = (
            select(JobLineMachineTag)
            .where(
                and_(
                    JobLineMachineTag.job_id == job.id,
                    JobLineMachineTag.ref == TagRef.first_fault.value,
                )
            )
            .order_by(JobLineMachineTag.machine_id, JobLineMachineTag.tag_id)
        )
        result = await self.session.execute(stmt)
        contexts: dict[tuple[int, int], EpisodeContext] = {}
        for row in result.scalars().all():
            contexts.setdefault((row.machine_id, row.tag_id), EpisodeContext(
                job_id=job.id,
                machine_id=row.machine_id,
                machine_name=row.machine_name,
                tag_id=row.tag_id,
                tag_name=row.tag_name,
                line_id=row.line_id,
                line_name=row.line_name,
            ))
        return list(contexts.values())

    async def list_state_tags(self, job: JobWindow) -> list[EpisodeContext]:
        machine_ids = (
            select(JobLineMachineTag.machine_id)
            .where(
                and_(
                    JobLineMachineTag.job_id == job.id,
                    JobLineMachineTag.line_id == job.line_id,
                )
            )
            .distinct()
        )
        stmt = (
            select(Machine, Tag, Line)
            .join(Tag, and_(
                Tag.taggable_type == "machine",
                Tag.taggable_id == Machine.id,
                Tag.ref == TagRef.machine_state.value,
            ))
            .join(Line, Line.id == job.line_id)
            .where(Machine.id.in_(machine_ids))
            .order_by(Machine.id, Tag.id)
        )
        result = await self.session.execute(stmt)
        contexts: dict[int, EpisodeContext] = {}
        for machine, tag, line in result.all():
            contexts.setdefault(machine.id, EpisodeContext(
                job_id=job.id,
                machine_id=machine.id,
                machine_name=machine.name,
                tag_id=tag.id,
                tag_name=tag.name,
                line_id=line.id,
                line_name=line.name,
            ))
        return list(contexts.values())

    async def get_samples(
        self, tag_id: int, start: datetime, end: datetime,
    ) -> list[TagSample]:
        stmt = (
            select(TagValue.value, TagValue.created_at)
            .where(
                and_(
                    TagValue.tag_id == tag_id,
                    TagValue.created_at >= start,
                    TagValue.created_at <= end,
                )
            )
            .order_by(TagValue.created_at, TagValue.id)
        )
        result = await self.session.execute(stmt)
        return [
            TagSample(tag_id=tag_id, value=str(value), timestamp=ts)
            for value, ts in result.all()
        ]

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    async def load_annotations(self, job_id: int) -> dict[AnnotationKey, Annotation]:
        stmt = select(AlarmAggregation).where(
            and_(
                AlarmAggregation.job_id == job_id,
                or_(
                    AlarmAggregation.alarm_reason_id.is_not(None),
                    AlarmAggregation.alarm_note.is_not(None),
                ),
            )
        )
        result = await self.session.execute(stmt)
        annotations = {}
        for row in result.scalars().all():
            key = AnnotationKey(
                machine_id=row.machine_id,
                tag_id=row.tag_id,
                alarm_code=row.alarm_code,
                start_time=row.alarm_start_datetime,
                end_time=row.alarm_end_datetime,
            )
            annotations[key] = Annotation(
                reason_id=row.alarm_reason_id,
                reason_name=row.alarm_reason_name,
                note=row.alarm_note,
            )
        logger.debug("Job %s: %d annotated alarm episode(s) snapshotted", job_id, len(annotations))
        return annotations

    async def delete_episodes(self, job_id: int) -> None:
        await self.session.execute(delete(AlarmAggregation).where(AlarmAggregation.job_id == job_id))
        await self.session.execute(
            delete(MachineStateAggregation).where(MachineStateAggregation.job_id == job_id)
        )

    async def insert_alarm_episodes(self, job_id: int, episodes: list[AlarmEpisode]) -> None:
        self.session.add_all([
            AlarmAggregation(
                job_id=job_id,
                machine_id=ep.context.machine_id,
                machine_name=ep.context.machine_name,
                tag_id=ep.context.tag_id,
                tag_name=ep.context.tag_name,
                line_id=ep.context.line_id,
                line_name=ep.context.line_name,
                alarm_code=ep.alarm_code,
                alarm_start_datetime=ep.start_time,
                alarm_end_datetime=ep.end_time,
                duration=ep.duration_minutes,
                alarm_reason_id=ep.reason_id,
                alarm_reason_name=ep.reason_name,
                alarm_note=ep.note,
                processed=ep.processed,
            )
            for ep in episodes
        ])
        await self.session.flush()

    async def insert_machine_state_episodes(
        self, job_id: int, episodes: list[MachineStateEpisode],
    ) -> None:
        self.session.add_all([
            MachineStateAggregation(
                job_id=job_id,
                machine_id=ep.context.machine_id,
                machine_name=ep.context.machine_name,
                tag_id=ep.context.tag_id,
                tag_name=ep.context.tag_name,
                line_id=ep.context.line_id,
                line_name=ep.context.line_name,
                state_code=ep.state_code,
                state_name=ep.state_name,
                state_start_time=ep.start_time,
                state_end_time=ep.end_time,
                duration=ep.duration_minutes,
                user_note=ep.user_note,
                processed=ep.processed,
            )
            for ep in episodes
        ])
        await self.session.flush()


def episode_store_scope(session_factory: async_sessionmaker[AsyncSession]):
    """Build the store factory handed to AggregationOrchestrator."""

    @asynccontextmanager
    async def scope():
        async with session_factory() as session:
            try:
                async with session.begin():
                    yield SqlEpisodeStore(session)
            except (OperationalError, InterfaceError) as exc:
                raise TransientInfrastructureError(f"Database unavailable: {exc}") from exc

    return scope
