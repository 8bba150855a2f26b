"""Per-minute production series for a job (OEE input data).

The line's bottle counter ('bc' tag) is a monotonically increasing counter
that may reset. For every minute of the job window we store how many
bottles were produced during that minute and the running total.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import ConfigurationError, JobNotFoundError
from aggregation.segmenter import TagSample
from models.job import Job
from models.oee_time_series import OEETimeSeries
from models.tag import Tag, TagRef, TagValue

logger = logging.getLogger("linewatch.aggregation.efficiency")


@dataclass(frozen=True)
class MinutePoint:
    minute: int
    timestamp: datetime
    bottle_count: int
    cumulative_count: int


def _counter(value: str) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def build_minute_series(
    samples: Sequence[TagSample], start: datetime, end: datetime,
) -> list[MinutePoint]:
    """Bucket counter samples into minutes from start to end.

    Each bucket counts the counter increase observed inside it. A drop in
    the counter is a reset: the new reading itself counts as production.
    """
    if end <= start:
        return []

    minutes = int((end - start).total_seconds() // 60) or 1
    produced = [0] * minutes
    previous: int | None = None

    for sample in samples:
        reading = _counter(sample.value)
        if reading is None:
            continue
        if previous is not None and sample.timestamp >= start:
            delta = reading - previous if reading >= previous else reading
            index = int((sample.timestamp - start).total_seconds() // 60)
            produced[min(index, minutes - 1)] += delta
        previous = reading

    points = []
    total = 0
    for index, count in enumerate(produced):
        total += count
        points.append(MinutePoint(
            minute=index + 1,
            timestamp=start + timedelta(minutes=index + 1),
            bottle_count=count,
            cumulative_count=total,
        ))
    return points


class OEETimeSeriesService:
    """Rebuilds oee_time_series rows for one job."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def recalculate_for_job(self, job_id: int) -> int:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id, stage="efficiency")
            if job.actual_start_time is None or job.actual_end_time is None:
                logger.debug("Job %s is still open, no efficiency series", job_id)
                return 0

            tag_id = await self._counter_tag_id(session, job.line_id)
            if tag_id is None:
                raise ConfigurationError(
                    f"Line {job.line_id} has no bottle counter tag", job_id=job_id,
                )

            samples = await self._load_samples(
                session, tag_id, job.actual_start_time, job.actual_end_time,
            )
            points = build_minute_series(samples, job.actual_start_time, job.actual_end_time)

            await session.execute(delete(OEETimeSeries).where(OEETimeSeries.job_id == job_id))
            session.add_all([
                OEETimeSeries(
                    job_id=job_id,
                    minute=p.minute,
                    timestamp=p.timestamp,
                    bottle_count=p.bottle_count,
                    cumulative_count=p.cumulative_count,
                )
                for p in points
            ])
            await session.commit()

        logger.info("Job %s efficiency series rebuilt: %d minute(s)", job_id, len(points))
        return len(points)

    async def _counter_tag_id(self, session: AsyncSession, line_id: int) -> int | None:
        stmt = select(Tag.id).where(
            and_(
                Tag.taggable_type == "line",
                Tag.taggable_id == line_id,
                Tag.ref == TagRef.bottles_count.value,
            )
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _load_samples(
        self, session: AsyncSession, tag_id: int, start: datetime, end: datetime,
    ) -> list[TagSample]:
        # One reading before the window gives the baseline for the first minute
        before = (
            select(TagValue.value, TagValue.created_at)
            .where(and_(TagValue.tag_id == tag_id, TagValue.created_at < start))
            .order_by(TagValue.created_at.desc())
            .limit(1)
        )
        inside = (
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
        rows = list((await session.execute(before)).all())
        rows += list((await session.execute(inside)).all())
        return [TagSample(tag_id=tag_id, value=str(v), timestamp=ts) for v, ts in rows]
