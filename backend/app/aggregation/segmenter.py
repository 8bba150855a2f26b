"""Episode segmentation.

Walks an ordered tag value stream and emits one episode per contiguous run
of a value. Alarms ignore the "0" baseline; machine states keep every value,
including state 0.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Sequence

from config import settings
from core.durations import minutes_between
from core.states import get_state_label

logger = logging.getLogger("linewatch.aggregation.segmenter")

ALARM_BASELINE = "0"
PREFORM_FEEDER_PATTERNS = ("preformfeeder", "preform-feeder")


class SegmentMode(str, enum.Enum):
    alarm = "alarm"
    state = "state"


@dataclass(frozen=True)
class TagSample:
    tag_id: int
    value: str
    timestamp: datetime


@dataclass(frozen=True)
class EpisodeContext:
    """Where the samples came from: copied onto every episode."""
    job_id: int
    machine_id: int
    machine_name: str
    tag_id: int
    tag_name: str
    line_id: int
    line_name: str


@dataclass(frozen=True)
class AnnotationKey:
    machine_id: int
    tag_id: int
    alarm_code: str
    start_time: datetime
    end_time: datetime


@dataclass
class AlarmEpisode:
    context: EpisodeContext
    alarm_code: str
    start_time: datetime
    end_time: datetime
    duration_minutes: float
    reason_id: int | None = None
    reason_name: str | None = None
    note: str | None = None
    processed: bool = True

    @property
    def key(self) -> AnnotationKey:
        return AnnotationKey(
            machine_id=self.context.machine_id,
            tag_id=self.context.tag_id,
            alarm_code=self.alarm_code,
            start_time=self.start_time,
            end_time=self.end_time,
        )


@dataclass
class MachineStateEpisode:
    context: EpisodeContext
    state_code: int
    state_name: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    user_note: str | None = None
    processed: bool = True


def iter_runs(
    samples: Sequence[TagSample], baseline: str | None = None,
) -> Iterator[tuple[str, datetime, datetime]]:
    """Yield (value, start, end) for every contiguous run of a value.

    A run ends at the timestamp of the first sample carrying a different
    value, and the next run starts there. With a baseline, baseline samples
    never open a run. The last open run closes at the last sample.
    """
    if len(samples) < 2:
        return

    active: str | None = None
    start: datetime | None = None
    for current, following in zip(samples, samples[1:]):
        if active is None:
            if baseline is not None and current.value == baseline:
                continue
            active, start = current.value, current.timestamp

        if following.value != active:
            yield active, start, following.timestamp
            if baseline is not None and following.value == baseline:
                active = start = None
            else:
                active, start = following.value, following.timestamp

    if active is not None:
        yield active, start, samples[-1].timestamp


def is_preform_feeder(machine_name: str | None) -> bool:
    name = (machine_name or "").lower()
    return any(pattern in name for pattern in PREFORM_FEEDER_PATTERNS)


def segment_alarms(
    samples: Sequence[TagSample], context: EpisodeContext,
) -> list[AlarmEpisode]:
    episodes: list[AlarmEpisode] = []
    suppress_long = is_preform_feeder(context.machine_name)
    limit = settings.PREFORM_FEEDER_MAX_ALARM_MINUTES

    for code, start, end in iter_runs(samples, baseline=ALARM_BASELINE):
        if end <= start:
            continue
        duration = minutes_between(start, end)
        if suppress_long and duration > limit:
            logger.info(
                "Suppressed %.1f min alarm %s on preform feeder '%s' (job %s, tag %s)",
                duration, code, context.machine_name, context.job_id, context.tag_id,
            )
            continue
        episodes.append(AlarmEpisode(
            context=context,
            alarm_code=code,
            start_time=start,
            end_time=end,
            duration_minutes=duration,
        ))
    return episodes


def segment_machine_states(
    samples: Sequence[TagSample], context: EpisodeContext,
) -> list[MachineStateEpisode]:
    episodes: list[MachineStateEpisode] = []

    for value, start, end in iter_runs(samples):
        if end <= start:
            continue
        try:
            code = int(value)
        except (TypeError, ValueError):
            logger.warning(
                "Skipping non-integer state value %r on tag %s (job %s)",
                value, context.tag_id, context.job_id,
            )
            continue
        episodes.append(MachineStateEpisode(
            context=context,
            state_code=code,
            state_name=get_state_label(code),
            start_time=start,
            end_time=end,
            duration_minutes=int((end - start).total_seconds() // 60),
        ))
    return episodes


def segment(samples: Sequence[TagSample], mode: SegmentMode, context: EpisodeContext) -> list:
    if SegmentMode(mode) is SegmentMode.alarm:
        return segment_alarms(samples, context)
    return segment_machine_states(samples, context)
