"""Duration gate for state_change rules with a minimum persistence time.

Entering the target state schedules a delayed 'check-duration' job; the
pending job itself is the only record that the gate is armed. Leaving the
target state cancels every pending check for that (event, tag) pair. When
the job runs, the rule and the tag are re-read and the notification may
fire only if all of these still hold:
  rule active, tag still in target state, duration elapsed, no cooldown.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from core.durations import (
    format_duration,
    has_elapsed,
    to_milliseconds,
    utcnow,
    validate_duration,
)
from core.errors import ConfigurationError
from notifications.conditions import (
    TagChange,
    cooldown_remaining,
    normalize_value,
    requires_duration_check,
)

logger = logging.getLogger("linewatch.notifications.duration_gate")

CHECK_DURATION_JOB = "check-duration"


class DurationCheckReason(str, enum.Enum):
    event_not_found = "event_not_found"
    event_inactive = "event_inactive"
    tag_not_found = "tag_not_found"
    state_changed = "state_changed"
    duration_not_elapsed = "duration_not_elapsed"
    cooldown = "cooldown"
    invalid_duration = "invalid_duration"


@dataclass
class GateOutcome:
    action: str                     # scheduled, cancelled, ignored
    reason: str | None = None
    job_id: str | None = None
    cancelled: int = 0
    delay_ms: int = 0


@dataclass
class DurationCheckResult:
    event_id: int
    tag_id: int
    expected_state: str
    triggered: bool = False
    reason: DurationCheckReason | None = None
    current_state: str | None = None
    minutes_remaining: int | None = None

    @property
    def status_message(self) -> str:
        if self.triggered:
            return f"State {self.expected_state} held for the required duration"
        messages = {
            DurationCheckReason.event_not_found: "Notification event no longer exists",
            DurationCheckReason.event_inactive: "Notification event is inactive",
            DurationCheckReason.tag_not_found: "Tag no longer exists",
            DurationCheckReason.state_changed: (
                f"State changed from {self.expected_state} to {self.current_state}"
            ),
            DurationCheckReason.duration_not_elapsed: "Required duration has not elapsed yet",
            DurationCheckReason.cooldown: (
                f"In cooldown period ({self.minutes_remaining} minutes remaining)"
            ),
            DurationCheckReason.invalid_duration: "Duration configuration is invalid",
        }
        return messages.get(self.reason, "Unknown status")


def _epoch_ms(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def duration_job_id(event_id: int, tag_id: int, at_ms: int) -> str:
    return f"duration-{event_id}-tag-{tag_id}-{at_ms}"


class DurationGate:

    def __init__(self, queue, repository, *, clock: Callable[[], datetime] = utcnow):
        self.queue = queue
        self.repository = repository
        self.clock = clock

    async def handle_state_change(self, rule, change: TagChange) -> GateOutcome:
        """Arm or disarm the gate for one tag change on a duration-gated rule."""
        if not requires_duration_check(rule):
            return GateOutcome(action="ignored", reason="no_duration_requirement")
        try:
            validate_duration(rule.state_duration, rule.state_duration_unit)
        except ConfigurationError as exc:
            logger.warning("Rule %s has an invalid state duration: %s", rule.id, exc)
            return GateOutcome(action="ignored", reason=DurationCheckReason.invalid_duration.value)

        target = str(rule.target_state)
        new_value = normalize_value(change.new_value)
        old_value = normalize_value(change.old_value)

        if new_value == target and old_value != target:
            return await self.schedule_check(rule, change)

        if old_value == target and new_value != target:
            cancelled = await self.cancel_pending(rule.id, change.tag_id)
            return GateOutcome(action="cancelled", reason="state_exited", cancelled=cancelled)

        return GateOutcome(action="ignored", reason="no_state_change")

    async def schedule_check(self, rule, change: TagChange) -> GateOutcome:
        entered_at = self.clock()
        delay_ms = to_milliseconds(rule.state_duration, rule.state_duration_unit)
        payload = {
            "event_id": rule.id,
            "tag_id": change.tag_id,
            "expected_state": str(rule.target_state),
            "duration": rule.state_duration,
            "duration_unit": rule.state_duration_unit,
            "entered_at": entered_at.isoformat(),
            "old_value": change.old_value,
        }
        job_id = await self.queue.schedule(
            CHECK_DURATION_JOB,
            payload,
            delay_ms,
            job_id=duration_job_id(rule.id, change.tag_id, _epoch_ms(entered_at)),
        )
        logger.info(
            "Rule %s: tag %s entered state %s, check in %s (job %s)",
            rule.id, change.tag_id, rule.target_state,
            format_duration(rule.state_duration, rule.state_duration_unit), job_id,
        )
        return GateOutcome(action="scheduled", job_id=job_id, delay_ms=delay_ms)

    async def cancel_pending(self, event_id: int, tag_id: int) -> int:
        cancelled = await self.queue.cancel_matching(
            CHECK_DURATION_JOB,
            lambda payload: payload.get("event_id") == event_id and payload.get("tag_id") == tag_id,
        )
        if cancelled:
            logger.info(
                "Rule %s: tag %s left target state, cancelled %d pending check(s)",
                event_id, tag_id, cancelled,
            )
        return cancelled

    async def execute_check(self, payload: dict) -> DurationCheckResult:
        """Re-verify a scheduled check against current rule and tag state."""
        result = DurationCheckResult(
            event_id=payload["event_id"],
            tag_id=payload["tag_id"],
            expected_state=str(payload["expected_state"]),
        )

        rule = await self.repository.get_event(result.event_id)
        if rule is None:
            result.reason = DurationCheckReason.event_not_found
            return result
        if not rule.is_active:
            result.reason = DurationCheckReason.event_inactive
            return result

        tag = await self.repository.get_tag(result.tag_id)
        if tag is None:
            result.reason = DurationCheckReason.tag_not_found
            return result

        result.current_state = normalize_value(tag.current_value)
        if result.current_state != result.expected_state:
            result.reason = DurationCheckReason.state_changed
            return result

        now = self.clock()
        entered_at = datetime.fromisoformat(payload["entered_at"])
        try:
            elapsed = has_elapsed(entered_at, payload["duration"], payload["duration_unit"], now)
        except ConfigurationError as exc:
            logger.warning("Duration check for rule %s has an invalid duration: %s", rule.id, exc)
            result.reason = DurationCheckReason.invalid_duration
            return result
        if not elapsed:
            result.reason = DurationCheckReason.duration_not_elapsed
            return result

        remaining = cooldown_remaining(rule, now)
        if remaining > 0:
            result.reason = DurationCheckReason.cooldown
            result.minutes_remaining = remaining
            return result

        result.triggered = True
        return result
