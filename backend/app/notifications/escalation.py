"""Escalation of unacknowledged notifications.

A level-0 notification of a rule with escalation enabled schedules an
'escalation-check' job. When it runs and the original is still not
acknowledged, a copy goes to the next user of the rule's escalation list
(level N -> escalation_user_ids[N-1]) and the check for level N+1 is
scheduled, until max_escalation_level or the end of the list.

Only acknowledging the level-0 notification stops the chain.
"""
from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from config import settings
from core.durations import to_milliseconds, utcnow
from models.notification import Notification, NotificationEvent

logger = logging.getLogger("linewatch.notifications.escalation")

ESCALATION_CHECK_JOB = "escalation-check"


class EscalationReason(str, enum.Enum):
    escalated = "escalated"
    notification_not_found = "notification_not_found"
    acknowledged = "acknowledged"
    event_not_found = "event_not_found"
    escalation_disabled = "escalation_disabled"
    max_level_reached = "max_level_reached"
    escalation_user_not_found = "escalation_user_not_found"


@dataclass
class EscalationResult:
    notification_id: int
    current_level: int
    reason: EscalationReason
    next_level: int | None = None
    user_id: int | None = None
    escalation_notification_id: int | None = None
    next_job_id: str | None = None

    @property
    def escalated(self) -> bool:
        return self.reason is EscalationReason.escalated


def new_ack_token() -> str:
    """64 hex characters (32 random bytes)."""
    return secrets.token_hex(32)


def escalation_job_id(notification_id: int, level: int, at: datetime) -> str:
    at_ms = int(at.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"escalation-{notification_id}-level-{level}-{at_ms}"


class EscalationService:

    def __init__(
        self,
        queue,
        repository,
        delivery,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_ttl_days: int | None = None,
    ):
        self.queue = queue
        self.repository = repository
        self.delivery = delivery
        self.clock = clock
        self.token_ttl = timedelta(days=token_ttl_days or settings.ACK_TOKEN_TTL_DAYS)

    @staticmethod
    def requires_escalation(rule: NotificationEvent) -> bool:
        return (
            bool(rule.enable_escalation)
            and (rule.escalation_delay or 0) > 0
            and bool(rule.escalation_recipients)
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_initial(self, notification: Notification, rule: NotificationEvent) -> str | None:
        """Arm the chain for a freshly created level-0 notification."""
        if notification.escalation_level != 0 or not self.requires_escalation(rule):
            return None
        job_id = await self._schedule(notification.id, rule, 0)
        await self.repository.set_escalation_job(notification.id, job_id)
        notification.escalation_job_id = job_id
        return job_id

    async def _schedule(self, original_id: int, rule: NotificationEvent, level: int) -> str:
        delay_ms = to_milliseconds(rule.escalation_delay, rule.escalation_delay_unit or "minutes")
        payload = {
            "notification_id": original_id,
            "event_id": rule.id,
            "current_level": level,
        }
        job_id = await self.queue.schedule(
            ESCALATION_CHECK_JOB,
            payload,
            delay_ms,
            job_id=escalation_job_id(original_id, level, self.clock()),
        )
        logger.info(
            "Escalation check for notification %s at level %d scheduled in %d ms (job %s)",
            original_id, level, delay_ms, job_id,
        )
        return job_id

    async def cancel(self, notification: Notification) -> bool:
        if not notification.escalation_job_id:
            return False
        cancelled = await self.queue.cancel(notification.escalation_job_id)
        await self.repository.set_escalation_job(notification.id, None)
        logger.info(
            "Escalation job %s of notification %s %s",
            notification.escalation_job_id, notification.id,
            "cancelled" if cancelled else "was no longer pending",
        )
        notification.escalation_job_id = None
        return cancelled

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_check(self, payload: dict) -> EscalationResult:
        original_id = payload["notification_id"]
        current_level = int(payload.get("current_level", 0))
        result = EscalationResult(
            notification_id=original_id,
            current_level=current_level,
            reason=EscalationReason.escalated,
        )

        original = await self.repository.get_notification(original_id)
        if original is None:
            return self._stop(result, EscalationReason.notification_not_found)
        if original.acknowledged_at is not None:
            return self._stop(result, EscalationReason.acknowledged)

        rule = await self.repository.get_event(original.event_id)
        if rule is None:
            return self._stop(result, EscalationReason.event_not_found)
        if not self.requires_escalation(rule):
            return self._stop(result, EscalationReason.escalation_disabled)

        recipients = rule.escalation_recipients
        next_level = current_level + 1
        result.next_level = next_level
        if next_level > rule.max_escalation_level or next_level > len(recipients):
            return self._stop(result, EscalationReason.max_level_reached)

        result.user_id = recipients[next_level - 1]
        user = await self.repository.get_user(result.user_id)
        if user is None:
            return self._stop(result, EscalationReason.escalation_user_not_found)

        # A retried job may find its copy already created
        escalated = await self.repository.find_escalation(original.id, next_level)
        if escalated is None:
            escalated = await self._create_copy(original, rule, user.id, next_level)
            await self.delivery.send_escalation(escalated, rule, user, original)
        elif rule.send_email and escalated.email_sent_at is None:
            logger.info("Escalation copy %s was never mailed, delivering again", escalated.id)
            await self.delivery.send_escalation(escalated, rule, user, original)
        result.escalation_notification_id = escalated.id

        if (
            next_level < rule.max_escalation_level
            and next_level < len(recipients)
            and escalated.escalation_job_id is None
        ):
            job_id = await self._schedule(original.id, rule, next_level)
            await self.repository.set_escalation_job(escalated.id, job_id)
            escalated.escalation_job_id = job_id
            result.next_job_id = job_id

        logger.info(
            "Notification %s escalated to level %d (user %s, copy %s)",
            original.id, next_level, user.id, escalated.id,
        )
        return result

    async def _create_copy(
        self, original: Notification, rule: NotificationEvent, user_id: int, level: int,
    ) -> Notification:
        now = self.clock()
        copy = Notification(
            event_id=original.event_id,
            user_id=user_id,
            message=original.message,
            tag_value=original.tag_value,
            old_tag_value=original.old_tag_value,
            notification_type=original.notification_type or rule.notification_type,
            is_read=False,
            escalation_level=level,
            parent_notification_id=original.id,
            email_token=new_ack_token(),
            token_expires_at=now + self.token_ttl,
        )
        created = await self.repository.add_notifications([copy])
        return created[0]

    @staticmethod
    def _stop(result: EscalationResult, reason: EscalationReason) -> EscalationResult:
        result.reason = reason
        logger.info(
            "Escalation of notification %s stopped at level %d: %s",
            result.notification_id, result.current_level, reason.value,
        )
        return result
