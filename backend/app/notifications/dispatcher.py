"""Notification dispatcher: entry points of the notification workflow.

on_tag_value_changed(tag_id, new_value, old_value, timestamp):
1. Load active rules of the tag
2. Skip invalid rules and rules still in cooldown (wall clock)
3. Duration-gated state rules -> DurationGate (the only trigger path)
4. Everything else -> condition evaluation -> trigger

Triggering first claims last_triggered_at (real firing time, conditional on
the cooldown), then creates one level-0 notification per recipient in one
batch, sends e-mails, arms escalation and publishes in-app.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from config import settings
from core.durations import utcnow
from core.errors import (
    ConfigurationError,
    EntityNotFoundError,
    InvalidTokenError,
    TokenExpiredError,
)
from models.notification import Notification, NotificationEvent
from notifications.conditions import (
    TagChange,
    cooldown_remaining,
    evaluate_condition,
    normalize_value,
    requires_duration_check,
    validate_rule,
)
from notifications.duration_gate import DurationCheckResult
from notifications.escalation import EscalationResult, new_ack_token
from notifications.formatting import format_message

logger = logging.getLogger("linewatch.notifications.dispatcher")

TOKEN_PATTERN = re.compile(r"[0-9a-f]{64}")


@dataclass
class RuleOutcome:
    event_id: int
    action: str         # triggered, gated, cooldown, not_met, invalid, no_recipients, failed
    notifications: int = 0
    detail: str | None = None


@dataclass
class AcknowledgeResult:
    notification_id: int
    acknowledged_at: datetime
    already_acknowledged: bool = False
    escalation_cancelled: bool = False


class NotificationDispatcher:

    def __init__(
        self,
        repository,
        duration_gate,
        escalation,
        delivery,
        *,
        clock: Callable[[], datetime] = utcnow,
        token_ttl_days: int | None = None,
    ):
        self.repository = repository
        self.duration_gate = duration_gate
        self.escalation = escalation
        self.delivery = delivery
        self.clock = clock
        self.token_ttl = timedelta(days=token_ttl_days or settings.ACK_TOKEN_TTL_DAYS)

    # ------------------------------------------------------------------
    # Tag changes
    # ------------------------------------------------------------------

    async def on_tag_value_changed(
        self, tag_id: int, new_value, old_value=None, timestamp: datetime | None = None,
    ) -> list[RuleOutcome]:
        change = TagChange(
            tag_id=tag_id,
            new_value=None if new_value is None else str(new_value),
            old_value=None if old_value is None else str(old_value),
            timestamp=timestamp,
        )
        return await self.check_and_trigger([change])

    async def check_and_trigger(self, changes: Iterable[TagChange]) -> list[RuleOutcome]:
        changes = list(changes)
        if not changes:
            return []

        rules_by_tag: dict[int, list[NotificationEvent]] = {}
        tag_ids = list(dict.fromkeys(change.tag_id for change in changes))
        for rule in await self.repository.list_active_events(tag_ids):
            rules_by_tag.setdefault(rule.tag_id, []).append(rule)

        # Arrival order: one batch may arm and disarm the same gate
        outcomes = []
        for change in changes:
            for rule in rules_by_tag.get(change.tag_id, ()):
                try:
                    outcomes.append(await self._process_rule(rule, change))
                except Exception as exc:
                    logger.error(
                        "Rule %s failed for tag %s: %s", rule.id, change.tag_id, exc, exc_info=True,
                    )
                    outcomes.append(RuleOutcome(rule.id, "failed", detail=str(exc)))
        return outcomes

    async def _process_rule(self, rule: NotificationEvent, change: TagChange) -> RuleOutcome:
        try:
            validate_rule(rule)
        except ConfigurationError as exc:
            logger.warning("Rule %s skipped, invalid configuration: %s", rule.id, exc)
            return RuleOutcome(rule.id, "invalid", detail=str(exc))

        remaining = cooldown_remaining(rule, self.clock())
        if remaining:
            logger.debug("Rule %s in cooldown, %d minute(s) left", rule.id, remaining)
            return RuleOutcome(rule.id, "cooldown", detail=f"{remaining} minutes remaining")

        if requires_duration_check(rule):
            gate = await self.duration_gate.handle_state_change(rule, change)
            return RuleOutcome(rule.id, "gated", detail=gate.action)

        if not evaluate_condition(rule, change):
            return RuleOutcome(rule.id, "not_met")

        created = await self.trigger(rule, change.new_value, change.old_value)
        if created is None:
            return RuleOutcome(rule.id, "cooldown", detail="already fired")
        if not created:
            return RuleOutcome(rule.id, "no_recipients")
        return RuleOutcome(rule.id, "triggered", notifications=len(created))

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    async def trigger(self, rule: NotificationEvent, value, old_value) -> list[Notification] | None:
        """Fire the rule. None when another firing already holds the cooldown window.

        last_triggered_at is claimed before anything is created; a job retried
        after a later failure finds the rule in cooldown.
        """
        users = await self.repository.get_recipients(rule)
        if not users:
            logger.warning("Rule %s fired but has no recipients", rule.id)
            return []

        fired_at = self.clock()
        if not await self.repository.claim_trigger(rule.id, fired_at, rule.cooldown_minutes or 0):
            logger.info("Rule %s already fired within its cooldown, skipped", rule.id)
            return None
        rule.last_triggered_at = fired_at

        created = await self.create_notifications(rule, users, value, old_value)
        logger.info(
            "Rule %s '%s' fired: %d notification(s)", rule.id, rule.event_name, len(created),
        )
        return created

    async def create_notifications(self, rule: NotificationEvent, users, value, old_value) -> list[Notification]:
        now = self.clock()
        message = format_message(rule, value, old_value)
        batch = [
            Notification(
                event_id=rule.id,
                user_id=user.id,
                message=message,
                tag_value=normalize_value(value) or None,
                old_tag_value=None if old_value is None else str(old_value),
                notification_type=rule.notification_type,
                is_read=False,
                escalation_level=0,
                email_token=new_ack_token(),
                token_expires_at=now + self.token_ttl,
            )
            for user in users
        ]
        created = await self.repository.add_notifications(batch)

        if rule.send_email:
            tag = await self.repository.get_tag(rule.tag_id)
            await self.delivery.send_emails(rule, created, tag)

        if self.escalation.requires_escalation(rule):
            for notification in created:
                try:
                    await self.escalation.schedule_initial(notification, rule)
                except Exception as exc:
                    logger.error(
                        "Escalation scheduling failed for notification %s: %s",
                        notification.id, exc, exc_info=True,
                    )

        if rule.send_in_app:
            await self.delivery.publish_in_app(created)
        return created

    # ------------------------------------------------------------------
    # Queue job handlers
    # ------------------------------------------------------------------

    async def run_duration_check(self, payload: dict) -> DurationCheckResult:
        result = await self.duration_gate.execute_check(payload)
        if not result.triggered:
            logger.info(
                "Duration check rule %s tag %s not fired: %s",
                result.event_id, result.tag_id, result.status_message,
            )
            return result

        rule = await self.repository.get_event(result.event_id)
        if rule is None:
            return result
        await self.trigger(rule, result.expected_state, payload.get("old_value"))
        return result

    async def run_escalation_check(self, payload: dict) -> EscalationResult:
        return await self.escalation.execute_check(payload)

    # ------------------------------------------------------------------
    # Acknowledgment
    # ------------------------------------------------------------------

    async def on_notification_acknowledged(self, notification_id: int) -> AcknowledgeResult:
        notification = await self.repository.get_notification(notification_id)
        if notification is None:
            raise EntityNotFoundError("Notification", notification_id)
        return await self._acknowledge(notification)

    async def acknowledge_by_token(self, token: str) -> AcknowledgeResult:
        if not token or not TOKEN_PATTERN.fullmatch(token):
            raise InvalidTokenError("Invalid acknowledgment token format")

        notification = await self.repository.get_notification_by_token(token)
        if notification is None:
            raise EntityNotFoundError("Notification", "for token")
        if notification.token_expires_at is not None and notification.token_expires_at < self.clock():
            raise TokenExpiredError(
                "Acknowledgment link has expired", notification_id=notification.id,
            )
        return await self._acknowledge(notification)

    async def _acknowledge(self, notification: Notification) -> AcknowledgeResult:
        if notification.acknowledged_at is not None:
            return AcknowledgeResult(
                notification_id=notification.id,
                acknowledged_at=notification.acknowledged_at,
                already_acknowledged=True,
            )

        now = self.clock()
        if not await self.repository.acknowledge(notification.id, now):
            # Lost the race against a concurrent acknowledgment
            current = await self.repository.get_notification(notification.id)
            return AcknowledgeResult(
                notification_id=notification.id,
                acknowledged_at=current.acknowledged_at if current else now,
                already_acknowledged=True,
            )

        notification.acknowledged_at = now
        notification.is_read = True
        notification.read_at = notification.read_at or now

        cancelled = False
        if notification.escalation_level == 0:
            cancelled = await self.escalation.cancel(notification)

        logger.info(
            "Notification %s acknowledged (level %d)",
            notification.id, notification.escalation_level,
        )
        return AcknowledgeResult(
            notification_id=notification.id,
            acknowledged_at=now,
            escalation_cancelled=cancelled,
        )
