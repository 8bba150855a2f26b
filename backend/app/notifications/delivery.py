"""Delivery sink: e-mail per recipient and live in-app publish.

Failures are isolated per recipient; a broken mailbox never blocks the rest
of the batch.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from core.durations import utcnow
from notifications.escalation import EscalationService
from notifications.formatting import (
    ALERT_SUBJECT,
    ESCALATION_SUBJECT,
    alert_email_html,
    escalation_email_html,
)

logger = logging.getLogger("linewatch.notifications.delivery")

NOTIFICATIONS_CHANNEL = "notifications"


class NotificationDelivery:

    def __init__(self, repository, mailer, publisher, *, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.mailer = mailer
        self.publisher = publisher
        self.clock = clock

    async def send_emails(self, rule, notifications, tag=None) -> int:
        users = {u.id: u for u in await self.repository.get_users([n.user_id for n in notifications])}
        escalation_users = []
        if EscalationService.requires_escalation(rule):
            escalation_users = await self.repository.get_users(rule.escalation_recipients)

        subject = ALERT_SUBJECT.format(event_name=rule.event_name)
        sent = 0
        for notification in notifications:
            user = users.get(notification.user_id)
            if user is None or not user.email:
                logger.warning(
                    "Notification %s: user %s has no e-mail address, skipped",
                    notification.id, notification.user_id,
                )
                continue
            html = alert_email_html(notification, rule, tag, escalation_users)
            if await self._send(notification, user.email, subject, html):
                sent += 1
        return sent

    async def send_escalation(self, notification, rule, user, original) -> None:
        if rule.send_email and user.email:
            original_user = await self.repository.get_user(original.user_id)
            subject = ESCALATION_SUBJECT.format(
                level=notification.escalation_level, event_name=rule.event_name,
            )
            html = escalation_email_html(notification, rule, original, original_user)
            await self._send(notification, user.email, subject, html)
        if rule.send_in_app:
            await self.publish_in_app([notification])

    async def publish_in_app(self, notifications) -> None:
        for notification in notifications:
            payload = {
                "type": "notification",
                "userId": notification.user_id,
                "notificationId": notification.id,
                "message": notification.message,
                "escalationLevel": notification.escalation_level,
                "timestamp": self.clock().isoformat(),
            }
            try:
                await self.publisher.publish(NOTIFICATIONS_CHANNEL, payload)
            except Exception as exc:
                logger.error(
                    "In-app publish failed for notification %s: %s", notification.id, exc,
                )

    async def _send(self, notification, to: str, subject: str, html: str) -> bool:
        try:
            delivered = await self.mailer.send_email(to, subject, html)
        except Exception as exc:
            logger.error(
                "E-mail for notification %s to %s failed: %s", notification.id, to, exc,
                exc_info=True,
            )
            return False
        if delivered:
            await self.repository.mark_email_sent(notification.id, self.clock())
        return bool(delivered)
