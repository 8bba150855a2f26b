"""SQLAlchemy persistence for rules, notifications and recipients.

Each call opens its own short session; returned ORM objects stay usable
after the session closes (expire_on_commit=False).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.line import Line
from models.notification import Notification, NotificationEvent
from models.tag import Tag
from models.user import User

logger = logging.getLogger("linewatch.notifications.repository")


class SqlNotificationRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Rules and tags
    # ------------------------------------------------------------------

    async def list_active_events(self, tag_ids: list[int]) -> list[NotificationEvent]:
        async with self.session_factory() as session:
            stmt = (
                select(NotificationEvent)
                .where(
                    and_(
                        NotificationEvent.tag_id.in_(tag_ids),
                        NotificationEvent.is_active == True,  # noqa: E712
                    )
                )
                .order_by(NotificationEvent.id)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_event(self, event_id: int) -> NotificationEvent | None:
        async with self.session_factory() as session:
            return await session.get(NotificationEvent, event_id)

    async def claim_trigger(self, event_id: int, at: datetime, cooldown_minutes: int) -> bool:
        """Stamp last_triggered_at unless the rule already fired within the cooldown."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    and_(
                        NotificationEvent.id == event_id,
                        or_(
                            NotificationEvent.last_triggered_at.is_(None),
                            NotificationEvent.last_triggered_at
                            <= at - timedelta(minutes=cooldown_minutes),
                        ),
                    )
                )
                .values(last_triggered_at=at)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_tag(self, tag_id: int) -> Tag | None:
        async with self.session_factory() as session:
            return await session.get(Tag, tag_id)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: int) -> User | None:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def get_users(self, user_ids: list[int]) -> list[User]:
        if not user_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(select(User).where(User.id.in_(user_ids)))
            found = {u.id: u for u in result.scalars().all()}
        return [found[uid] for uid in dict.fromkeys(user_ids) if uid in found]

    async def get_recipients(self, rule: NotificationEvent) -> list[User]:
        """Explicit user ids, else users of the location, else of the line's location."""
        if rule.selected_users:
            return await self.get_users([int(uid) for uid in rule.selected_users])

        location_id = rule.filter_by_location_id
        if location_id is None and rule.filter_by_line_id is not None:
            async with self.session_factory() as session:
                line = await session.get(Line, rule.filter_by_line_id)
                location_id = line.location_id if line else None

        if location_id is None:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(User).where(User.location_id == location_id).order_by(User.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def add_notifications(self, notifications: list[Notification]) -> list[Notification]:
        async with self.session_factory() as session:
            session.add_all(notifications)
            await session.commit()
            for notification in notifications:
                await session.refresh(notification)
        return notifications

    async def get_notification(self, notification_id: int) -> Notification | None:
        async with self.session_factory() as session:
            return await session.get(Notification, notification_id)

    async def get_notification_by_token(self, token: str) -> Notification | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification).where(Notification.email_token == token)
            )
            return result.scalar_one_or_none()

    async def find_escalation(self, parent_id: int, level: int) -> Notification | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Notification).where(
                    and_(
                        Notification.parent_notification_id == parent_id,
                        Notification.escalation_level == level,
                    )
                )
            )
            return result.scalars().first()

    async def set_escalation_job(self, notification_id: int, job_id: str | None) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id)
                .values(escalation_job_id=job_id)
            )
            await session.commit()

    async def mark_email_sent(self, notification_id: int, at: datetime) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id)
                .values(email_sent_at=at)
            )
            await session.commit()

    async def acknowledge(self, notification_id: int, at: datetime) -> bool:
        """Set acknowledged_at once. False when it was already set."""
        async with self.session_factory() as session:
            notification = await session.get(Notification, notification_id, with_for_update=True)
            if notification is None or notification.acknowledged_at is not None:
                await session.rollback()
                return False
            notification.acknowledged_at = at
            notification.is_read = True
            if notification.read_at is None:
                notification.read_at = at
            await session.commit()
            return True
