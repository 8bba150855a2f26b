"""Shared fixtures: in-memory stand-ins for the queue, store and sinks."""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta

import fakeredis
import pytest
import pytest_asyncio

from models.notification import Notification, NotificationEvent
from models.tag import Tag, TagRef
from models.user import User
from notifications.delivery import NotificationDelivery
from notifications.dispatcher import NotificationDispatcher
from notifications.duration_gate import CHECK_DURATION_JOB, DurationGate
from notifications.escalation import ESCALATION_CHECK_JOB, EscalationService
from services.job_queue import QueuedJob

T0 = datetime(2026, 3, 2, 8, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeQueue:
    """Delayed queue kept in a dict, due times driven by FakeClock."""

    name = "fake"

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.jobs: dict[str, tuple[datetime, QueuedJob]] = {}
        self._ids = itertools.count(1)

    async def schedule(self, job_type, payload, delay_ms=0, *, job_id=None, max_attempts=None):
        job_id = job_id or f"job-{next(self._ids)}"
        due = self.clock() + timedelta(milliseconds=delay_ms)
        self.jobs[job_id] = (due, QueuedJob(id=job_id, job_type=job_type, payload=dict(payload)))
        return job_id

    async def cancel(self, job_id):
        return self.jobs.pop(job_id, None) is not None

    async def get_pending(self, job_type=None):
        return [
            job for _, job in self.jobs.values()
            if job_type is None or job.job_type == job_type
        ]

    async def cancel_matching(self, job_type, predicate):
        matching = [job.id for job in await self.get_pending(job_type) if predicate(job.payload)]
        for job_id in matching:
            del self.jobs[job_id]
        return len(matching)

    def pop_due(self) -> list[QueuedJob]:
        now = self.clock()
        due = sorted(
            (item for item in self.jobs.values() if item[0] <= now), key=lambda item: item[0],
        )
        for _, job in due:
            del self.jobs[job.id]
        return [job for _, job in due]


class FakeNotificationRepository:

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.events: dict[int, NotificationEvent] = {}
        self.tags: dict[int, Tag] = {}
        self.users: dict[int, User] = {}
        self.notifications: dict[int, Notification] = {}
        self._ids = itertools.count(1)

    async def list_active_events(self, tag_ids):
        return [e for e in self.events.values() if e.tag_id in tag_ids and e.is_active]

    async def get_event(self, event_id):
        return self.events.get(event_id)

    async def claim_trigger(self, event_id, at, cooldown_minutes):
        event = self.events[event_id]
        last = event.last_triggered_at
        if last is not None and last > at - timedelta(minutes=cooldown_minutes):
            return False
        event.last_triggered_at = at
        return True

    async def get_tag(self, tag_id):
        return self.tags.get(tag_id)

    async def get_user(self, user_id):
        return self.users.get(user_id)

    async def get_users(self, user_ids):
        return [self.users[uid] for uid in user_ids if uid in self.users]

    async def get_recipients(self, rule):
        if rule.selected_users:
            return await self.get_users(rule.selected_users)
        if rule.filter_by_location_id is not None:
            return [u for u in self.users.values() if u.location_id == rule.filter_by_location_id]
        return []

    async def add_notifications(self, notifications):
        for notification in notifications:
            notification.id = next(self._ids)
            notification.created_at = self.clock()
            self.notifications[notification.id] = notification
        return notifications

    async def get_notification(self, notification_id):
        return self.notifications.get(notification_id)

    async def get_notification_by_token(self, token):
        return next((n for n in self.notifications.values() if n.email_token == token), None)

    async def find_escalation(self, parent_id, level):
        return next(
            (
                n for n in self.notifications.values()
                if n.parent_notification_id == parent_id and n.escalation_level == level
            ),
            None,
        )

    async def set_escalation_job(self, notification_id, job_id):
        self.notifications[notification_id].escalation_job_id = job_id

    async def mark_email_sent(self, notification_id, at):
        self.notifications[notification_id].email_sent_at = at

    async def acknowledge(self, notification_id, at):
        notification = self.notifications.get(notification_id)
        if notification is None or notification.acknowledged_at is not None:
            return False
        notification.acknowledged_at = at
        notification.is_read = True
        notification.read_at = notification.read_at or at
        return True

    def escalations_of(self, parent_id):
        return sorted(
            (n for n in self.notifications.values() if n.parent_notification_id == parent_id),
            key=lambda n: n.escalation_level,
        )


class FakeMailer:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.failing: set[str] = set()

    async def send_email(self, to, subject, html):
        if to in self.failing:
            raise ConnectionError(f"mailbox {to} unavailable")
        self.sent.append((to, subject, html))
        return True


class FakePublisher:
    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel, payload):
        self.messages.append((channel, payload))
        return 1


def make_rule(**overrides) -> NotificationEvent:
    fields = dict(
        id=1,
        event_name="Filler stopped",
        description="Filler state is {{value}} (was {{oldValue}})",
        tag_id=10,
        condition_type="value_change",
        threshold_value=None,
        comparison_operator=None,
        target_state=None,
        state_duration=None,
        state_duration_unit=None,
        cooldown_minutes=0,
        last_triggered_at=None,
        send_email=True,
        send_in_app=True,
        selected_users=[1],
        filter_by_location_id=None,
        filter_by_line_id=None,
        enable_escalation=False,
        escalation_delay=None,
        escalation_delay_unit=None,
        escalation_user_ids=[],
        max_escalation_level=1,
        is_active=True,
    )
    fields.update(overrides)
    return NotificationEvent(**fields)


class Workflow:
    """The notification components wired together over the fakes."""

    def __init__(self):
        self.clock = FakeClock()
        self.queue = FakeQueue(self.clock)
        self.repository = FakeNotificationRepository(self.clock)
        self.mailer = FakeMailer()
        self.publisher = FakePublisher()
        self.delivery = NotificationDelivery(
            self.repository, self.mailer, self.publisher, clock=self.clock,
        )
        self.escalation = EscalationService(
            self.queue, self.repository, self.delivery, clock=self.clock, token_ttl_days=90,
        )
        self.gate = DurationGate(self.queue, self.repository, clock=self.clock)
        self.dispatcher = NotificationDispatcher(
            self.repository, self.gate, self.escalation, self.delivery,
            clock=self.clock, token_ttl_days=90,
        )
        for uid, name in enumerate(["operator", "shift lead", "supervisor", "plant manager"], start=1):
            self.repository.users[uid] = User(
                id=uid, name=name, email=f"{name.replace(' ', '.')}@plant.test", location_id=5,
            )
        self.repository.tags[10] = Tag(
            id=10, name="Filler state", ref=TagRef.machine_state.value,
            taggable_type="machine", taggable_id=3, current_value=None,
        )

    def add_rule(self, **overrides) -> NotificationEvent:
        rule = make_rule(**overrides)
        self.repository.events[rule.id] = rule
        return rule

    async def change(self, tag_id, new_value, old_value):
        self.repository.tags[tag_id].current_value = new_value
        return await self.dispatcher.on_tag_value_changed(tag_id, new_value, old_value)

    async def run_due_jobs(self) -> list:
        results = []
        for job in self.queue.pop_due():
            if job.job_type == CHECK_DURATION_JOB:
                results.append(await self.dispatcher.run_duration_check(job.payload))
            elif job.job_type == ESCALATION_CHECK_JOB:
                results.append(await self.dispatcher.run_escalation_check(job.payload))
        return results

    def level0(self) -> list[Notification]:
        return [n for n in self.repository.notifications.values() if n.escalation_level == 0]


@pytest.fixture
def workflow() -> Workflow:
    return Workflow()


class MillisClock:
    """Epoch-millisecond clock for RedisJobQueue."""

    def __init__(self, start_ms: int = 1_772_438_400_000):
        self.ms = start_ms

    def __call__(self) -> int:
        return self.ms

    def advance(self, ms: int) -> None:
        self.ms += ms


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()
