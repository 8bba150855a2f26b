"""Tests for the escalation chain of unacknowledged notifications."""
import pytest

from notifications.escalation import ESCALATION_CHECK_JOB, EscalationReason


def escalating_rule(workflow, **overrides):
    fields = dict(
        enable_escalation=True,
        escalation_delay=10,
        escalation_delay_unit="minutes",
        escalation_user_ids=[2, 3, 4],
        max_escalation_level=2,
    )
    fields.update(overrides)
    return workflow.add_rule(**fields)


async def fire(workflow):
    await workflow.change(10, "4", "128")
    [original] = workflow.level0()
    return original


class TestScheduling:

    @pytest.mark.asyncio
    async def test_trigger_arms_first_check(self, workflow):
        escalating_rule(workflow)

        original = await fire(workflow)

        [job] = await workflow.queue.get_pending(ESCALATION_CHECK_JOB)
        assert original.escalation_job_id == job.id
        assert job.payload == {"notification_id": original.id, "event_id": 1, "current_level": 0}

    @pytest.mark.asyncio
    async def test_alert_mail_lists_escalation_chain(self, workflow):
        escalating_rule(workflow)

        await fire(workflow)

        [(_, _, html)] = workflow.mailer.sent
        assert "shift.lead@plant.test" in html

    @pytest.mark.asyncio
    async def test_escalation_without_recipients_is_rejected(self, workflow):
        escalating_rule(workflow, escalation_user_ids=[])

        [outcome] = await workflow.change(10, "4", "128")

        assert outcome.action == "invalid"
        assert await workflow.queue.get_pending() == []


class TestChain:

    @pytest.mark.asyncio
    async def test_acknowledged_before_delay_never_escalates(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=4)

        result = await workflow.dispatcher.on_notification_acknowledged(original.id)
        workflow.clock.advance(hours=2)
        await workflow.run_due_jobs()

        assert result.escalation_cancelled
        assert original.escalation_job_id is None
        assert workflow.repository.escalations_of(original.id) == []

    @pytest.mark.asyncio
    async def test_chain_stops_at_max_level(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)

        workflow.clock.advance(minutes=10)
        [first] = await workflow.run_due_jobs()
        workflow.clock.advance(minutes=10)
        [second] = await workflow.run_due_jobs()
        workflow.clock.advance(hours=1)
        assert await workflow.run_due_jobs() == []

        assert first.escalated and first.next_job_id
        assert second.escalated and second.next_job_id is None
        copies = workflow.repository.escalations_of(original.id)
        assert [(n.escalation_level, n.user_id) for n in copies] == [(1, 2), (2, 3)]
        assert copies[0].escalation_job_id == first.next_job_id

    @pytest.mark.asyncio
    async def test_chain_stops_at_end_of_recipient_list(self, workflow):
        escalating_rule(workflow, escalation_user_ids=[2], max_escalation_level=3)
        original = await fire(workflow)

        workflow.clock.advance(minutes=10)
        [result] = await workflow.run_due_jobs()

        assert result.escalated and result.next_job_id is None
        assert await workflow.queue.get_pending() == []
        assert len(workflow.repository.escalations_of(original.id)) == 1

    @pytest.mark.asyncio
    async def test_escalated_copy_content_and_mail(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=10)

        await workflow.run_due_jobs()

        [copy] = workflow.repository.escalations_of(original.id)
        assert copy.parent_notification_id == original.id
        assert copy.message == original.message
        assert copy.email_token != original.email_token
        to, subject, _ = workflow.mailer.sent[-1]
        assert to == "shift.lead@plant.test"
        assert subject == "⚠️ ESCALATED (Level 1): Filler stopped"
        assert workflow.publisher.messages[-1][1]["escalationLevel"] == 1

    @pytest.mark.asyncio
    async def test_acknowledging_original_after_first_level_stops_chain(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=10)
        await workflow.run_due_jobs()

        await workflow.dispatcher.on_notification_acknowledged(original.id)
        workflow.clock.advance(minutes=10)
        [result] = await workflow.run_due_jobs()

        assert result.reason is EscalationReason.acknowledged
        assert len(workflow.repository.escalations_of(original.id)) == 1

    @pytest.mark.asyncio
    async def test_acknowledging_a_copy_does_not_stop_chain(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=10)
        await workflow.run_due_jobs()
        [copy] = workflow.repository.escalations_of(original.id)

        result = await workflow.dispatcher.on_notification_acknowledged(copy.id)
        workflow.clock.advance(minutes=10)
        await workflow.run_due_jobs()

        assert not result.escalation_cancelled
        assert len(workflow.repository.escalations_of(original.id)) == 2

    @pytest.mark.asyncio
    async def test_retried_check_does_not_duplicate_copy(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=10)
        [job] = workflow.queue.pop_due()

        await workflow.escalation.execute_check(job.payload)
        await workflow.escalation.execute_check(job.payload)

        assert len(workflow.repository.escalations_of(original.id)) == 1
        assert len(await workflow.queue.get_pending(ESCALATION_CHECK_JOB)) == 1

    @pytest.mark.asyncio
    async def test_retried_check_delivers_unsent_copy(self, workflow, monkeypatch):
        escalating_rule(workflow)
        original = await fire(workflow)
        workflow.clock.advance(minutes=10)
        [job] = workflow.queue.pop_due()
        send_escalation = workflow.delivery.send_escalation
        calls = []

        async def flaky_send(*args):
            calls.append(args)
            if len(calls) == 1:
                raise ConnectionError("user directory unavailable")
            await send_escalation(*args)

        monkeypatch.setattr(workflow.delivery, "send_escalation", flaky_send)

        with pytest.raises(ConnectionError):
            await workflow.escalation.execute_check(job.payload)
        result = await workflow.escalation.execute_check(job.payload)

        [copy] = workflow.repository.escalations_of(original.id)
        assert result.escalated
        assert copy.email_sent_at == workflow.clock()
        assert [to for to, _, _ in workflow.mailer.sent][-1] == "shift.lead@plant.test"


class TestStopReasons:

    @pytest.mark.asyncio
    async def test_disabled_after_arming(self, workflow):
        rule = escalating_rule(workflow)
        await fire(workflow)
        rule.enable_escalation = False
        workflow.clock.advance(minutes=10)

        [result] = await workflow.run_due_jobs()

        assert result.reason is EscalationReason.escalation_disabled

    @pytest.mark.asyncio
    async def test_rule_deleted(self, workflow):
        escalating_rule(workflow)
        await fire(workflow)
        del workflow.repository.events[1]
        workflow.clock.advance(minutes=10)

        [result] = await workflow.run_due_jobs()

        assert result.reason is EscalationReason.event_not_found

    @pytest.mark.asyncio
    async def test_escalation_user_missing(self, workflow):
        escalating_rule(workflow, escalation_user_ids=[99])
        await fire(workflow)
        workflow.clock.advance(minutes=10)

        [result] = await workflow.run_due_jobs()

        assert result.reason is EscalationReason.escalation_user_not_found
        assert result.user_id == 99

    @pytest.mark.asyncio
    async def test_original_deleted(self, workflow):
        escalating_rule(workflow)
        original = await fire(workflow)
        del workflow.repository.notifications[original.id]
        workflow.clock.advance(minutes=10)

        [result] = await workflow.run_due_jobs()

        assert result.reason is EscalationReason.notification_not_found
