from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import RecordingEmailSender, RecordingNotificationSender
from services.fulfillment_service.models import OutboundTask
from services.fulfillment_service.outbox import OutboundRelay
from services.fulfillment_service.repository import OutboundTaskRepository


async def enqueue(session_factory, *tasks):
    async with session_factory() as db:
        for channel, kind, payload in tasks:
            await OutboundTaskRepository.enqueue(db, channel, kind, 1, payload)
        await db.commit()


async def all_tasks(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(OutboundTask).order_by(OutboundTask.id))).scalars().all()


class TestOutboundRelay:

    @pytest.mark.asyncio
    async def test_delivers_each_channel_once(self, session_factory):
        notifications, emails = RecordingNotificationSender(), RecordingEmailSender()
        relay = OutboundRelay(session_factory, notifications, emails, base_delay_seconds=0)
        await enqueue(
            session_factory,
            ("notification", "course_enrollment", {"course_id": 3}),
            ("email", "course_enrollment", {"course_id": 3, "to": "learner@example.com"}),
        )

        assert await relay.run_once() == 2
        assert await relay.run_once() == 0

        assert notifications.sent == [(1, "course_enrollment", {"course_id": 3})]
        assert emails.sent == [("learner@example.com", 1, "course_enrollment")]
        assert {task.status for task in await all_tasks(session_factory)} == {"delivered"}

    @pytest.mark.asyncio
    async def test_failure_is_retried_later(self, session_factory):
        notifications = RecordingNotificationSender(fail_times=1)
        relay = OutboundRelay(session_factory, notifications, RecordingEmailSender(), base_delay_seconds=0)
        await enqueue(session_factory, ("notification", "payment_success", {"amount": "49.00"}))

        assert await relay.run_once() == 0
        [task] = await all_tasks(session_factory)
        assert (task.status, task.attempts) == ("pending", 1)
        assert task.last_error == "notification service down"
        assert task.next_attempt_at is not None

        assert await relay.run_once() == 1
        [task] = await all_tasks(session_factory)
        assert (task.status, task.attempts) == ("delivered", 2)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory):
        notifications = RecordingNotificationSender(fail_times=10)
        relay = OutboundRelay(
            session_factory, notifications, RecordingEmailSender(), max_attempts=3, base_delay_seconds=0
        )
        await enqueue(session_factory, ("notification", "payment_failed", {"reason": "declined"}))

        for _ in range(5):
            await relay.run_once()

        [task] = await all_tasks(session_factory)
        assert (task.status, task.attempts) == ("failed", 3)
        assert notifications.sent == []

    @pytest.mark.asyncio
    async def test_backoff_keeps_task_out_of_the_next_batch(self, session_factory):
        notifications = RecordingNotificationSender(fail_times=1)
        relay = OutboundRelay(session_factory, notifications, RecordingEmailSender(), base_delay_seconds=3600)
        await enqueue(session_factory, ("notification", "order_paid", {"order_id": 1}))

        await relay.run_once()
        assert await relay.run_once() == 0
        [task] = await all_tasks(session_factory)
        assert task.attempts == 1

    def test_backoff_doubles(self, session_factory):
        relay = OutboundRelay(session_factory, None, None, max_attempts=5, base_delay_seconds=2)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert relay._next_attempt(0, now) == now + timedelta(seconds=2)
        assert relay._next_attempt(2, now) == now + timedelta(seconds=8)
        assert relay._next_attempt(4, now) is None

    @pytest.mark.asyncio
    async def test_one_failing_task_does_not_block_others(self, session_factory):
        notifications, emails = RecordingNotificationSender(fail_times=1), RecordingEmailSender()
        relay = OutboundRelay(session_factory, notifications, emails, base_delay_seconds=3600)
        await enqueue(
            session_factory,
            ("notification", "payment_success", {}),
            ("email", "payment_success", {"to": "learner@example.com"}),
        )

        assert await relay.run_once() == 1
        assert emails.sent == [("learner@example.com", 1, "payment_success")]
