"""
Outbound relay for the notification and email side channels.

Tasks are written by the fulfillment dispatcher in the same database
transaction as the change they describe. The relay delivers them later,
so a failing notification service never touches payment state: failures
are recorded on the task row and retried with exponential back-off until
OUTBOX_MAX_ATTEMPTS.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.config.settings import OUTBOX_BATCH_SIZE, OUTBOX_MAX_ATTEMPTS, OUTBOX_POLL_INTERVAL_SECONDS
from shared.observability import academy_outbound_tasks_total

from .models import OutboundTask
from .notifications import EmailSender, NotificationSender
from .repository import OutboundTaskRepository

logger = structlog.get_logger(__name__)


class OutboundRelay:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notification_sender: NotificationSender,
        email_sender: EmailSender,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
        batch_size: int = OUTBOX_BATCH_SIZE,
        poll_interval_seconds: float = OUTBOX_POLL_INTERVAL_SECONDS,
        base_delay_seconds: float = 2.0,
    ):
        self.session_factory = session_factory
        self.notification_sender = notification_sender
        self.email_sender = email_sender
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.base_delay_seconds = base_delay_seconds
        self._running = False

    def _next_attempt(self, attempts_so_far: int, now: datetime) -> datetime | None:
        attempts = attempts_so_far + 1
        if attempts >= self.max_attempts:
            return None
        return now + timedelta(seconds=self.base_delay_seconds * (2 ** (attempts - 1)))

    async def _deliver(self, task: OutboundTask) -> None:
        if task.channel == "email":
            await self.email_sender.send_email(task.payload.get("to"), task.user_id, task.kind, task.payload)
        else:
            await self.notification_sender.send(task.user_id, task.kind, task.payload)

    async def run_once(self) -> int:
        """Delivers one batch of due tasks. Returns how many were delivered."""
        delivered = 0
        async with self.session_factory() as db:
            tasks = await OutboundTaskRepository.get_due(db, datetime.now(timezone.utc), self.batch_size)
            for task in tasks:
                try:
                    await self._deliver(task)
                except Exception as e:
                    now = datetime.now(timezone.utc)
                    next_attempt = self._next_attempt(task.attempts, now)
                    await OutboundTaskRepository.mark_attempt_failed(db, task.id, str(e), next_attempt)
                    await db.commit()
                    result = "failed" if next_attempt is None else "retry"
                    academy_outbound_tasks_total.labels(channel=task.channel, result=result).inc()
                    logger.warning(
                        "outbound_task_failed",
                        task_id=task.id,
                        kind=task.kind,
                        channel=task.channel,
                        attempts=task.attempts + 1,
                        gave_up=next_attempt is None,
                        error=str(e),
                    )
                    continue

                await OutboundTaskRepository.mark_delivered(db, task.id, datetime.now(timezone.utc))
                await db.commit()
                delivered += 1
                academy_outbound_tasks_total.labels(channel=task.channel, result="sent").inc()
                logger.info("outbound_task_delivered", task_id=task.id, kind=task.kind, channel=task.channel)
        return delivered

    async def start(self) -> None:
        self._running = True
        logger.info("outbound_relay_started", poll_interval=self.poll_interval_seconds)
        try:
            while self._running:
                try:
                    delivered = await self.run_once()
                except Exception as e:
                    logger.error("outbound_relay_error", error=str(e))
                    delivered = 0
                await asyncio.sleep(0.1 if delivered else self.poll_interval_seconds)
        finally:
            logger.info("outbound_relay_stopped")

    def stop(self) -> None:
        self._running = False
