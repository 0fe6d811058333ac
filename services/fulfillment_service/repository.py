from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Enrollment, OutboundTask, UserSubscription


class EnrollmentRepository:

    @staticmethod
    async def get(db: AsyncSession, user_id: int, course_id: int):
        result = await db.execute(
            select(Enrollment)
            .where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def add(db: AsyncSession, enrollment: Enrollment):
        db.add(enrollment)
        await db.flush()
        return enrollment

    @staticmethod
    async def set_status(db: AsyncSession, user_id: int, course_id: int, status: str, from_status: str) -> bool:
        result = await db.execute(
            update(Enrollment)
            .where(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
                Enrollment.status == from_status,
            )
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SubscriptionRepository:

    @staticmethod
    async def get(db: AsyncSession, subscription_id: int):
        result = await db.execute(
            select(UserSubscription)
            .where(UserSubscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_active_for_user(db: AsyncSession, user_id: int, tier_id: int | None = None):
        query = select(UserSubscription).where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == "active",
        )
        if tier_id is not None:
            query = query.where(UserSubscription.tier_id == tier_id)
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalars().first()

    @staticmethod
    async def get_pending_for_user(db: AsyncSession, user_id: int, tier_id: int):
        result = await db.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.tier_id == tier_id,
                UserSubscription.status == "pending",
            )
            .order_by(UserSubscription.id.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def add(db: AsyncSession, subscription: UserSubscription):
        db.add(subscription)
        await db.flush()
        return subscription

    @staticmethod
    async def activate(db: AsyncSession, subscription_id: int, values: dict) -> bool:
        """Compare-and-set: an already active subscription is left as it is."""
        result = await db.execute(
            update(UserSubscription)
            .where(UserSubscription.id == subscription_id, UserSubscription.status != "active")
            .values(status="active", **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def cancel(db: AsyncSession, subscription_id: int) -> bool:
        result = await db.execute(
            update(UserSubscription)
            .where(UserSubscription.id == subscription_id, UserSubscription.status != "cancelled")
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OutboundTaskRepository:

    @staticmethod
    async def enqueue(db: AsyncSession, channel: str, kind: str, user_id: int | None, payload: dict):
        """Does not commit; rides on the caller's transaction."""
        task = OutboundTask(channel=channel, kind=kind, user_id=user_id, payload=payload)
        db.add(task)
        return task

    @staticmethod
    async def get_due(db: AsyncSession, now: datetime, limit: int):
        result = await db.execute(
            select(OutboundTask)
            .where(
                OutboundTask.status == "pending",
                or_(OutboundTask.next_attempt_at.is_(None), OutboundTask.next_attempt_at <= now),
            )
            .order_by(OutboundTask.id)
            .limit(limit)
        )
        return result.scalars().all()

    @staticmethod
    async def mark_delivered(db: AsyncSession, task_id: int, now: datetime):
        await db.execute(
            update(OutboundTask)
            .where(OutboundTask.id == task_id)
            .values(status="delivered", delivered_at=now, attempts=OutboundTask.attempts + 1, last_error=None)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def mark_attempt_failed(db: AsyncSession, task_id: int, error: str, next_attempt_at: datetime | None):
        """next_attempt_at None means the task has run out of attempts."""
        values = {
            "attempts": OutboundTask.attempts + 1,
            "last_error": error[:2000],
            "next_attempt_at": next_attempt_at,
        }
        if next_attempt_at is None:
            values["status"] = "failed"
        await db.execute(
            update(OutboundTask)
            .where(OutboundTask.id == task_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
