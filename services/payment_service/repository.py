from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PaymentProvider, PaymentWebhookEvent, Transaction

OPEN_STATUSES = ("pending", "processing")
LIVE_STATUSES = ("pending", "processing", "completed")


class TransactionRepository:
    """
    Status changes are conditional UPDATEs keyed on the current status, so
    two racing reconciliation triggers can both run but only one wins each
    transition. None of the writers commit; the caller owns the transaction.
    """

    @staticmethod
    async def add(db: AsyncSession, txn: Transaction):
        db.add(txn)
        await db.flush()
        return txn

    @staticmethod
    async def get(db: AsyncSession, transaction_id: int):
        result = await db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_reference(db: AsyncSession, reference: str):
        result = await db.execute(
            select(Transaction)
            .where(Transaction.provider_reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_charge_reference(db: AsyncSession, provider: str, charge_reference: str):
        """The charge a completed payment settled through, when it differs from the reference."""
        result = await db.execute(
            select(Transaction)
            .where(
                Transaction.provider == provider,
                Transaction.provider_metadata["charge_reference"].as_string() == charge_reference,
            )
            .order_by(Transaction.id.desc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: int, status: str | None = None, limit: int = 20, offset: int = 0):
        filters = [Transaction.user_id == user_id]
        if status:
            filters.append(Transaction.status == status)
        total = await db.scalar(select(func.count(Transaction.id)).where(*filters))
        result = await db.execute(
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), total or 0

    @staticmethod
    async def set_reference(db: AsyncSession, transaction_id: int, reference: str, metadata: dict):
        await db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(provider_reference=reference, provider_metadata=metadata)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def _transition(db: AsyncSession, transaction_id: int, from_statuses, **values) -> bool:
        result = await db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(from_statuses))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def mark_processing(db: AsyncSession, transaction_id: int) -> bool:
        return await TransactionRepository._transition(
            db, transaction_id, ("pending",), status="processing"
        )

    @staticmethod
    async def complete(db: AsyncSession, transaction_id: int, now: datetime, metadata: dict | None = None) -> bool:
        values = {"status": "completed", "paid_at": now}
        if metadata is not None:
            values["provider_metadata"] = metadata
        return await TransactionRepository._transition(db, transaction_id, OPEN_STATUSES, **values)

    @staticmethod
    async def fail(db: AsyncSession, transaction_id: int, reason: str) -> bool:
        return await TransactionRepository._transition(
            db, transaction_id, OPEN_STATUSES, status="failed", failure_reason=reason
        )

    @staticmethod
    async def cancel(db: AsyncSession, transaction_id: int) -> bool:
        return await TransactionRepository._transition(
            db, transaction_id, OPEN_STATUSES, status="cancelled"
        )

    @staticmethod
    async def refund(db: AsyncSession, transaction_id: int, now: datetime, reason: str | None) -> bool:
        return await TransactionRepository._transition(
            db, transaction_id, ("completed",),
            status="refunded", refunded_at=now, refund_reason=reason,
        )

    @staticmethod
    async def claim_fulfillment(db: AsyncSession, transaction_id: int, now: datetime) -> bool:
        """
        First writer on a completed transaction wins the right to fulfill it.
        Rolled back together with the fulfillment if that fails, so the
        next trigger can claim it again.
        """
        result = await db.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status == "completed",
                Transaction.fulfilled_at.is_(None),
            )
            .values(fulfilled_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def cancel_open_for_order(db: AsyncSession, order_id: int) -> int:
        result = await db.execute(
            update(Transaction)
            .where(Transaction.order_id == order_id, Transaction.status.in_(OPEN_STATUSES))
            .values(status="cancelled")
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def count_live_for_order(db: AsyncSession, order_id: int, exclude_id: int | None = None) -> int:
        filters = [Transaction.order_id == order_id, Transaction.status.in_(LIVE_STATUSES)]
        if exclude_id is not None:
            filters.append(Transaction.id != exclude_id)
        return await db.scalar(select(func.count(Transaction.id)).where(*filters)) or 0


class WebhookEventRepository:

    @staticmethod
    async def get(db: AsyncSession, provider: str, event_id: str):
        result = await db.execute(
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider, PaymentWebhookEvent.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def record(db: AsyncSession, provider: str, event_id: str, event_type: str, reference: str | None, payload: dict):
        """Returns the delivery row, creating it on first sight. Commits."""
        existing = await WebhookEventRepository.get(db, provider, event_id)
        if existing:
            return existing
        db.add(PaymentWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            reference=reference,
            payload=payload,
        ))
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event
            await db.rollback()
        return await WebhookEventRepository.get(db, provider, event_id)

    @staticmethod
    async def mark_processed(db: AsyncSession, event_row_id: int, now: datetime):
        await db.execute(
            update(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.id == event_row_id)
            .values(
                processed=True,
                processed_at=now,
                error_message=None,
                attempts=PaymentWebhookEvent.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def mark_error(db: AsyncSession, event_row_id: int, error: str):
        await db.execute(
            update(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.id == event_row_id)
            .values(error_message=error[:2000], attempts=PaymentWebhookEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )


class ProviderRepository:

    @staticmethod
    async def get(db: AsyncSession, name: str):
        result = await db.execute(select(PaymentProvider).where(PaymentProvider.name == name))
        return result.scalars().first()

    @staticmethod
    async def list_all(db: AsyncSession):
        result = await db.execute(select(PaymentProvider).order_by(PaymentProvider.name))
        return result.scalars().all()

    @staticmethod
    async def save(db: AsyncSession, provider: PaymentProvider):
        db.add(provider)
        await db.commit()
        await db.refresh(provider)
        return provider
