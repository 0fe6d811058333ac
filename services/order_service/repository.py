from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Order, OrderItem
from .status import OrderState


class OrderRepository:

    @staticmethod
    async def add_order(db: AsyncSession, order: Order):
        """Inserts the order row inside the caller's transaction. Does not commit."""
        db.add(order)
        await db.flush()
        return order

    @staticmethod
    async def add_item(db: AsyncSession, item: OrderItem):
        db.add(item)

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int):
        result = await db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_number(db: AsyncSession, order_number: str):
        result = await db.execute(select(Order).where(Order.order_number == order_number))
        return result.scalars().first()

    @staticmethod
    async def list_orders(
        db: AsyncSession,
        user_id: int | None = None,
        status: str | None = None,
        payment_status: str | None = None,
        fulfillment_status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ):
        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status:
            filters.append(Order.status == status)
        if payment_status:
            filters.append(Order.payment_status == payment_status)
        if fulfillment_status:
            filters.append(Order.fulfillment_status == fulfillment_status)

        total = await db.scalar(select(func.count(Order.id)).where(*filters))
        result = await db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), total or 0

    @staticmethod
    async def compare_and_set(db: AsyncSession, order_id: int, expected: OrderState, new: OrderState, **values) -> bool:
        """
        Persists `new` only if the row still holds `expected`.
        Does not commit. False means a concurrent writer got there first.
        """
        result = await db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == expected.status,
                Order.payment_status == expected.payment_status,
                Order.fulfillment_status == expected.fulfillment_status,
            )
            .values(
                status=new.status,
                payment_status=new.payment_status,
                fulfillment_status=new.fulfillment_status,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def claim_stock_release(db: AsyncSession, order_id: int, now: datetime) -> bool:
        """Wins at most once per order. Does not commit."""
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.stock_released_at.is_(None))
            .values(stock_released_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def get_statistics(db: AsyncSession, user_id: int | None = None):
        filters = [Order.user_id == user_id] if user_id is not None else []

        by_status = await db.execute(
            select(Order.status, func.count(Order.id))
            .where(*filters)
            .group_by(Order.status)
        )
        revenue = await db.execute(
            select(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
            .where(*filters, Order.payment_status == "paid")
        )
        paid_count, paid_total = revenue.one()
        return dict(by_status.all()), paid_count, paid_total
