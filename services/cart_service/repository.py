from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Cart, CartItem


class CartRepository:

    @staticmethod
    async def get_cart(db: AsyncSession, cart_id: int):
        result = await db.execute(
            select(Cart)
            .where(Cart.id == cart_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_user(db: AsyncSession, user_id: int):
        result = await db.execute(
            select(Cart)
            .where(Cart.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_by_session(db: AsyncSession, session_id: str):
        result = await db.execute(
            select(Cart)
            .where(Cart.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_item(db: AsyncSession, cart_id: int, product_id: int):
        result = await db.execute(
            select(CartItem)
            .where(CartItem.cart_id == cart_id)
            .where(CartItem.product_id == product_id)
        )
        return result.scalars().first()

    @staticmethod
    async def get_item_by_id(db: AsyncSession, cart_id: int, item_id: int):
        result = await db.execute(
            select(CartItem)
            .where(CartItem.cart_id == cart_id)
            .where(CartItem.id == item_id)
        )
        return result.scalars().first()

    @staticmethod
    async def increment_quantity(db: AsyncSession, item_id: int, quantity: int):
        await db.execute(
            update(CartItem)
            .where(CartItem.id == item_id)
            .values(quantity=CartItem.quantity + quantity)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def set_quantity(db: AsyncSession, item_id: int, quantity: int):
        await db.execute(
            update(CartItem)
            .where(CartItem.id == item_id)
            .values(quantity=quantity)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def remove_item(db: AsyncSession, cart_id: int, item_id: int):
        await db.execute(
            delete(CartItem).where(CartItem.cart_id == cart_id, CartItem.id == item_id)
        )

    @staticmethod
    async def clear_cart(db: AsyncSession, cart_id: int):
        await db.execute(delete(CartItem).where(CartItem.cart_id == cart_id))

    @staticmethod
    async def remove_products_for_user(db: AsyncSession, user_id: int, product_ids) -> int:
        """Deletes the given products from the user's cart. Does not commit."""
        cart_ids = select(Cart.id).where(Cart.user_id == user_id).scalar_subquery()
        result = await db.execute(
            delete(CartItem)
            .where(CartItem.cart_id == cart_ids)
            .where(CartItem.product_id.in_(list(product_ids)))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def delete_expired(db: AsyncSession, now: datetime) -> int:
        expired = select(Cart.id).where(Cart.expires_at < now)
        await db.execute(
            delete(CartItem)
            .where(CartItem.cart_id.in_(expired))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            delete(Cart)
            .where(Cart.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
