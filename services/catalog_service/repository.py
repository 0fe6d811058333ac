from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Course, Product, SubscriptionTier


class ProductRepository:

    @staticmethod
    async def create_product(db: AsyncSession, product: Product):
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id: int):
        result = await db.execute(select(Product).where(Product.id == product_id))
        return result.scalars().first()

    @staticmethod
    async def get_products(db: AsyncSession, product_ids):
        result = await db.execute(select(Product).where(Product.id.in_(list(product_ids))))
        return {p.id: p for p in result.scalars().all()}

    # --- Stock: atomic increments/decrements only, never read-modify-write ---

    @staticmethod
    async def reserve_stock(db: AsyncSession, product_id: int, quantity: int) -> bool:
        """
        Decrements stock and bumps the sales counter in one statement.
        Does not commit. Returns False when the product does not have
        `quantity` units left, in which case nothing is changed.
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= quantity)
            .values(
                stock_quantity=Product.stock_quantity - quantity,
                sales_count=Product.sales_count + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def record_sale(db: AsyncSession, product_id: int, quantity: int) -> None:
        """Sales counter only, for products that do not track inventory."""
        await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(sales_count=Product.sales_count + quantity)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def restore_stock(db: AsyncSession, product_id: int, quantity: int, track_inventory: bool = True) -> bool:
        values = {"sales_count": Product.sales_count - quantity}
        if track_inventory:
            values["stock_quantity"] = Product.stock_quantity + quantity
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class CourseRepository:

    @staticmethod
    async def get_course(db: AsyncSession, course_id: int):
        result = await db.execute(select(Course).where(Course.id == course_id))
        return result.scalars().first()


class TierRepository:

    @staticmethod
    async def get_tier(db: AsyncSession, tier_id: int):
        result = await db.execute(select(SubscriptionTier).where(SubscriptionTier.id == tier_id))
        return result.scalars().first()
