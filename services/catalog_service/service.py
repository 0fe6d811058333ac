"""
Catalog lookup: the narrow, read-only view of products, courses and tiers
that the cart, order and payment services depend on. Catalog CRUD lives
elsewhere; only what checkout and payment need is exposed here.
"""
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Product
from .repository import CourseRepository, ProductRepository, TierRepository
from .schemas import ProductCreate


@dataclass(frozen=True)
class CatalogProduct:
    id: int
    name: str
    sku: str | None
    description: str | None
    price: Decimal
    currency: str
    stock_quantity: int
    track_inventory: bool
    is_available: bool

    def has_stock_for(self, quantity: int) -> bool:
        return not self.track_inventory or self.stock_quantity >= quantity


@dataclass(frozen=True)
class CatalogCourse:
    id: int
    title: str
    price: Decimal
    currency: str
    is_available: bool
    subscription_tier_id: int | None


@dataclass(frozen=True)
class CatalogTier:
    id: int
    name: str
    price: Decimal
    currency: str
    billing_cycle_months: int
    is_active: bool


def _product(p: Product) -> CatalogProduct:
    return CatalogProduct(
        id=p.id,
        name=p.name,
        sku=p.sku,
        description=p.description,
        price=Decimal(p.price),
        currency=p.currency,
        stock_quantity=p.stock_quantity,
        track_inventory=p.track_inventory,
        is_available=p.is_published,
    )


class CatalogLookup:

    async def get_product(self, db: AsyncSession, product_id: int) -> CatalogProduct | None:
        product = await ProductRepository.get_product_by_id(db, product_id)
        return _product(product) if product else None

    async def get_products(self, db: AsyncSession, product_ids) -> dict[int, CatalogProduct]:
        products = await ProductRepository.get_products(db, product_ids)
        return {pid: _product(p) for pid, p in products.items()}

    async def get_course(self, db: AsyncSession, course_id: int) -> CatalogCourse | None:
        course = await CourseRepository.get_course(db, course_id)
        if not course:
            return None
        return CatalogCourse(
            id=course.id,
            title=course.title,
            price=Decimal(course.price),
            currency=course.currency,
            is_available=course.is_published,
            subscription_tier_id=course.subscription_tier_id,
        )

    async def get_tier(self, db: AsyncSession, tier_id: int) -> CatalogTier | None:
        tier = await TierRepository.get_tier(db, tier_id)
        if not tier:
            return None
        return CatalogTier(
            id=tier.id,
            name=tier.name,
            price=Decimal(tier.price),
            currency=tier.currency,
            billing_cycle_months=tier.billing_cycle_months,
            is_active=tier.is_active,
        )


class ProductService:

    @staticmethod
    async def create_product(db: AsyncSession, data: ProductCreate):
        product = Product(
            name=data.name,
            sku=data.sku,
            description=data.description,
            price=data.price,
            currency=data.currency.upper(),
            stock_quantity=data.stock_quantity,
            track_inventory=data.track_inventory,
            is_published=data.is_published,
        )
        return await ProductRepository.create_product(db, product)

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id: int):
        return await ProductRepository.get_product_by_id(db, product_id)
