from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog_service.service import CatalogLookup
from shared.config.settings import CART_TTL_DAYS
from shared.errors import (
    InvalidQuantity,
    NotFoundError,
    OutOfStock,
    ProductNotAvailable,
    ValidationError,
)
from shared.observability import academy_active_carts

from .models import Cart, CartItem
from .repository import CartRepository
from .schemas import CartItemResponse, CartResponse

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartOwner:
    """A cart belongs to exactly one of: a user, or an anonymous session."""
    user_id: int | None = None
    session_id: str | None = None

    def __post_init__(self):
        if (self.user_id is None) == (self.session_id is None):
            raise ValidationError("A cart is owned by either a user or a session, not both")

    @classmethod
    def for_user(cls, user_id: int) -> "CartOwner":
        return cls(user_id=user_id)

    @classmethod
    def for_session(cls, session_id: str) -> "CartOwner":
        return cls(session_id=session_id)


class CartService:
    def __init__(self, catalog: CatalogLookup, ttl_days: int = CART_TTL_DAYS):
        self.catalog = catalog
        self.ttl = timedelta(days=ttl_days)

    async def _find(self, db: AsyncSession, owner: CartOwner) -> Cart | None:
        if owner.user_id is not None:
            return await CartRepository.get_by_user(db, owner.user_id)
        return await CartRepository.get_by_session(db, owner.session_id)

    def _new_cart(self, owner: CartOwner) -> Cart:
        return Cart(
            user_id=owner.user_id,
            session_id=owner.session_id,
            expires_at=datetime.now(timezone.utc) + self.ttl,
        )

    async def get_or_create(self, db: AsyncSession, owner: CartOwner) -> Cart:
        cart = await self._find(db, owner)
        if cart:
            return cart

        db.add(self._new_cart(owner))
        try:
            await db.commit()
        except IntegrityError:
            # Lost the race against a concurrent creation for the same owner
            await db.rollback()
            cart = await self._find(db, owner)
            if cart is None:
                raise
            return cart

        academy_active_carts.inc()
        logger.info("cart_created", user_id=owner.user_id, session_id=owner.session_id)
        return await self._find(db, owner)

    async def get_cart(self, db: AsyncSession, cart_id: int) -> Cart:
        cart = await CartRepository.get_cart(db, cart_id)
        if not cart:
            raise NotFoundError("Cart not found", cart_id=cart_id)
        return cart

    async def add_item(self, db: AsyncSession, cart_id: int, product_id: int, quantity: int) -> Cart:
        if quantity <= 0:
            raise InvalidQuantity()

        product = await self.catalog.get_product(db, product_id)
        if not product:
            raise NotFoundError("Product not found", product_id=product_id)
        if not product.is_available:
            raise ProductNotAvailable()

        existing = await CartRepository.get_item(db, cart_id, product_id)
        combined = quantity + (existing.quantity if existing else 0)

        # Advisory only: stock is reserved when the order is created
        if not product.has_stock_for(combined):
            raise OutOfStock(
                f"Insufficient stock for {product.name}",
                product_id=product_id,
                requested=combined,
            )

        if existing:
            await CartRepository.increment_quantity(db, existing.id, quantity)
        else:
            db.add(CartItem(
                cart_id=cart_id,
                product_id=product_id,
                quantity=quantity,
                price_at_addition=product.price,
                currency=product.currency,
            ))
        try:
            await db.commit()
        except IntegrityError:
            # Same product added concurrently; fold into the row that won
            await db.rollback()
            existing = await CartRepository.get_item(db, cart_id, product_id)
            if existing is None:
                raise
            await CartRepository.increment_quantity(db, existing.id, quantity)
            await db.commit()

        logger.info("cart_item_added", cart_id=cart_id, product_id=product_id, quantity=quantity)
        return await self.get_cart(db, cart_id)

    async def update_quantity(self, db: AsyncSession, cart_id: int, item_id: int, quantity: int) -> Cart:
        if quantity <= 0:
            return await self.remove_item(db, cart_id, item_id)

        item = await CartRepository.get_item_by_id(db, cart_id, item_id)
        if not item:
            raise NotFoundError("Cart item not found", item_id=item_id)

        product = await self.catalog.get_product(db, item.product_id)
        if product and not product.has_stock_for(quantity):
            raise OutOfStock(
                f"Insufficient stock for {product.name}",
                product_id=item.product_id,
                requested=quantity,
            )

        await CartRepository.set_quantity(db, item_id, quantity)
        await db.commit()
        return await self.get_cart(db, cart_id)

    async def remove_item(self, db: AsyncSession, cart_id: int, item_id: int) -> Cart:
        await CartRepository.remove_item(db, cart_id, item_id)
        await db.commit()
        return await self.get_cart(db, cart_id)

    async def clear(self, db: AsyncSession, cart_id: int) -> None:
        await CartRepository.clear_cart(db, cart_id)
        await db.commit()

    async def merge_guest_cart(self, db: AsyncSession, session_id: str, user_id: int) -> Cart:
        """
        Folds the session cart into the user's cart and deletes the session
        cart, all in one database transaction.
        """
        try:
            guest = await CartRepository.get_by_session(db, session_id)
            if guest is None:
                await db.rollback()
                return await self.get_or_create(db, CartOwner.for_user(user_id))

            user_cart = await CartRepository.get_by_user(db, user_id)
            if user_cart is None:
                user_cart = self._new_cart(CartOwner.for_user(user_id))
                db.add(user_cart)
                await db.flush()

            merged = 0
            for guest_item in list(guest.items):
                existing = await CartRepository.get_item(db, user_cart.id, guest_item.product_id)
                if existing:
                    await CartRepository.increment_quantity(db, existing.id, guest_item.quantity)
                else:
                    db.add(CartItem(
                        cart_id=user_cart.id,
                        product_id=guest_item.product_id,
                        quantity=guest_item.quantity,
                        price_at_addition=guest_item.price_at_addition,
                        currency=guest_item.currency,
                    ))
                merged += 1

            await db.delete(guest)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.error("cart_merge_failed", session_id=session_id, user_id=user_id)
            raise

        academy_active_carts.dec()
        logger.info("guest_cart_merged", session_id=session_id, user_id=user_id, items=merged)
        return await self.get_cart(db, user_cart.id)

    async def cleanup_expired_carts(self, db: AsyncSession) -> int:
        count = await CartRepository.delete_expired(db, datetime.now(timezone.utc))
        await db.commit()
        if count:
            academy_active_carts.dec(count)
            logger.info("expired_carts_cleaned", count=count)
        return count

    async def to_response(self, db: AsyncSession, cart: Cart) -> CartResponse:
        """Totals are computed here from the item snapshots, never stored."""
        products = await self.catalog.get_products(db, [i.product_id for i in cart.items])
        items = []
        for item in cart.items:
            product = products.get(item.product_id)
            unit_price = Decimal(item.price_at_addition)
            items.append(CartItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_name=product.name if product else None,
                quantity=item.quantity,
                unit_price=unit_price,
                current_price=product.price if product else None,
                currency=item.currency,
                line_total=unit_price * item.quantity,
                stock_quantity=product.stock_quantity if product else None,
                is_available=bool(product and product.is_available),
            ))
        return CartResponse(
            id=cart.id,
            user_id=cart.user_id,
            session_id=cart.session_id,
            expires_at=cart.expires_at,
            items=items,
            item_count=sum(i.quantity for i in items),
            subtotal=sum((i.line_total for i in items), Decimal("0")),
        )
