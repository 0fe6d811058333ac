from decimal import Decimal

import pytest
from sqlalchemy import update

from services.cart_service.repository import CartRepository
from services.cart_service.service import CartOwner, CartService
from services.catalog_service.models import Product
from shared.errors import InvalidQuantity, OutOfStock, ProductNotAvailable, ValidationError


@pytest.fixture
def carts(catalog):
    return CartService(catalog)


class TestCartOwner:

    def test_owner_is_user_or_session(self):
        assert CartOwner.for_user(1).user_id == 1
        assert CartOwner.for_session("abc").session_id == "abc"

    def test_both_keys_rejected(self):
        with pytest.raises(ValidationError):
            CartOwner(user_id=1, session_id="abc")

    def test_no_key_rejected(self):
        with pytest.raises(ValidationError):
            CartOwner()


class TestCartStore:

    @pytest.mark.asyncio
    async def test_get_or_create_returns_same_cart(self, carts, session_factory):
        async with session_factory() as db:
            first = await carts.get_or_create(db, CartOwner.for_user(7))
        async with session_factory() as db:
            second = await carts.get_or_create(db, CartOwner.for_user(7))
        assert first.id == second.id
        assert first.expires_at is not None

    @pytest.mark.asyncio
    async def test_add_item_snapshots_price(self, carts, seed, session_factory):
        product = await seed.product(price="12.50")
        async with session_factory() as db:
            cart = await carts.get_or_create(db, CartOwner.for_user(1))
            cart = await carts.add_item(db, cart.id, product.id, 2)
            response = await carts.to_response(db, cart)

        assert response.item_count == 2
        assert response.subtotal == Decimal("25.00")
        assert response.items[0].unit_price == Decimal("12.50")

    @pytest.mark.asyncio
    async def test_adding_same_product_sums_quantities(self, carts, seed, session_factory):
        product = await seed.product(stock=5)
        cart_id = await seed.cart(1, (product, 2))
        async with session_factory() as db:
            await carts.add_item(db, cart_id, product.id, 3)
        async with session_factory() as db:
            cart = await CartRepository.get_cart(db, cart_id)
            assert len(cart.items) == 1
            assert cart.items[0].quantity == 5

    @pytest.mark.asyncio
    async def test_combined_quantity_checked_against_stock(self, carts, seed, session_factory):
        product = await seed.product(stock=4)
        cart_id = await seed.cart(1, (product, 3))
        async with session_factory() as db:
            with pytest.raises(OutOfStock):
                await carts.add_item(db, cart_id, product.id, 2)

    @pytest.mark.asyncio
    async def test_untracked_inventory_ignores_stock(self, carts, seed, session_factory):
        product = await seed.product(stock=0, track_inventory=False)
        cart_id = await seed.cart(1)
        async with session_factory() as db:
            cart = await carts.add_item(db, cart_id, product.id, 10)
        assert cart.items[0].quantity == 10

    @pytest.mark.asyncio
    async def test_unpublished_product_rejected(self, carts, seed, session_factory):
        product = await seed.product()
        async with session_factory() as db:
            await db.execute(update(Product).where(Product.id == product.id).values(is_published=False))
            await db.commit()
        cart_id = await seed.cart(1)
        async with session_factory() as db:
            with pytest.raises(ProductNotAvailable):
                await carts.add_item(db, cart_id, product.id, 1)

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected_on_add(self, carts, seed, session_factory):
        product = await seed.product()
        cart_id = await seed.cart(1)
        async with session_factory() as db:
            with pytest.raises(InvalidQuantity):
                await carts.add_item(db, cart_id, product.id, 0)

    @pytest.mark.asyncio
    async def test_update_to_zero_removes_item(self, carts, seed, session_factory):
        product = await seed.product()
        cart_id = await seed.cart(1, (product, 2))
        async with session_factory() as db:
            cart = await CartRepository.get_cart(db, cart_id)
            cart = await carts.update_quantity(db, cart_id, cart.items[0].id, 0)
        assert cart.items == []

    @pytest.mark.asyncio
    async def test_update_rechecks_stock(self, carts, seed, session_factory):
        product = await seed.product(stock=3)
        cart_id = await seed.cart(1, (product, 1))
        async with session_factory() as db:
            cart = await CartRepository.get_cart(db, cart_id)
            with pytest.raises(OutOfStock):
                await carts.update_quantity(db, cart_id, cart.items[0].id, 4)

    @pytest.mark.asyncio
    async def test_clear_empties_cart(self, carts, seed, session_factory):
        first, second = await seed.product(sku="A"), await seed.product(sku="B")
        cart_id = await seed.cart(1, (first, 1), (second, 1))
        async with session_factory() as db:
            await carts.clear(db, cart_id)
        async with session_factory() as db:
            assert (await CartRepository.get_cart(db, cart_id)).items == []


class TestMergeGuestCart:

    @pytest.mark.asyncio
    async def test_merge_sums_overlap_and_deletes_guest_cart(self, carts, seed, session_factory):
        shared_product = await seed.product(sku="SHARED", stock=20)
        guest_only = await seed.product(sku="GUEST", stock=20)
        user_cart_id = await seed.cart(5, (shared_product, 1))

        async with session_factory() as db:
            guest = await carts.get_or_create(db, CartOwner.for_session("guest-123"))
            await carts.add_item(db, guest.id, shared_product.id, 2)
            await carts.add_item(db, guest.id, guest_only.id, 1)

        async with session_factory() as db:
            merged = await carts.merge_guest_cart(db, "guest-123", 5)

        assert merged.id == user_cart_id
        quantities = {item.product_id: item.quantity for item in merged.items}
        assert quantities == {shared_product.id: 3, guest_only.id: 1}
        async with session_factory() as db:
            assert await CartRepository.get_by_session(db, "guest-123") is None

    @pytest.mark.asyncio
    async def test_merge_without_guest_cart_returns_user_cart(self, carts, session_factory):
        async with session_factory() as db:
            cart = await carts.merge_guest_cart(db, "nobody", 9)
        assert cart.user_id == 9
        assert cart.items == []
