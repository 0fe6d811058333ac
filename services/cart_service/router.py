"""
Cart endpoints. Authenticated callers own a cart keyed by their user id;
anonymous callers send an opaque session id in the X-Cart-Session header.
A guest with no header gets a fresh session id back in the same header.
"""
import uuid

from fastapi import APIRouter, Depends, Header, Response
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog_service.service import CatalogLookup
from shared.config.database import get_db
from shared.security.dependencies import (
    CurrentUser,
    get_current_user,
    get_optional_user,
    require_admin,
)

from .schemas import CartItemCreate, CartItemUpdate, CartMergeRequest, CartResponse
from .service import CartOwner, CartService

SESSION_HEADER = "X-Cart-Session"

router = APIRouter()
public_router = APIRouter()  # For any public endpoints (e.g. health check)


def get_cart_service() -> CartService:
    return CartService(CatalogLookup())


async def resolve_owner(
    response: Response,
    user: CurrentUser | None = Depends(get_optional_user),
    cart_session: str | None = Header(default=None, alias=SESSION_HEADER, max_length=64),
) -> CartOwner:
    if user is not None:
        return CartOwner.for_user(user.id)
    if not cart_session:
        cart_session = uuid.uuid4().hex
    response.headers[SESSION_HEADER] = cart_session
    return CartOwner.for_session(cart_session)


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "cart", "status": "running"}


@router.get("/", response_model=CartResponse)
async def get_cart(
    owner: CartOwner = Depends(resolve_owner),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.get_or_create(db, owner)
    return await service.to_response(db, cart)


@router.post("/items", response_model=CartResponse, status_code=201)
async def add_item(
    item: CartItemCreate,
    owner: CartOwner = Depends(resolve_owner),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.get_or_create(db, owner)
    cart = await service.add_item(db, cart.id, item.product_id, item.quantity)
    return await service.to_response(db, cart)


@router.patch("/items/{item_id}", response_model=CartResponse)
async def update_item(
    item_id: int,
    data: CartItemUpdate,
    owner: CartOwner = Depends(resolve_owner),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.get_or_create(db, owner)
    cart = await service.update_quantity(db, cart.id, item_id, data.quantity)
    return await service.to_response(db, cart)


@router.delete("/items/{item_id}", response_model=CartResponse)
async def remove_item(
    item_id: int,
    owner: CartOwner = Depends(resolve_owner),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.get_or_create(db, owner)
    cart = await service.remove_item(db, cart.id, item_id)
    return await service.to_response(db, cart)


@router.delete("/items", status_code=204)
async def clear_cart(
    owner: CartOwner = Depends(resolve_owner),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.get_or_create(db, owner)
    await service.clear(db, cart.id)


@router.post("/merge", response_model=CartResponse)
async def merge_cart(
    data: CartMergeRequest,
    user: CurrentUser = Depends(get_current_user),
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    cart = await service.merge_guest_cart(db, data.session_id, user.id)
    return await service.to_response(db, cart)


@router.post("/cleanup", dependencies=[Depends(require_admin)])
async def cleanup_expired(
    service: CartService = Depends(get_cart_service),
    db: AsyncSession = Depends(get_db),
):
    deleted = await service.cleanup_expired_carts(db)
    return {"deleted": deleted}
