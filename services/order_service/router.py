from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from services.cart_service.service import CartOwner, CartService
from services.catalog_service.service import CatalogLookup
from shared.config.database import get_db
from shared.security.dependencies import CurrentUser, get_current_user, require_admin

from .schemas import (
    FulfillmentUpdate,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatistics,
    OrderStatusUpdate,
)
from .service import OrderFactory, OrderService

router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])
public_router = APIRouter()  # For any public endpoints (e.g. health check)


def get_catalog() -> CatalogLookup:
    return CatalogLookup()


def get_order_factory(catalog: CatalogLookup = Depends(get_catalog)) -> OrderFactory:
    return OrderFactory(catalog)


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "order", "status": "running"}


@router.post("/", response_model=OrderResponse, status_code=201)
async def create_order(
    data: OrderCreate,
    user: CurrentUser = Depends(get_current_user),
    factory: OrderFactory = Depends(get_order_factory),
    catalog: CatalogLookup = Depends(get_catalog),
    db: AsyncSession = Depends(get_db),
):
    """Checks out the caller's cart. The cart is kept until the payment succeeds."""
    cart = await CartService(catalog).get_or_create(db, CartOwner.for_user(user.id))
    return await factory.create_from_cart(db, cart.id, user.id, data)


@router.get("/", response_model=OrderListResponse)
async def list_my_orders(
    status: str | None = None,
    payment_status: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await OrderService.list_orders(
        db, user_id=user.id, status=status, payment_status=payment_status, limit=limit, offset=offset
    )
    return OrderListResponse(orders=orders, total=total, limit=limit, offset=offset)


@router.get("/number/{order_number}", response_model=OrderResponse)
async def get_order_by_number(
    order_number: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.get_by_number(db, order_number, user)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.get_order(db, order_id, user)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await OrderService.cancel_order(db, order_id, user)


# --- Admin ---

@admin_router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    user_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    fulfillment_status: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await OrderService.list_orders(
        db,
        user_id=user_id,
        status=status,
        payment_status=payment_status,
        fulfillment_status=fulfillment_status,
        limit=limit,
        offset=offset,
    )
    return OrderListResponse(orders=orders, total=total, limit=limit, offset=offset)


@admin_router.get("/statistics", response_model=OrderStatistics)
async def order_statistics(user_id: int | None = None, db: AsyncSession = Depends(get_db)):
    return await OrderService.get_statistics(db, user_id)


@admin_router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(order_id: int, data: OrderStatusUpdate, db: AsyncSession = Depends(get_db)):
    return await OrderService.update_status(db, order_id, data.status)


@admin_router.patch("/orders/{order_id}/fulfillment", response_model=OrderResponse)
async def update_fulfillment(order_id: int, data: FulfillmentUpdate, db: AsyncSession = Depends(get_db)):
    return await OrderService.update_fulfillment(db, order_id, data)
