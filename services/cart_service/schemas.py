from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CartItemCreate(BaseModel):
    product_id: int
    quantity: int = Field(default=1, gt=0)


class CartItemUpdate(BaseModel):
    # 0 or less removes the item
    quantity: int


class CartMergeRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64)


class CartItemResponse(BaseModel):
    id: int
    product_id: int
    product_name: str | None = None
    quantity: int
    unit_price: Decimal  # the price_at_addition snapshot
    current_price: Decimal | None = None
    currency: str
    line_total: Decimal
    stock_quantity: int | None = None
    is_available: bool = True


class CartResponse(BaseModel):
    id: int
    user_id: int | None
    session_id: str | None
    expires_at: datetime
    items: list[CartItemResponse] = []
    item_count: int
    subtotal: Decimal
