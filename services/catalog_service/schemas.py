from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    name: str
    sku: str | None = None
    description: str | None = None
    price: Decimal = Field(ge=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    stock_quantity: int = Field(default=0, ge=0)
    track_inventory: bool = True
    is_published: bool = True


class ProductResponse(BaseModel):
    id: int
    name: str
    sku: str | None
    price: Decimal
    currency: str
    stock_quantity: int
    track_inventory: bool
    sales_count: int
    is_published: bool

    model_config = ConfigDict(from_attributes=True)
