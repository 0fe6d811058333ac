from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Address(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    line1: str = Field(min_length=1)
    line2: str | None = None
    city: str = Field(min_length=1)
    state: str | None = None
    postal_code: str | None = None
    country: str = Field(min_length=2, max_length=2)


class OrderCreate(BaseModel):
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    customer_email: EmailStr | None = None
    customer_phone: str | None = Field(default=None, max_length=50)
    customer_notes: str | None = None
    payment_method: str | None = None
    billing_address: Address | None = None
    shipping_address: Address | None = None
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)


class OrderStatusUpdate(BaseModel):
    status: str


class FulfillmentUpdate(BaseModel):
    fulfillment_status: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None


class OrderItemResponse(BaseModel):
    id: int
    product_id: int
    product_name: str
    product_sku: str | None
    unit_price: Decimal
    quantity: int
    total_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: int
    order_number: str
    user_id: int
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    billing_address: dict | None = None
    shipping_address: dict | None = None
    customer_email: str | None = None
    payment_method: str | None = None
    status: str
    payment_status: str
    fulfillment_status: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    items: list[OrderItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderStatistics(BaseModel):
    total_orders: int
    by_status: dict[str, int]
    paid_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
