from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from shared.config.database import Base


class Order(Base):
    """
    Immutable once created apart from the three status fields, the tracking
    fields, paid_at and stock_released_at. Orders are never deleted.
    """
    __tablename__ = "shop_orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_shop_orders_total_nonnegative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # The unique constraint, not the generator, is what keeps numbers unique
    order_number = Column(String(50), unique=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    cart_id = Column(Integer, nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    billing_address = Column(JSON, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    customer_notes = Column(Text, nullable=True)
    payment_method = Column(String(50), nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="pending")
    fulfillment_status = Column(String(20), nullable=False, default="unfulfilled")

    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    carrier = Column(String(100), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    # Set once when reserved stock is given back (failure or cancellation)
    stock_released_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("OrderItem", lazy="selectin", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "shop_order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("shop_orders.id"), nullable=False, index=True)
    product_id = Column(Integer, nullable=False)

    # Snapshot of the catalog at order time
    product_name = Column(String(255), nullable=False)
    product_sku = Column(String(100), nullable=True)
    product_description = Column(Text, nullable=True)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    track_inventory = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
