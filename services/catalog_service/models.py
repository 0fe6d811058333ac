from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from shared.config.database import Base


class Product(Base):
    __tablename__ = "shop_products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    sku = Column(String(100), unique=True, nullable=True)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Inventory. stock_quantity is only ever changed with atomic UPDATEs.
    stock_quantity = Column(Integer, nullable=False, default=0)
    track_inventory = Column(Boolean, nullable=False, default=True)
    sales_count = Column(Integer, nullable=False, default=0)

    is_published = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    billing_cycle_months = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    is_published = Column(Boolean, nullable=False, default=True)
    # Subscribers of this tier already have access to the course
    subscription_tier_id = Column(Integer, ForeignKey("subscription_tiers.id"), nullable=True)
