from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from shared.config.database import Base


class Cart(Base):
    __tablename__ = "shop_carts"
    __table_args__ = (
        # Exactly one owner key: a user id or an anonymous session id
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_shop_carts_single_owner",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    # The unique constraints are what guarantees one cart per owner key
    user_id = Column(Integer, nullable=True, unique=True)
    session_id = Column(String(64), nullable=True, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship(
        "CartItem",
        back_populates="cart",
        lazy="selectin",
        order_by="CartItem.id",
        cascade="all, delete-orphan",
    )


class CartItem(Base):
    __tablename__ = "shop_cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", name="uq_shop_cart_items_cart_product"),
        CheckConstraint("quantity > 0", name="ck_shop_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("shop_carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("shop_products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    # Snapshot taken when the product was first added; never recomputed
    price_at_addition = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    cart = relationship("Cart", back_populates="items")
