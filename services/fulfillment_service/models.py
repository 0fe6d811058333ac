from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from shared.config.database import Base


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        # Backstop for the existence check in the dispatcher
        UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")  # active, suspended
    transaction_id = Column(Integer, nullable=True)
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    tier_id = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, active, cancelled, expired
    started_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    amount_paid = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    payment_provider = Column(String(20), nullable=True)
    transaction_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class OutboundTask(Base):
    """
    Notification and email side effects, written in the same database
    transaction as the fulfillment they describe and delivered later by
    the outbound relay.
    """
    __tablename__ = "outbound_tasks"

    id = Column(Integer, primary_key=True, index=True)
    channel = Column(String(20), nullable=False)  # notification, email
    kind = Column(String(50), nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, delivered, failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
