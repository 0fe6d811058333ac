from sqlalchemy import (
    JSON,
    Boolean,
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


class Transaction(Base):
    """
    One payment attempt against exactly one target (course, order or
    subscription). Status only moves forward:

        pending -> processing -> completed | failed | cancelled
        completed -> refunded
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    target_type = Column(String(20), nullable=False)  # course, order, subscription
    course_id = Column(Integer, nullable=True, index=True)
    order_id = Column(Integer, nullable=True, index=True)
    subscription_id = Column(Integer, nullable=True, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(20), nullable=False)  # stripe, paystack, none
    provider_reference = Column(String(255), unique=True, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    provider_metadata = Column("metadata", JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Set by whoever applied the fulfillment; NULL on a completed row means it still has to run
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PaymentProvider(Base):
    """Provider credentials, encrypted at rest. Read to build the gateways."""
    __tablename__ = "payment_providers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(20), unique=True, nullable=False)
    display_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    secret_key_encrypted = Column(Text, nullable=True)
    public_key_encrypted = Column(Text, nullable=True)
    webhook_secret_encrypted = Column(Text, nullable=True)
    supported_currencies = Column(JSON, nullable=True)
    configuration = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class PaymentWebhookEvent(Base):
    """Delivery log. One row per (provider, event id); retries reuse the row."""
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_webhook_events_provider_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    reference = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
