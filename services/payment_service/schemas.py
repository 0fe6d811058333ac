from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# --- Payment targets: exactly one kind per request ---

class CourseTarget(BaseModel):
    type: Literal["course"] = "course"
    id: int


class OrderTarget(BaseModel):
    type: Literal["order"] = "order"
    id: int


class SubscriptionTarget(BaseModel):
    type: Literal["subscription"] = "subscription"
    id: int


class TierTarget(BaseModel):
    type: Literal["tier"] = "tier"
    id: int


PaymentTarget = Annotated[
    Union[CourseTarget, OrderTarget, SubscriptionTarget, TierTarget],
    Field(discriminator="type"),
]


class PaymentInitialize(BaseModel):
    target: PaymentTarget
    provider: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    email: str | None = None


class PaymentInitResponse(BaseModel):
    success: bool = True
    is_free: bool = False
    transaction_id: int | None = None
    provider: str
    reference: str | None = None
    amount: Decimal
    currency: str
    client_secret: str | None = None
    authorization_url: str | None = None
    access_code: str | None = None
    public_key: str | None = None
    enrollment_id: int | None = None
    subscription_id: int | None = None
    order_id: int | None = None


class VerifyRequest(BaseModel):
    provider: str | None = None


class VerifyResponse(BaseModel):
    success: bool
    status: str
    transaction_id: int | None = None
    reference: str | None = None
    provider: str | None = None
    already_processed: bool = False
    message: str | None = None


class RefundRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    target_type: str
    course_id: int | None = None
    order_id: int | None = None
    subscription_id: int | None = None
    amount: Decimal
    currency: str
    provider: str
    provider_reference: str | None = None
    status: str
    failure_reason: str | None = None
    paid_at: datetime | None = None
    refunded_at: datetime | None = None
    refund_reason: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int
    limit: int
    offset: int


class WebhookAck(BaseModel):
    received: bool = True
    status: str


# --- Provider administration ---

class ProviderConfigUpdate(BaseModel):
    display_name: str | None = None
    secret_key: str | None = None
    public_key: str | None = None
    webhook_secret: str | None = None
    supported_currencies: list[str] | None = None
    configuration: dict | None = None
    is_active: bool | None = None


class ProviderToggle(BaseModel):
    is_active: bool


class ProviderResponse(BaseModel):
    name: str
    display_name: str | None = None
    is_active: bool
    has_secret_key: bool
    has_public_key: bool
    has_webhook_secret: bool
    supported_currencies: list[str] = []
    configuration: dict = {}


class ProviderPublicConfig(BaseModel):
    name: str
    enabled: bool
    public_key: str | None = None
    supported_currencies: list[str] = []
