"""
Provider-agnostic payment gateway interface.

Every provider adapter turns its own vocabulary into these types, so the
reconciliation engine never sees a raw provider status.
"""
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None, currency: str) -> Decimal | None:
    if amount is None:
        return None
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    PROCESSING = "processing"


@dataclass(frozen=True)
class ProviderCredentials:
    name: str
    secret_key: str
    public_key: str | None = None
    webhook_secret: str | None = None
    configuration: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntent:
    provider: str
    reference: str
    client_secret: str | None = None
    authorization_url: str | None = None
    access_code: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResult:
    reference: str
    outcome: PaymentOutcome
    raw_status: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    message: str | None = None
    # Provider id of the actual charge, used for refunds
    charge_reference: str | None = None
    data: dict = field(default_factory=dict)

    @property
    def verified(self) -> bool:
        return self.outcome is PaymentOutcome.SUCCEEDED


@dataclass(frozen=True)
class WebhookEvent:
    provider: str
    event_id: str
    event_type: str
    kind: str  # payment, refund, ignored
    reference: str | None = None
    # Our own transaction id echoed back by the provider (signed metadata)
    transaction_id: int | None = None
    payload: dict = field(default_factory=dict)


def malformed_event(provider: str, raw_body: bytes) -> WebhookEvent:
    """A correctly signed body that cannot be decoded: acknowledged, never retried."""
    digest = hashlib.sha256(raw_body).hexdigest()
    return WebhookEvent(provider=provider, event_id=f"malformed:{digest}", event_type="malformed", kind="ignored")


@dataclass(frozen=True)
class RefundResult:
    reference: str
    refund_id: str | None
    status: str | None


class PaymentGateway(ABC):
    name: str

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict,
        *,
        transaction_id: int,
        customer_email: str | None = None,
        description: str | None = None,
    ) -> PaymentIntent:
        """Starts a charge with the provider."""

    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        """Asks the provider for the current state of a charge."""

    @abstractmethod
    async def refund(self, reference: str, amount: Decimal | None = None, reason: str | None = None) -> RefundResult:
        """Refunds a completed charge, in full when amount is None."""

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, signature: str | None) -> WebhookEvent:
        """
        Checks the signature over the raw body and decodes the event.
        Raises SignatureInvalid before looking at the payload.
        """

    @property
    def public_key(self) -> str | None:
        return None
