"""
Paystack adapter over its REST API with httpx.

References are `TXN-<transaction id>`; amounts travel in minor units
(kobo). Webhooks are signed with an HMAC-SHA512 of the raw body.
"""
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config.settings import PAYMENT_SUCCESS_URL, PAYSTACK_BASE_URL, PROVIDER_TIMEOUT_SECONDS
from shared.errors import ProviderError, ProviderUnavailable, SignatureInvalid, ValidationError

from .base import (
    PaymentGateway,
    PaymentIntent,
    PaymentOutcome,
    ProviderCredentials,
    RefundResult,
    VerificationResult,
    WebhookEvent,
    from_minor_units,
    malformed_event,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

REFERENCE_PREFIX = "TXN-"
SIGNATURE_HEADER = "x-paystack-signature"

PAYMENT_EVENTS = {"charge.success", "charge.failed"}
REFUND_EVENTS = {"refund.processed"}


def classify_status(status: str | None) -> PaymentOutcome:
    if status == "success":
        return PaymentOutcome.SUCCEEDED
    if status in ("failed", "abandoned", "reversed"):
        return PaymentOutcome.FAILED
    if status in ("ongoing", "processing", "queued"):
        return PaymentOutcome.PROCESSING
    return PaymentOutcome.PENDING


def transaction_reference(transaction_id: int) -> str:
    return f"{REFERENCE_PREFIX}{transaction_id}"


def sign(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, credentials: ProviderCredentials, client: httpx.AsyncClient | None = None,
                 max_attempts: int = 3, backoff: float = 0.5):
        self.credentials = credentials
        self.base_url = credentials.configuration.get("base_url") or PAYSTACK_BASE_URL
        self._client = client
        self.max_attempts = max_attempts
        self.backoff = backoff

    @property
    def public_key(self) -> str | None:
        return self.credentials.public_key

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.credentials.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=8),
            reraise=True,
        ):
            with attempt:
                body = await self._send(method, path, payload)
        return body

    async def _send(self, method: str, path: str, payload: dict | None) -> dict:
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, f"{self.base_url}{path}", json=payload, headers=self._headers()
                )
            else:
                async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as client:
                    response = await client.request(
                        method, f"{self.base_url}{path}", json=payload, headers=self._headers()
                    )
        except httpx.HTTPError as e:
            logger.warning("paystack_transport_error", path=path, error=str(e))
            raise ProviderUnavailable(f"Paystack unreachable: {e}", provider=self.name) from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning("paystack_unavailable", path=path, status_code=response.status_code)
            raise ProviderUnavailable(provider=self.name, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError("Paystack returned a non-JSON response", provider=self.name) from e

        if response.status_code >= 400 or not body.get("status"):
            logger.error("paystack_api_error", path=path, status_code=response.status_code, message=body.get("message"))
            raise ProviderError(f"Paystack error: {body.get('message', 'request failed')}", provider=self.name)
        return body.get("data") or {}

    async def create_payment_intent(self, amount, currency, metadata, *, transaction_id,
                                    customer_email=None, description=None) -> PaymentIntent:
        if not customer_email:
            raise ValidationError("An email address is required to pay with Paystack")

        reference = transaction_reference(transaction_id)
        data = await self._request("POST", "/transaction/initialize", {
            "amount": to_minor_units(amount, currency),
            "email": customer_email,
            "currency": currency.upper(),
            "reference": reference,
            "callback_url": self.credentials.configuration.get("callback_url") or PAYMENT_SUCCESS_URL,
            "metadata": json.dumps({**metadata, "transactionId": transaction_id}, default=str),
        })

        logger.info("paystack_transaction_initialized", transaction_id=transaction_id, reference=reference)
        return PaymentIntent(
            provider=self.name,
            reference=data.get("reference") or reference,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    async def verify(self, reference: str) -> VerificationResult:
        data = await self._request("GET", f"/transaction/verify/{reference}")
        currency = (data.get("currency") or "").upper()
        return VerificationResult(
            reference=reference,
            outcome=classify_status(data.get("status")),
            raw_status=data.get("status"),
            amount=from_minor_units(data.get("amount"), currency) if currency else None,
            currency=currency or None,
            message=data.get("gateway_response"),
            charge_reference=data.get("reference") or reference,
            data={"id": data.get("id"), "paid_at": data.get("paid_at"), "channel": data.get("channel")},
        )

    async def refund(self, reference: str, amount: Decimal | None = None, reason: str | None = None) -> RefundResult:
        payload = {"transaction": reference}
        if amount is not None:
            verified = await self.verify(reference)
            payload["amount"] = to_minor_units(amount, verified.currency or "NGN")
        if reason:
            payload["merchant_note"] = reason
        data = await self._request("POST", "/refund", payload)
        logger.info("paystack_refund_created", reference=reference, refund_id=data.get("id"))
        return RefundResult(reference=reference, refund_id=str(data.get("id")) if data.get("id") else None,
                            status=data.get("status"))

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> WebhookEvent:
        secret = self.credentials.webhook_secret or self.credentials.secret_key
        if not secret:
            raise SignatureInvalid("Paystack secret is not configured", provider=self.name)
        if not signature or not hmac.compare_digest(sign(raw_body, secret), signature):
            raise SignatureInvalid(provider=self.name)

        try:
            event = json.loads(raw_body)
        except ValueError:
            return malformed_event(self.name, raw_body)
        if not isinstance(event, dict):
            return malformed_event(self.name, raw_body)

        event_type = event.get("event", "")
        data = event.get("data") or {}

        if event_type in PAYMENT_EVENTS:
            kind, reference = "payment", data.get("reference")
        elif event_type in REFUND_EVENTS:
            kind, reference = "refund", data.get("transaction_reference")
        else:
            kind, reference = "ignored", data.get("reference")

        transaction_id = None
        if reference and reference.startswith(REFERENCE_PREFIX):
            try:
                transaction_id = int(reference[len(REFERENCE_PREFIX):])
            except ValueError:
                transaction_id = None

        return WebhookEvent(
            provider=self.name,
            event_id=f"{event_type}:{data.get('id') or reference}",
            event_type=event_type,
            kind=kind,
            reference=reference,
            transaction_id=transaction_id,
            payload=event,
        )
