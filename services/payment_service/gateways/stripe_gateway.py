"""
Stripe adapter on the official SDK.

A payment creates both a PaymentIntent (client secret for the embedded
flow) and a Checkout Session (hosted redirect). The PaymentIntent id is the
transaction's reference; the session id is kept in its metadata and can be
verified on its own, since a hosted checkout charges through a
PaymentIntent of its own.
"""
import asyncio
import json
from decimal import Decimal

import stripe
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.config.settings import PAYMENT_CANCEL_URL, PAYMENT_SUCCESS_URL
from shared.errors import ProviderError, ProviderUnavailable, SignatureInvalid

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

PAYMENT_EVENTS = {
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.processing",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}
REFUND_EVENTS = {"charge.refunded"}

# Errors worth retrying: the request may never have reached Stripe
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def classify_intent(status: str | None, last_payment_error=None) -> PaymentOutcome:
    if status == "succeeded":
        return PaymentOutcome.SUCCEEDED
    if status == "canceled":
        return PaymentOutcome.FAILED
    if status == "requires_payment_method":
        # A fresh intent also sits here before the customer has paid
        return PaymentOutcome.FAILED if last_payment_error else PaymentOutcome.PENDING
    if status == "processing":
        return PaymentOutcome.PROCESSING
    return PaymentOutcome.PENDING


def classify_session(status: str | None, payment_status: str | None) -> PaymentOutcome:
    if payment_status in ("paid", "no_payment_required"):
        return PaymentOutcome.SUCCEEDED
    if status == "expired":
        return PaymentOutcome.FAILED
    if status == "complete":
        # Completed but unpaid: an async payment method is still settling
        return PaymentOutcome.PROCESSING
    return PaymentOutcome.PENDING


def _with_params(url: str, params: str) -> str:
    return f"{url}{'&' if '?' in url else '?'}{params}"


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, credentials: ProviderCredentials, max_attempts: int = 3, backoff: float = 0.5):
        self.credentials = credentials
        self.max_attempts = max_attempts
        self.backoff = backoff

    @property
    def public_key(self) -> str | None:
        return self.credentials.public_key

    async def _call(self, fn, *args, **kwargs):
        """Runs a blocking SDK call off the event loop with retries on transient errors."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff, max=8),
            reraise=True,
        ):
            with attempt:
                result = await self._invoke(fn, *args, **kwargs)
        return result

    async def _invoke(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.credentials.secret_key, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.warning("stripe_transient_error", error=str(e), error_type=type(e).__name__)
            raise ProviderUnavailable(f"Stripe unavailable: {e}", provider=self.name) from e
        except stripe.StripeError as e:
            logger.error("stripe_api_error", error=str(e), error_code=getattr(e, "code", None))
            raise ProviderError(f"Stripe error: {e}", provider=self.name) from e

    async def create_payment_intent(self, amount, currency, metadata, *, transaction_id,
                                    customer_email=None, description=None) -> PaymentIntent:
        minor = to_minor_units(amount, currency)
        stripe_metadata = {k: str(v) for k, v in {**metadata, "transactionId": transaction_id}.items() if v is not None}

        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=minor,
            currency=currency.lower(),
            metadata=stripe_metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=f"txn-{transaction_id}-intent",
        )
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {
                        "name": description or "Academy Payment",
                        "description": f"Payment for transaction {transaction_id}",
                    },
                    "unit_amount": minor,
                },
                "quantity": 1,
            }],
            success_url=_with_params(
                PAYMENT_SUCCESS_URL, f"session_id={{CHECKOUT_SESSION_ID}}&transactionId={transaction_id}"
            ),
            cancel_url=_with_params(PAYMENT_CANCEL_URL, f"transactionId={transaction_id}"),
            customer_email=customer_email,
            metadata=stripe_metadata,
            # Refund events name the session's own PaymentIntent, which carries these too
            payment_intent_data={"metadata": stripe_metadata},
            client_reference_id=str(transaction_id),
            idempotency_key=f"txn-{transaction_id}-session",
        )

        logger.info("stripe_intent_created", transaction_id=transaction_id, payment_intent_id=intent.id)
        return PaymentIntent(
            provider=self.name,
            reference=intent.id,
            client_secret=intent.client_secret,
            authorization_url=session.url,
            metadata={"checkout_session_id": session.id},
        )

    async def verify(self, reference: str) -> VerificationResult:
        if reference.startswith("cs_"):
            return await self._verify_session(reference)

        intent = await self._call(stripe.PaymentIntent.retrieve, reference)
        last_error = getattr(intent, "last_payment_error", None)
        currency = (intent.currency or "").upper()
        received = getattr(intent, "amount_received", None) or intent.amount
        return VerificationResult(
            reference=reference,
            outcome=classify_intent(intent.status, last_error),
            raw_status=intent.status,
            amount=from_minor_units(received, currency),
            currency=currency,
            message=getattr(last_error, "message", None) if last_error else None,
            charge_reference=intent.id,
        )

    async def _verify_session(self, reference: str) -> VerificationResult:
        session = await self._call(stripe.checkout.Session.retrieve, reference)
        currency = (session.currency or "").upper()
        payment_intent = getattr(session, "payment_intent", None)
        if payment_intent is not None and not isinstance(payment_intent, str):
            payment_intent = payment_intent.id
        return VerificationResult(
            reference=reference,
            outcome=classify_session(session.status, session.payment_status),
            raw_status=f"{session.status}/{session.payment_status}",
            amount=from_minor_units(session.amount_total, currency),
            currency=currency,
            charge_reference=payment_intent,
        )

    async def refund(self, reference: str, amount: Decimal | None = None, reason: str | None = None) -> RefundResult:
        params = {"payment_intent": reference, "idempotency_key": f"refund-{reference}"}
        if amount is not None:
            intent = await self._call(stripe.PaymentIntent.retrieve, reference)
            params["amount"] = to_minor_units(amount, intent.currency)
        if reason:
            params["metadata"] = {"reason": reason}
        refund = await self._call(stripe.Refund.create, **params)
        logger.info("stripe_refund_created", payment_intent_id=reference, refund_id=refund.id, status=refund.status)
        return RefundResult(reference=reference, refund_id=refund.id, status=refund.status)

    def parse_webhook(self, raw_body: bytes, signature: str | None) -> WebhookEvent:
        secret = self.credentials.webhook_secret
        if not secret:
            raise SignatureInvalid("Stripe webhook secret is not configured", provider=self.name)
        if not signature:
            raise SignatureInvalid("Missing Stripe-Signature header", provider=self.name)
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(provider=self.name) from e
        except ValueError:
            # construct_event checks the signature before decoding the body
            return malformed_event(self.name, raw_body)

        # Signature checked; plain dicts from here on
        event = json.loads(raw_body)
        if not isinstance(event, dict):
            return malformed_event(self.name, raw_body)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        transaction_id = metadata.get("transactionId") or obj.get("client_reference_id")
        try:
            transaction_id = int(transaction_id) if transaction_id else None
        except (TypeError, ValueError):
            transaction_id = None

        if event_type in PAYMENT_EVENTS:
            kind, reference = "payment", obj.get("id")
        elif event_type in REFUND_EVENTS:
            kind, reference = "refund", obj.get("payment_intent")
        else:
            kind, reference = "ignored", obj.get("id")

        return WebhookEvent(
            provider=self.name,
            event_id=event.get("id") or f"{event_type}:{reference}",
            event_type=event_type,
            kind=kind,
            reference=reference,
            transaction_id=transaction_id,
            payload=event,
        )
