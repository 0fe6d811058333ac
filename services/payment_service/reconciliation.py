"""
Reconciliation engine: drives a Transaction from pending to a terminal
state from whatever trigger reports on it first.

Direct verification, webhooks and reference lookups all end in
`apply_result`, which moves the status with a conditional UPDATE
(pending|processing -> completed|failed). The status change is committed
before fulfillment starts; fulfillment is then claimed with a second
conditional UPDATE on `fulfilled_at` inside the same database transaction
as the dispatcher's writes, so it runs exactly once even when a webhook
and a client verification race, and is picked up again by the next
trigger if it ever fails half way.
"""
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.fulfillment_service.dispatcher import FulfillmentDispatcher, FulfillmentResult
from shared.errors import (
    DomainError,
    NotFoundError,
    ProviderUnavailable,
    TransactionNotRefundable,
    ValidationError,
)
from shared.observability import academy_reconciliation_total, academy_webhook_events_total

from .gateways.base import PaymentGateway, PaymentOutcome, VerificationResult, WebhookEvent
from .gateways.paystack_gateway import REFERENCE_PREFIX
from .models import Transaction
from .providers import GatewayRegistry
from .repository import TransactionRepository, WebhookEventRepository

logger = structlog.get_logger(__name__)

DISPATCH_ATTEMPTS = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconcileOutcome:
    success: bool
    status: str
    transaction_id: int | None = None
    reference: str | None = None
    provider: str | None = None
    already_processed: bool = False
    message: str | None = None


def _outcome(txn: Transaction, already_processed: bool = False, message: str | None = None) -> ReconcileOutcome:
    return ReconcileOutcome(
        success=txn.status == "completed",
        status=txn.status,
        transaction_id=txn.id,
        reference=txn.provider_reference,
        provider=txn.provider,
        already_processed=already_processed,
        message=message or txn.failure_reason,
    )


class ReconciliationEngine:

    def __init__(self, registry: GatewayRegistry, dispatcher: FulfillmentDispatcher):
        self.registry = registry
        self.dispatcher = dispatcher

    # --- Entry points ---

    async def verify_transaction(self, db: AsyncSession, transaction_id: int, user=None,
                                 provider: str | None = None) -> ReconcileOutcome:
        txn = await TransactionRepository.get(db, transaction_id)
        if txn is None or (user is not None and not user.is_admin and txn.user_id != user.id):
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        if provider and provider.lower() != txn.provider:
            raise ValidationError(
                f"Transaction was not paid with {provider}", transaction_id=transaction_id, provider=txn.provider
            )
        return await self.reconcile(db, txn, source="verify")

    async def verify_by_reference(self, db: AsyncSession, reference: str, provider: str | None = None,
                                  user=None) -> ReconcileOutcome:
        txn = await self._find_by_reference(db, reference)
        if txn is not None:
            if user is not None and not user.is_admin and txn.user_id != user.id:
                raise NotFoundError("Transaction not found", reference=reference)
            return await self.reconcile(db, txn, source="reference")

        # No local row: ask the provider directly and report, nothing to apply
        provider = provider or ("paystack" if reference.startswith(REFERENCE_PREFIX) else "stripe")
        gateway = await self.registry.get(db, provider)
        result = await gateway.verify(reference)
        academy_reconciliation_total.labels(source="reference", outcome=f"unmatched_{result.outcome.value}").inc()
        logger.warning(
            "reconciled_without_local_transaction",
            reference=reference,
            provider=provider,
            outcome=result.outcome.value,
        )
        return ReconcileOutcome(
            success=result.verified,
            status=result.outcome.value,
            reference=reference,
            provider=provider,
            message="No local transaction for this reference",
        )

    async def handle_webhook(self, db: AsyncSession, provider: str, raw_body: bytes, signature: str | None) -> str:
        """
        Returns a short status for the acknowledgement. Raises SignatureInvalid
        for untrusted payloads and ProviderUnavailable when the provider
        should retry the delivery later.
        """
        gateway = await self.registry.get(db, provider)
        try:
            event = gateway.parse_webhook(raw_body, signature)
        except DomainError:
            academy_webhook_events_total.labels(provider=provider, result="rejected").inc()
            raise

        if event.kind == "ignored":
            academy_webhook_events_total.labels(provider=provider, result="ignored").inc()
            logger.info("webhook_ignored", provider=provider, event_type=event.event_type)
            return "ignored"

        row = await WebhookEventRepository.record(
            db, provider, event.event_id, event.event_type, event.reference, event.payload
        )
        # A rollback below expires row; keep the id as a plain value
        row_id = row.id
        if row.processed:
            academy_webhook_events_total.labels(provider=provider, result="duplicate").inc()
            logger.info("webhook_duplicate", provider=provider, event_id=event.event_id)
            return "duplicate"

        try:
            status = await self._process_event(db, gateway, event)
        except Exception as e:
            await db.rollback()
            await WebhookEventRepository.mark_error(db, row_id, str(e))
            await db.commit()
            academy_webhook_events_total.labels(provider=provider, result="error").inc()
            logger.error(
                "webhook_processing_failed",
                provider=provider,
                event_id=event.event_id,
                transient=isinstance(e, ProviderUnavailable),
                error=str(e),
            )
            raise

        await WebhookEventRepository.mark_processed(db, row_id, _utcnow())
        await db.commit()
        academy_webhook_events_total.labels(provider=provider, result="processed").inc()
        logger.info("webhook_processed", provider=provider, event_id=event.event_id, status=status)
        return status

    async def refund(self, db: AsyncSession, transaction_id: int, reason: str | None = None) -> ReconcileOutcome:
        txn = await TransactionRepository.get(db, transaction_id)
        if txn is None:
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        if txn.status == "refunded":
            return _outcome(txn, already_processed=True)
        if txn.status != "completed":
            raise TransactionNotRefundable(transaction_id=transaction_id, status=txn.status)

        if txn.provider != "none" and txn.amount > 0:
            gateway = await self.registry.get(db, txn.provider)
            charge_reference = (txn.provider_metadata or {}).get("charge_reference") or txn.provider_reference
            # Provider first: nothing changes locally if it refuses
            await gateway.refund(charge_reference, reason=reason)
        return await self._apply_refund(db, txn, reason)

    # --- State machine ---

    async def reconcile(self, db: AsyncSession, txn: Transaction, source: str,
                        reference: str | None = None) -> ReconcileOutcome:
        # _fulfill may roll back, which expires txn; only the id is read afterwards
        transaction_id = txn.id
        if txn.status == "completed":
            if txn.fulfilled_at is None:
                await self._fulfill(db, transaction_id)
            academy_reconciliation_total.labels(source=source, outcome="already_completed").inc()
            return _outcome(await TransactionRepository.get(db, transaction_id), already_processed=True)
        if txn.status == "refunded":
            academy_reconciliation_total.labels(source=source, outcome="already_refunded").inc()
            return _outcome(txn, already_processed=True)

        gateway = await self.registry.get(db, txn.provider)
        result = await self._query_provider(gateway, txn, reference)

        if txn.status in ("failed", "cancelled"):
            # Terminal locally; only interesting if the provider took the money anyway
            if result.verified:
                await self.dispatcher.flag_for_review(
                    db, txn, f"Provider reports success for a {txn.status} transaction"
                )
                await db.commit()
            academy_reconciliation_total.labels(source=source, outcome=f"already_{txn.status}").inc()
            return _outcome(txn, already_processed=True)

        return await self.apply_result(db, txn, result, source)

    async def apply_result(self, db: AsyncSession, txn: Transaction, result: VerificationResult,
                           source: str) -> ReconcileOutcome:
        if result.verified:
            mismatch = self._mismatch(txn, result)
            if mismatch:
                return await self._fail(db, txn, mismatch, source, needs_review=True)
            return await self._complete(db, txn, result, source)

        if result.outcome is PaymentOutcome.FAILED:
            reason = result.message or f"Provider status: {result.raw_status}"
            return await self._fail(db, txn, reason, source)

        if result.outcome is PaymentOutcome.PROCESSING:
            await TransactionRepository.mark_processing(db, txn.id)
            await db.commit()

        academy_reconciliation_total.labels(source=source, outcome=result.outcome.value).inc()
        txn = await TransactionRepository.get(db, txn.id)
        return _outcome(txn, message=f"Payment is {result.outcome.value}")

    async def _complete(self, db: AsyncSession, txn: Transaction, result: VerificationResult,
                        source: str) -> ReconcileOutcome:
        metadata = {
            **(txn.provider_metadata or {}),
            "charge_reference": result.charge_reference or txn.provider_reference,
            "provider_status": result.raw_status,
        }
        transaction_id = txn.id
        won = await TransactionRepository.complete(db, transaction_id, _utcnow(), metadata)
        await db.commit()

        txn = await TransactionRepository.get(db, transaction_id)
        if won:
            logger.info("transaction_completed", transaction_id=transaction_id, source=source, provider=txn.provider)
        elif txn.status in ("failed", "cancelled"):
            await self.dispatcher.flag_for_review(db, txn, f"Provider reports success for a {txn.status} transaction")
            await db.commit()
            academy_reconciliation_total.labels(source=source, outcome=f"already_{txn.status}").inc()
            return _outcome(txn, already_processed=True)

        if txn.status == "completed" and txn.fulfilled_at is None:
            await self._fulfill(db, transaction_id)
            txn = await TransactionRepository.get(db, transaction_id)

        academy_reconciliation_total.labels(source=source, outcome="completed" if won else "already_completed").inc()
        return _outcome(txn, already_processed=not won)

    async def _fail(self, db: AsyncSession, txn: Transaction, reason: str, source: str,
                    needs_review: bool = False) -> ReconcileOutcome:
        transaction_id = txn.id
        try:
            won = await TransactionRepository.fail(db, transaction_id, reason)
            if won:
                txn = await TransactionRepository.get(db, transaction_id)
                await self.dispatcher.handle_failure(db, txn, reason)
                if needs_review:
                    await self.dispatcher.flag_for_review(db, txn, reason)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if won:
            logger.warning("transaction_failed", transaction_id=transaction_id, source=source, reason=reason)
        academy_reconciliation_total.labels(source=source, outcome="failed" if won else "already_failed").inc()
        return _outcome(await TransactionRepository.get(db, transaction_id), already_processed=not won)

    async def _fulfill(self, db: AsyncSession, transaction_id: int) -> FulfillmentResult | None:
        for attempt in range(1, DISPATCH_ATTEMPTS + 1):
            try:
                if not await TransactionRepository.claim_fulfillment(db, transaction_id, _utcnow()):
                    await db.rollback()
                    return None
                txn = await TransactionRepository.get(db, transaction_id)
                result = await self.dispatcher.dispatch(db, txn)
                await db.commit()
                return result
            except IntegrityError:
                # A concurrent writer inserted the same grant; the retry sees it and no-ops
                await db.rollback()
                logger.warning("fulfillment_conflict", transaction_id=transaction_id, attempt=attempt)
            except Exception as e:
                await db.rollback()
                logger.error("fulfillment_failed", transaction_id=transaction_id, error=str(e))
                raise
        return None

    async def dispatch_free(self, db: AsyncSession, grant) -> FulfillmentResult:
        """Zero-amount fast path: the same dispatcher calls, no transaction row."""
        for attempt in range(1, DISPATCH_ATTEMPTS + 1):
            try:
                result = await self.dispatcher.dispatch(db, grant)
                await db.commit()
                return result
            except IntegrityError:
                await db.rollback()
                logger.warning("free_fulfillment_conflict", target_type=grant.target_type, attempt=attempt)
            except Exception:
                await db.rollback()
                raise
        return FulfillmentResult(grant.target_type, False, "conflict")

    async def _apply_refund(self, db: AsyncSession, txn: Transaction, reason: str | None) -> ReconcileOutcome:
        transaction_id = txn.id
        try:
            won = await TransactionRepository.refund(db, transaction_id, _utcnow(), reason)
            if won:
                await self.dispatcher.revoke(db, txn, reason)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        txn = await TransactionRepository.get(db, transaction_id)
        if won:
            logger.info("transaction_refunded", transaction_id=transaction_id, reason=reason)
        return _outcome(txn, already_processed=not won)

    # --- Helpers ---

    async def _process_event(self, db: AsyncSession, gateway: PaymentGateway, event: WebhookEvent) -> str:
        txn = await self._find_for_event(db, event)

        if event.kind == "refund":
            if txn is None:
                logger.warning("refund_webhook_unmatched", provider=event.provider, reference=event.reference)
                return "unmatched"
            if txn.status != "completed":
                return txn.status
            outcome = await self._apply_refund(db, txn, "Refunded at provider")
            return outcome.status

        if txn is None:
            if not event.reference:
                return "unmatched"
            result = await gateway.verify(event.reference)
            academy_reconciliation_total.labels(source="webhook", outcome=f"unmatched_{result.outcome.value}").inc()
            logger.warning(
                "webhook_without_local_transaction",
                provider=event.provider,
                reference=event.reference,
                outcome=result.outcome.value,
            )
            return "unmatched"

        outcome = await self.reconcile(db, txn, source="webhook", reference=event.reference)
        return outcome.status

    async def _find_by_reference(self, db: AsyncSession, reference: str) -> Transaction | None:
        txn = await TransactionRepository.get_by_reference(db, reference)
        if txn is None and reference.startswith(REFERENCE_PREFIX):
            try:
                txn = await TransactionRepository.get(db, int(reference[len(REFERENCE_PREFIX):]))
            except ValueError:
                return None
            if txn is not None and txn.provider != "paystack":
                return None
        return txn

    async def _find_for_event(self, db: AsyncSession, event: WebhookEvent) -> Transaction | None:
        if event.reference:
            txn = await TransactionRepository.get_by_reference(db, event.reference)
            if txn is not None:
                return txn
            if event.kind == "refund":
                # Hosted checkouts settle through a PaymentIntent other than the stored reference
                txn = await TransactionRepository.get_by_charge_reference(db, event.provider, event.reference)
                if txn is not None:
                    return txn
        if event.transaction_id is None:
            return None
        # Echoed transaction id: only trusted when the event's reference belongs to that row
        txn = await TransactionRepository.get(db, event.transaction_id)
        if txn is None or txn.provider != event.provider:
            return None
        metadata = txn.provider_metadata or {}
        known = {txn.provider_reference, metadata.get("checkout_session_id"), metadata.get("charge_reference")}
        if event.reference and event.reference in known:
            return txn
        if event.provider == "paystack" and event.reference == f"{REFERENCE_PREFIX}{txn.id}":
            return txn
        return None

    async def _query_provider(self, gateway: PaymentGateway, txn: Transaction,
                              reference: str | None = None) -> VerificationResult:
        reference = reference or txn.provider_reference
        if not reference:
            raise ValidationError("Transaction has no provider reference yet", transaction_id=txn.id)
        result = await gateway.verify(reference)

        # A hosted Stripe checkout pays through its own PaymentIntent
        session_id = (txn.provider_metadata or {}).get("checkout_session_id")
        if not result.verified and session_id and reference != session_id:
            session_result = await gateway.verify(session_id)
            if session_result.outcome in (PaymentOutcome.SUCCEEDED, PaymentOutcome.PROCESSING):
                return session_result
        return result

    @staticmethod
    def _mismatch(txn: Transaction, result: VerificationResult) -> str | None:
        if result.currency and result.currency.upper() != txn.currency.upper():
            return f"Currency mismatch: expected {txn.currency}, provider reported {result.currency}"
        if result.amount is not None and result.amount < txn.amount:
            return f"Amount mismatch: expected {txn.amount}, provider reported {result.amount}"
        return None
