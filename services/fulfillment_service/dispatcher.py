"""
Fulfillment dispatcher: the business consequence of a payment.

Every action is idempotent on its own (existence check or compare-and-set)
so running it twice for the same transaction changes nothing the second
time. Side-channel tasks are only enqueued when the action was actually
applied. Nothing here commits; the reconciliation engine owns the
database transaction.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from services.cart_service.repository import CartRepository
from services.catalog_service.service import CatalogLookup
from services.order_service.repository import OrderRepository
from services.order_service.service import OrderService
from shared.errors import InvalidStatusTransition
from shared.observability import academy_fulfillment_total

from .models import Enrollment
from .repository import EnrollmentRepository, OutboundTaskRepository, SubscriptionRepository

logger = structlog.get_logger(__name__)

DAYS_PER_BILLING_MONTH = 30


@dataclass(frozen=True)
class FulfillmentResult:
    kind: str
    applied: bool
    detail: str | None = None


class FulfillmentDispatcher:

    def __init__(self, catalog: CatalogLookup):
        self.catalog = catalog

    async def dispatch(self, db: AsyncSession, txn) -> FulfillmentResult:
        match txn.target_type:
            case "course":
                result = await self.grant_enrollment(db, txn)
            case "order":
                result = await self.mark_order_paid(db, txn)
            case "subscription":
                result = await self.activate_subscription(db, txn)
            case _:
                raise ValueError(f"Unknown transaction target: {txn.target_type}")

        if result.applied:
            academy_fulfillment_total.labels(kind=result.kind).inc()
            await self._notify(db, txn, "payment_success", {"amount": str(txn.amount), "currency": txn.currency})
        logger.info(
            "fulfillment_dispatched",
            transaction_id=txn.id,
            kind=result.kind,
            applied=result.applied,
            detail=result.detail,
        )
        return result

    async def grant_enrollment(self, db: AsyncSession, txn) -> FulfillmentResult:
        existing = await EnrollmentRepository.get(db, txn.user_id, txn.course_id)
        if existing is not None:
            if existing.status == "active":
                return FulfillmentResult("enrollment", False, "already_enrolled")
            # A refunded enrollment paid for again
            reactivated = await EnrollmentRepository.set_status(
                db, txn.user_id, txn.course_id, "active", from_status=existing.status
            )
            if not reactivated:
                return FulfillmentResult("enrollment", False, "already_enrolled")
        else:
            await EnrollmentRepository.add(db, Enrollment(
                user_id=txn.user_id,
                course_id=txn.course_id,
                status="active",
                transaction_id=txn.id,
            ))

        course = await self.catalog.get_course(db, txn.course_id)
        await self._notify(db, txn, "course_enrollment", {
            "course_id": txn.course_id,
            "course_title": course.title if course else None,
        })
        return FulfillmentResult("enrollment", True)

    async def mark_order_paid(self, db: AsyncSession, txn) -> FulfillmentResult:
        try:
            applied = await OrderService.mark_paid(db, txn.order_id)
        except InvalidStatusTransition as e:
            # Money arrived for an order that can no longer take it
            await self.flag_for_review(db, txn, e.message)
            return FulfillmentResult("order", False, "needs_review")
        if not applied:
            return FulfillmentResult("order", False, "already_paid")

        order = await OrderRepository.get_order(db, txn.order_id)
        purged = await CartRepository.remove_products_for_user(
            db, order.user_id, [item.product_id for item in order.items]
        )
        await self._notify(db, txn, "order_paid", {
            "order_id": order.id,
            "order_number": order.order_number,
            "total": str(order.total_amount),
            "currency": order.currency,
        })
        return FulfillmentResult("order", True, f"cart_items_removed={purged}")

    async def activate_subscription(self, db: AsyncSession, txn) -> FulfillmentResult:
        subscription = await SubscriptionRepository.get(db, txn.subscription_id)
        if subscription is None:
            await self.flag_for_review(db, txn, "Subscription no longer exists")
            return FulfillmentResult("subscription", False, "needs_review")

        tier = await self.catalog.get_tier(db, subscription.tier_id)
        months = tier.billing_cycle_months if tier else 1
        now = datetime.now(timezone.utc)
        activated = await SubscriptionRepository.activate(db, subscription.id, {
            "started_at": now,
            "expires_at": now + timedelta(days=DAYS_PER_BILLING_MONTH * months),
            "amount_paid": txn.amount,
            "currency": txn.currency,
            "payment_provider": txn.provider,
            "transaction_reference": txn.provider_reference,
        })
        if not activated:
            return FulfillmentResult("subscription", False, "already_active")

        await self._notify(db, txn, "subscription_activated", {
            "subscription_id": subscription.id,
            "tier_id": subscription.tier_id,
            "tier_name": tier.name if tier else None,
        })
        return FulfillmentResult("subscription", True)

    async def handle_failure(self, db: AsyncSession, txn, reason: str | None) -> None:
        if txn.target_type == "order":
            await OrderService.fail_payment(db, txn.order_id, txn.id)
        await self._notify(db, txn, "payment_failed", {"reason": reason, "amount": str(txn.amount)})

    async def revoke(self, db: AsyncSession, txn, reason: str | None) -> None:
        """Undoes the fulfillment of a refunded transaction."""
        match txn.target_type:
            case "course":
                await EnrollmentRepository.set_status(db, txn.user_id, txn.course_id, "suspended", from_status="active")
            case "subscription":
                await SubscriptionRepository.cancel(db, txn.subscription_id)
            case "order":
                await OrderService.mark_refunded(db, txn.order_id)
        await self._notify(db, txn, "refund_processed", {"reason": reason, "amount": str(txn.amount)})
        logger.info("fulfillment_revoked", transaction_id=txn.id, target_type=txn.target_type)

    async def flag_for_review(self, db: AsyncSession, txn, reason: str) -> None:
        logger.warning("payment_needs_review", transaction_id=txn.id, reason=reason)
        await OutboundTaskRepository.enqueue(db, "notification", "payment_needs_review", None, {
            "transaction_id": txn.id,
            "user_id": txn.user_id,
            "reference": txn.provider_reference,
            "reason": reason,
        })

    async def _notify(self, db: AsyncSession, txn, kind: str, payload: dict) -> None:
        payload = {"transaction_id": txn.id, **payload}
        await OutboundTaskRepository.enqueue(db, "notification", kind, txn.user_id, payload)
        email = (txn.provider_metadata or {}).get("customer_email")
        await OutboundTaskRepository.enqueue(db, "email", kind, txn.user_id, {**payload, "to": email})
