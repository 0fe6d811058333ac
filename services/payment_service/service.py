from dataclasses import dataclass, field
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog_service.service import CatalogLookup
from services.fulfillment_service.models import UserSubscription
from services.fulfillment_service.repository import EnrollmentRepository, SubscriptionRepository
from services.order_service.service import OrderService
from shared.errors import (
    AlreadyEnrolled,
    DomainError,
    NotFoundError,
    PermissionDenied,
    ProductNotAvailable,
    SubscriptionAlreadyActive,
    ValidationError,
)

from .models import Transaction
from .reconciliation import ReconciliationEngine
from .repository import TransactionRepository
from .schemas import (
    CourseTarget,
    OrderTarget,
    PaymentInitialize,
    PaymentInitResponse,
    SubscriptionTarget,
    TierTarget,
)

logger = structlog.get_logger(__name__)


@dataclass
class Payable:
    """What a payment target resolves to before any money moves."""
    target_type: str
    amount: Decimal
    currency: str
    description: str
    course_id: int | None = None
    order_id: int | None = None
    subscription_id: int | None = None


@dataclass
class FreeGrant:
    """Stands in for a transaction row on the zero-amount path."""
    user_id: int
    target_type: str
    amount: Decimal
    currency: str
    course_id: int | None = None
    order_id: int | None = None
    subscription_id: int | None = None
    id: int | None = None
    provider: str = "none"
    provider_reference: str | None = None
    provider_metadata: dict = field(default_factory=dict)


class PaymentService:

    def __init__(self, catalog: CatalogLookup, engine: ReconciliationEngine):
        self.catalog = catalog
        self.engine = engine

    async def initialize(self, db: AsyncSession, user, data: PaymentInitialize) -> PaymentInitResponse:
        match data.target:
            case CourseTarget(id=course_id):
                payable = await self._course(db, user.id, course_id)
            case OrderTarget(id=order_id):
                payable = await self._order(db, user.id, order_id)
            case SubscriptionTarget(id=subscription_id):
                payable = await self._subscription(db, user.id, subscription_id)
            case TierTarget(id=tier_id):
                payable = await self._tier(db, user.id, tier_id)

        if data.currency and data.currency.upper() != payable.currency:
            raise ValidationError(
                f"This item is priced in {payable.currency}", requested=data.currency.upper(), currency=payable.currency
            )

        email = data.email or user.email
        if payable.amount == 0:
            return await self._fulfill_free(db, user.id, email, payable)
        return await self._start_payment(db, user.id, email, payable, data.provider)

    async def _start_payment(self, db: AsyncSession, user_id: int, email: str | None,
                             payable: Payable, requested: str | None) -> PaymentInitResponse:
        gateway = await self.engine.registry.resolve(db, payable.currency, requested)

        metadata = {"customer_email": email, "target_type": payable.target_type}
        txn = Transaction(
            user_id=user_id,
            target_type=payable.target_type,
            course_id=payable.course_id,
            order_id=payable.order_id,
            subscription_id=payable.subscription_id,
            amount=payable.amount,
            currency=payable.currency,
            provider=gateway.name,
            status="pending",
            provider_metadata=metadata,
        )
        await TransactionRepository.add(db, txn)
        await db.commit()

        try:
            intent = await gateway.create_payment_intent(
                payable.amount,
                payable.currency,
                {
                    "userId": user_id,
                    "courseId": payable.course_id,
                    "orderId": payable.order_id,
                    "subscriptionId": payable.subscription_id,
                },
                transaction_id=txn.id,
                customer_email=email,
                description=payable.description,
            )
        except DomainError as e:
            # No provider reference exists, so nothing could ever reconcile this row
            await TransactionRepository.cancel(db, txn.id)
            await db.commit()
            logger.warning("payment_initialization_failed", transaction_id=txn.id, provider=gateway.name, error=e.message)
            raise

        await TransactionRepository.set_reference(db, txn.id, intent.reference, {**metadata, **intent.metadata})
        await db.commit()

        logger.info(
            "payment_initialized",
            transaction_id=txn.id,
            provider=gateway.name,
            target_type=payable.target_type,
            amount=str(payable.amount),
            currency=payable.currency,
        )
        return PaymentInitResponse(
            transaction_id=txn.id,
            provider=gateway.name,
            reference=intent.reference,
            amount=payable.amount,
            currency=payable.currency,
            client_secret=intent.client_secret,
            authorization_url=intent.authorization_url,
            access_code=intent.access_code,
            public_key=gateway.public_key,
            subscription_id=payable.subscription_id,
            order_id=payable.order_id,
        )

    async def _fulfill_free(self, db: AsyncSession, user_id: int, email: str | None,
                            payable: Payable) -> PaymentInitResponse:
        grant = FreeGrant(
            user_id=user_id,
            target_type=payable.target_type,
            amount=payable.amount,
            currency=payable.currency,
            course_id=payable.course_id,
            order_id=payable.order_id,
            subscription_id=payable.subscription_id,
            provider_metadata={"customer_email": email},
        )
        await self.engine.dispatch_free(db, grant)

        enrollment_id = None
        if payable.course_id is not None:
            enrollment = await EnrollmentRepository.get(db, user_id, payable.course_id)
            enrollment_id = enrollment.id if enrollment else None

        logger.info("free_access_granted", user_id=user_id, target_type=payable.target_type)
        return PaymentInitResponse(
            is_free=True,
            provider="none",
            amount=payable.amount,
            currency=payable.currency,
            enrollment_id=enrollment_id,
            subscription_id=payable.subscription_id,
            order_id=payable.order_id,
        )

    # --- Target resolution ---

    async def _course(self, db: AsyncSession, user_id: int, course_id: int) -> Payable:
        course = await self.catalog.get_course(db, course_id)
        if course is None:
            raise NotFoundError("Course not found", course_id=course_id)
        if not course.is_available:
            raise ProductNotAvailable("Course is not available for enrollment", course_id=course_id)

        enrollment = await EnrollmentRepository.get(db, user_id, course_id)
        if enrollment is not None and enrollment.status == "active":
            raise AlreadyEnrolled(course_id=course_id)
        if course.subscription_tier_id is not None:
            subscription = await SubscriptionRepository.get_active_for_user(db, user_id, course.subscription_tier_id)
            if subscription is not None:
                raise AlreadyEnrolled(
                    "You already have access to this course through your subscription", course_id=course_id
                )

        return Payable("course", course.price, course.currency, course.title, course_id=course_id)

    async def _order(self, db: AsyncSession, user_id: int, order_id: int) -> Payable:
        order = await OrderService.ensure_payable(db, order_id, user_id)
        return Payable(
            "order", order.total_amount, order.currency, f"Order {order.order_number}", order_id=order.id
        )

    async def _subscription(self, db: AsyncSession, user_id: int, subscription_id: int) -> Payable:
        subscription = await SubscriptionRepository.get(db, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=subscription_id)
        if subscription.user_id != user_id:
            raise PermissionDenied("Subscription does not belong to this user", subscription_id=subscription_id)
        if subscription.status == "active":
            raise SubscriptionAlreadyActive(subscription_id=subscription_id)
        if subscription.status != "pending":
            raise ValidationError("Subscription can no longer be paid", subscription_id=subscription_id)

        tier = await self.catalog.get_tier(db, subscription.tier_id)
        if tier is None or not tier.is_active:
            raise ValidationError("Subscription tier is not available", tier_id=subscription.tier_id)
        return Payable(
            "subscription", tier.price, tier.currency, f"{tier.name} subscription", subscription_id=subscription.id
        )

    async def _tier(self, db: AsyncSession, user_id: int, tier_id: int) -> Payable:
        tier = await self.catalog.get_tier(db, tier_id)
        if tier is None:
            raise NotFoundError("Subscription tier not found", tier_id=tier_id)
        if not tier.is_active:
            raise ValidationError("Subscription tier is not available", tier_id=tier_id)
        if await SubscriptionRepository.get_active_for_user(db, user_id) is not None:
            raise SubscriptionAlreadyActive(tier_id=tier_id)

        # An abandoned checkout for the same tier is paid again, not duplicated
        subscription = await SubscriptionRepository.get_pending_for_user(db, user_id, tier_id)
        if subscription is None:
            subscription = await SubscriptionRepository.add(db, UserSubscription(
                user_id=user_id,
                tier_id=tier_id,
                status="pending",
                currency=tier.currency,
            ))
            await db.commit()
        return await self._subscription(db, user_id, subscription.id)

    # --- Reads ---

    @staticmethod
    async def get_transaction(db: AsyncSession, transaction_id: int, user) -> Transaction:
        txn = await TransactionRepository.get(db, transaction_id)
        if txn is None or (not user.is_admin and txn.user_id != user.id):
            raise NotFoundError("Transaction not found", transaction_id=transaction_id)
        return txn

    @staticmethod
    async def list_transactions(db: AsyncSession, user_id: int, status: str | None = None,
                                limit: int = 20, offset: int = 0):
        return await TransactionRepository.list_for_user(db, user_id, status, limit, offset)
