import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import STRIPE_WEBHOOK_SECRET, VALID_SIGNATURE, stripe_signature, webhook_body
from services.cart_service.repository import CartRepository
from services.catalog_service.models import Product
from services.fulfillment_service.models import Enrollment, OutboundTask, UserSubscription
from services.order_service.models import Order
from services.order_service.schemas import OrderCreate
from services.order_service.service import OrderFactory, OrderService
from services.payment_service.gateways.base import PaymentOutcome, ProviderCredentials
from services.payment_service.gateways.stripe_gateway import StripeGateway
from services.payment_service.models import PaymentWebhookEvent, Transaction
from services.payment_service.providers import GatewayRegistry
from services.payment_service.reconciliation import ReconciliationEngine
from services.payment_service.repository import TransactionRepository
from services.payment_service.schemas import CourseTarget, OrderTarget, PaymentInitialize, TierTarget
from shared.errors import (
    AlreadyEnrolled,
    InvalidStatusTransition,
    NotFoundError,
    ProviderError,
    ProviderUnavailable,
    SignatureInvalid,
    SubscriptionAlreadyActive,
    TransactionNotRefundable,
)
from shared.security.dependencies import CurrentUser

USER = CurrentUser(id=1, email="learner@example.com")


async def count(session_factory, model, *filters) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(model).where(*filters))


async def task_kinds(session_factory, channel="notification") -> list[str]:
    async with session_factory() as db:
        rows = await db.execute(select(OutboundTask.kind).where(OutboundTask.channel == channel).order_by(OutboundTask.id))
        return list(rows.scalars())


async def load(session_factory, model, row_id):
    async with session_factory() as db:
        return (await db.execute(select(model).where(model.id == row_id))).scalars().one()


@pytest.fixture
def pay(payments, session_factory):
    async def _pay(target, user=USER, **options):
        async with session_factory() as db:
            return await payments.initialize(db, user, PaymentInitialize(target=target, **options))
    return _pay


@pytest.fixture
def verify(reconciler, session_factory):
    async def _verify(transaction_id, user=USER):
        async with session_factory() as db:
            return await reconciler.verify_transaction(db, transaction_id, user)
    return _verify


@pytest.fixture
def deliver(reconciler, session_factory):
    async def _deliver(body, provider="stripe", signature=VALID_SIGNATURE):
        async with session_factory() as db:
            return await reconciler.handle_webhook(db, provider, body, signature)
    return _deliver


class TestInitialize:

    @pytest.mark.asyncio
    async def test_course_payment_creates_pending_transaction(self, pay, seed, stripe_gateway, session_factory):
        course = await seed.course(price="49.00")
        response = await pay(CourseTarget(id=course.id))

        assert response.provider == "stripe"
        assert response.reference == f"stripe_ref_{response.transaction_id}"
        assert response.client_secret
        assert response.amount == Decimal("49.00")
        txn = await load(session_factory, Transaction, response.transaction_id)
        assert (txn.status, txn.target_type, txn.course_id) == ("pending", "course", course.id)
        assert txn.provider_metadata["customer_email"] == "learner@example.com"
        assert len(stripe_gateway.created) == 1

    @pytest.mark.asyncio
    async def test_designated_currency_goes_to_paystack(self, pay, seed):
        course = await seed.course(price="5000.00", currency="NGN")
        response = await pay(CourseTarget(id=course.id))
        assert response.provider == "paystack"
        assert response.public_key == "pk_paystack"

    @pytest.mark.asyncio
    async def test_free_course_is_fulfilled_without_a_transaction(self, pay, seed, stripe_gateway, session_factory):
        course = await seed.course(price="0.00")
        response = await pay(CourseTarget(id=course.id))

        assert response.is_free
        assert response.provider == "none"
        assert response.enrollment_id is not None
        assert await count(session_factory, Transaction) == 0
        assert await count(session_factory, Enrollment, Enrollment.course_id == course.id) == 1
        assert stripe_gateway.created == []
        assert "course_enrollment" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_already_enrolled_rejected(self, pay, seed):
        course = await seed.course(price="0.00")
        await pay(CourseTarget(id=course.id))
        with pytest.raises(AlreadyEnrolled):
            await pay(CourseTarget(id=course.id))

    @pytest.mark.asyncio
    async def test_subscription_access_counts_as_enrolled(self, pay, seed, session_factory):
        tier = await seed.tier()
        course = await seed.course(tier_id=tier.id)
        async with session_factory() as db:
            db.add(UserSubscription(user_id=USER.id, tier_id=tier.id, status="active"))
            await db.commit()

        with pytest.raises(AlreadyEnrolled):
            await pay(CourseTarget(id=course.id))

    @pytest.mark.asyncio
    async def test_provider_failure_cancels_the_attempt(self, pay, seed, stripe_gateway, session_factory):
        stripe_gateway.create_error = ProviderError("card network down")
        course = await seed.course()
        with pytest.raises(ProviderError):
            await pay(CourseTarget(id=course.id))

        async with session_factory() as db:
            txn = (await db.execute(select(Transaction))).scalars().one()
        assert txn.status == "cancelled"


class TestVerification:

    @pytest.mark.asyncio
    async def test_success_completes_and_enrolls_once(self, pay, verify, seed, stripe_gateway, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("49.00"), "USD", charge="pi_charge")

        first = await verify(init.transaction_id)
        second = await verify(init.transaction_id)

        assert first.success and not first.already_processed
        assert second.success and second.already_processed
        txn = await load(session_factory, Transaction, init.transaction_id)
        assert txn.status == "completed"
        assert txn.fulfilled_at is not None
        assert txn.provider_metadata["charge_reference"] == "pi_charge"
        assert await count(session_factory, Enrollment) == 1
        assert (await task_kinds(session_factory)).count("payment_success") == 1

    @pytest.mark.asyncio
    async def test_pending_stays_pending(self, pay, verify, seed, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))

        outcome = await verify(init.transaction_id)

        assert not outcome.success
        assert outcome.status == "pending"
        assert await count(session_factory, Enrollment) == 0

    @pytest.mark.asyncio
    async def test_processing_is_recorded(self, pay, verify, seed, stripe_gateway):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.PROCESSING)

        assert (await verify(init.transaction_id)).status == "processing"

    @pytest.mark.asyncio
    async def test_unreachable_provider_leaves_transaction_pending(self, pay, verify, seed, stripe_gateway,
                                                                  session_factory, monkeypatch):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))

        async def unreachable(reference):
            raise ProviderUnavailable(provider="stripe")
        monkeypatch.setattr(stripe_gateway, "verify", unreachable)

        with pytest.raises(ProviderUnavailable):
            await verify(init.transaction_id)
        assert (await load(session_factory, Transaction, init.transaction_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_reported_failure_fails_and_notifies(self, pay, verify, seed, stripe_gateway, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.FAILED)

        outcome = await verify(init.transaction_id)

        assert outcome.status == "failed"
        assert outcome.message == "declined"
        assert await task_kinds(session_factory) == ["payment_failed"]

    @pytest.mark.asyncio
    async def test_underpayment_is_a_failure(self, pay, verify, seed, stripe_gateway, session_factory):
        course = await seed.course(price="49.00")
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("4.90"), "USD")

        outcome = await verify(init.transaction_id)

        assert outcome.status == "failed"
        assert await count(session_factory, Enrollment) == 0
        assert "payment_needs_review" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_currency_mismatch_is_a_failure(self, pay, verify, seed, stripe_gateway):
        course = await seed.course(price="49.00")
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("49.00"), "EUR")

        assert (await verify(init.transaction_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_other_users_transaction_is_hidden(self, pay, reconciler, seed, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await reconciler.verify_transaction(db, init.transaction_id, CurrentUser(id=99))

    @pytest.mark.asyncio
    async def test_unfinished_fulfillment_is_picked_up_again(self, pay, verify, seed, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        # Completed, but the process died before fulfillment committed
        async with session_factory() as db:
            await TransactionRepository.complete(db, init.transaction_id, datetime.now(timezone.utc))
            await db.commit()

        outcome = await verify(init.transaction_id)

        assert outcome.already_processed
        assert await count(session_factory, Enrollment) == 1

    @pytest.mark.asyncio
    async def test_fulfillment_claimed_elsewhere_is_not_repeated(self, pay, reconciler, seed, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        async with session_factory() as db:
            await TransactionRepository.complete(db, init.transaction_id, datetime.now(timezone.utc))
            await db.commit()

        async with session_factory() as db:
            stale = await TransactionRepository.get(db, init.transaction_id)
            assert stale.fulfilled_at is None
            # Another worker claims fulfillment after this session read the row
            async with session_factory() as other:
                assert await TransactionRepository.claim_fulfillment(
                    other, init.transaction_id, datetime.now(timezone.utc)
                )
                await other.commit()

            outcome = await reconciler.reconcile(db, stale, source="verify")

        assert outcome.success and outcome.already_processed
        assert outcome.transaction_id == init.transaction_id
        assert await count(session_factory, Enrollment) == 0

    @pytest.mark.asyncio
    async def test_unknown_reference_queries_provider(self, reconciler, stripe_gateway, session_factory):
        stripe_gateway.settle("pi_orphan", PaymentOutcome.SUCCEEDED)
        async with session_factory() as db:
            outcome = await reconciler.verify_by_reference(db, "pi_orphan", "stripe")

        assert outcome.success
        assert outcome.transaction_id is None
        assert stripe_gateway.verify_calls == ["pi_orphan"]


class TestConcurrentTriggers:

    @pytest.mark.asyncio
    async def test_verify_and_webhook_race_fulfills_once(self, pay, verify, deliver, seed, stripe_gateway,
                                                        session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("49.00"), "USD")

        results = await asyncio.gather(
            verify(init.transaction_id),
            deliver(webhook_body("evt_1", init.reference)),
            verify(init.transaction_id),
            deliver(webhook_body("evt_2", init.reference)),
        )

        assert results[0].status == "completed"
        assert await count(session_factory, Enrollment) == 1
        assert (await task_kinds(session_factory)).count("course_enrollment") == 1

    @pytest.mark.asyncio
    async def test_duplicate_webhook_acknowledged_without_reprocessing(self, pay, deliver, seed, stripe_gateway,
                                                                       session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED)

        first = await deliver(webhook_body("evt_1", init.reference))
        second = await deliver(webhook_body("evt_1", init.reference))

        assert first == "completed"
        assert second == "duplicate"
        assert stripe_gateway.verify_calls == [init.reference]
        assert await count(session_factory, Enrollment) == 1
        assert await count(session_factory, PaymentWebhookEvent, PaymentWebhookEvent.processed.is_(True)) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_and_not_recorded(self, deliver, session_factory):
        with pytest.raises(SignatureInvalid):
            await deliver(webhook_body("evt_1", "stripe_ref_1"), signature="forged")
        assert await count(session_factory, PaymentWebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_reference_is_acknowledged(self, deliver, stripe_gateway):
        assert await deliver(webhook_body("evt_9", "pi_unknown")) == "unmatched"
        assert stripe_gateway.verify_calls == ["pi_unknown"]

    @pytest.mark.asyncio
    async def test_failed_processing_is_retried_on_redelivery(self, pay, deliver, seed, stripe_gateway,
                                                              session_factory, monkeypatch):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        original_verify = stripe_gateway.verify

        async def unreachable(reference):
            raise ProviderUnavailable(provider="stripe")
        monkeypatch.setattr(stripe_gateway, "verify", unreachable)
        with pytest.raises(ProviderUnavailable):
            await deliver(webhook_body("evt_1", init.reference))

        monkeypatch.setattr(stripe_gateway, "verify", original_verify)
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED)
        assert await deliver(webhook_body("evt_1", init.reference)) == "completed"
        assert await count(session_factory, Enrollment) == 1


class TestOrderPayments:

    async def _order(self, seed, session_factory, catalog, stock=5, quantity=2, data=None):
        product = await seed.product(price="10.00", stock=stock)
        cart_id = await seed.cart(USER.id, (product, quantity))
        async with session_factory() as db:
            order = await OrderFactory(catalog).create_from_cart(db, cart_id, USER.id, data or OrderCreate())
        return order, product, cart_id

    @pytest.mark.asyncio
    async def test_paid_order_cascades_and_purges_cart(self, pay, verify, seed, catalog, stripe_gateway,
                                                       session_factory):
        order, _, cart_id = await self._order(seed, session_factory, catalog)
        init = await pay(OrderTarget(id=order.id))
        assert init.amount == Decimal("20.00")
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("20.00"), "USD")

        await verify(init.transaction_id)

        paid = await load(session_factory, Order, order.id)
        assert (paid.status, paid.payment_status) == ("paid", "paid")
        async with session_factory() as db:
            assert (await CartRepository.get_cart(db, cart_id)).items == []
        assert "order_paid" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_failed_payment_restores_stock(self, pay, verify, seed, catalog, stripe_gateway, session_factory):
        order, product, cart_id = await self._order(seed, session_factory, catalog)
        init = await pay(OrderTarget(id=order.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.FAILED)

        await verify(init.transaction_id)

        failed = await load(session_factory, Order, order.id)
        assert (failed.status, failed.payment_status) == ("failed", "failed")
        assert failed.stock_released_at is not None
        assert (await load(session_factory, Product, product.id)).stock_quantity == 5
        async with session_factory() as db:
            assert len((await CartRepository.get_cart(db, cart_id)).items) == 1

    @pytest.mark.asyncio
    async def test_failure_waits_for_other_live_attempts(self, pay, verify, seed, catalog, stripe_gateway,
                                                         session_factory):
        order, product, _ = await self._order(seed, session_factory, catalog)
        first = await pay(OrderTarget(id=order.id))
        await pay(OrderTarget(id=order.id))
        stripe_gateway.settle(first.reference, PaymentOutcome.FAILED)

        await verify(first.transaction_id)

        still_open = await load(session_factory, Order, order.id)
        assert still_open.payment_status == "pending"
        assert (await load(session_factory, Product, product.id)).stock_quantity == 3

    @pytest.mark.asyncio
    async def test_late_success_on_cancelled_order_needs_review(self, pay, verify, seed, catalog, stripe_gateway,
                                                                session_factory):
        order, _, _ = await self._order(seed, session_factory, catalog)
        init = await pay(OrderTarget(id=order.id))
        async with session_factory() as db:
            await OrderService.cancel_order(db, order.id)
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("20.00"), "USD")

        outcome = await verify(init.transaction_id)

        assert outcome.status == "cancelled"
        assert (await load(session_factory, Order, order.id)).status == "cancelled"
        assert "payment_needs_review" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_cancelled_order_cannot_be_marked_paid(self, seed, catalog, session_factory):
        order, _, _ = await self._order(seed, session_factory, catalog)
        async with session_factory() as db:
            await OrderService.cancel_order(db, order.id)

        async with session_factory() as db:
            with pytest.raises(InvalidStatusTransition):
                await OrderService.mark_paid(db, order.id)

        cancelled = await load(session_factory, Order, order.id)
        assert (cancelled.status, cancelled.payment_status) == ("cancelled", "pending")

    @pytest.mark.asyncio
    async def test_payment_landing_on_cancelled_order_is_flagged(self, dispatcher, seed, catalog, session_factory):
        order, _, _ = await self._order(seed, session_factory, catalog)
        async with session_factory() as db:
            await OrderService.cancel_order(db, order.id)
            # A completed charge that cancel_order had no open attempt for
            txn = await TransactionRepository.add(db, Transaction(
                user_id=USER.id, target_type="order", order_id=order.id, amount=Decimal("20.00"),
                currency="USD", provider="stripe", status="completed", provider_reference="pi_late",
            ))
            result = await dispatcher.dispatch(db, txn)
            await db.commit()

        assert result.detail == "needs_review"
        assert (await load(session_factory, Order, order.id)).payment_status == "pending"
        assert "payment_needs_review" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_fully_discounted_order_is_paid_without_a_transaction(self, pay, seed, catalog, stripe_gateway,
                                                                        session_factory):
        order, _, cart_id = await self._order(
            seed, session_factory, catalog, data=OrderCreate(discount_amount=Decimal("20.00"))
        )
        assert order.total_amount == Decimal("0.00")

        response = await pay(OrderTarget(id=order.id))

        assert response.is_free
        assert response.provider == "none"
        assert response.order_id == order.id
        paid = await load(session_factory, Order, order.id)
        assert (paid.status, paid.payment_status) == ("paid", "paid")
        assert await count(session_factory, Transaction) == 0
        assert stripe_gateway.created == []
        async with session_factory() as db:
            assert (await CartRepository.get_cart(db, cart_id)).items == []
        assert "order_paid" in await task_kinds(session_factory)


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_tier_payment_activates_subscription(self, pay, verify, seed, stripe_gateway, session_factory):
        tier = await seed.tier(price="15.00", months=3)
        init = await pay(TierTarget(id=tier.id))
        assert init.subscription_id is not None
        assert (await load(session_factory, UserSubscription, init.subscription_id)).status == "pending"

        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("15.00"), "USD")
        await verify(init.transaction_id)

        subscription = await load(session_factory, UserSubscription, init.subscription_id)
        assert subscription.status == "active"
        assert subscription.amount_paid == Decimal("15.00")
        assert subscription.expires_at is not None
        assert "subscription_activated" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_abandoned_checkout_reuses_pending_subscription(self, pay, seed, session_factory):
        tier = await seed.tier(price="15.00")

        first = await pay(TierTarget(id=tier.id))
        second = await pay(TierTarget(id=tier.id))

        assert second.subscription_id == first.subscription_id
        assert second.transaction_id != first.transaction_id
        assert await count(session_factory, UserSubscription) == 1

    @pytest.mark.asyncio
    async def test_other_tier_gets_its_own_pending_subscription(self, pay, seed, session_factory):
        pro = await seed.tier(price="15.00")
        team = await seed.tier(price="40.00", name="Team")

        first = await pay(TierTarget(id=pro.id))
        second = await pay(TierTarget(id=team.id))

        assert second.subscription_id != first.subscription_id
        assert await count(session_factory, UserSubscription, UserSubscription.status == "pending") == 2

    @pytest.mark.asyncio
    async def test_second_subscription_rejected(self, pay, seed):
        tier = await seed.tier(price="0.00")
        await pay(TierTarget(id=tier.id))
        with pytest.raises(SubscriptionAlreadyActive):
            await pay(TierTarget(id=tier.id))


class TestRefunds:

    async def _paid_course(self, pay, verify, seed, stripe_gateway):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        stripe_gateway.settle(init.reference, PaymentOutcome.SUCCEEDED, Decimal("49.00"), "USD", charge="pi_charge")
        await verify(init.transaction_id)
        return init

    @pytest.mark.asyncio
    async def test_refund_revokes_enrollment(self, pay, verify, reconciler, seed, stripe_gateway, session_factory):
        init = await self._paid_course(pay, verify, seed, stripe_gateway)

        async with session_factory() as db:
            outcome = await reconciler.refund(db, init.transaction_id, "requested by learner")

        assert outcome.status == "refunded"
        assert stripe_gateway.refunds == ["pi_charge"]
        async with session_factory() as db:
            enrollment = (await db.execute(select(Enrollment))).scalars().one()
        assert enrollment.status == "suspended"
        assert "refund_processed" in await task_kinds(session_factory)

    @pytest.mark.asyncio
    async def test_pending_transaction_not_refundable(self, pay, reconciler, seed, session_factory):
        course = await seed.course()
        init = await pay(CourseTarget(id=course.id))
        async with session_factory() as db:
            with pytest.raises(TransactionNotRefundable):
                await reconciler.refund(db, init.transaction_id)

    @pytest.mark.asyncio
    async def test_refund_webhook_skips_provider_call(self, pay, verify, deliver, seed, stripe_gateway,
                                                      session_factory):
        init = await self._paid_course(pay, verify, seed, stripe_gateway)

        status = await deliver(webhook_body("evt_refund", init.reference, kind="refund", event_type="charge.refunded"))

        assert status == "refunded"
        assert stripe_gateway.refunds == []
        assert (await load(session_factory, Transaction, init.transaction_id)).status == "refunded"

    @pytest.mark.asyncio
    async def test_refund_webhook_matches_the_settling_charge(self, pay, verify, deliver, seed, stripe_gateway,
                                                              session_factory):
        init = await self._paid_course(pay, verify, seed, stripe_gateway)

        status = await deliver(webhook_body("evt_refund", "pi_charge", kind="refund", event_type="charge.refunded"))

        assert status == "refunded"
        assert (await load(session_factory, Transaction, init.transaction_id)).status == "refunded"

    @pytest.mark.asyncio
    async def test_signed_stripe_refund_of_hosted_checkout(self, pay, verify, dispatcher, seed, stripe_gateway,
                                                           session_factory):
        init = await self._paid_course(pay, verify, seed, stripe_gateway)
        signed_gateway = StripeGateway(
            ProviderCredentials(name="stripe", secret_key="sk_test_stripe", webhook_secret=STRIPE_WEBHOOK_SECRET),
            max_attempts=1,
            backoff=0,
        )
        engine = ReconciliationEngine(GatewayRegistry(gateways={"stripe": signed_gateway}), dispatcher)
        # The refunded charge belongs to the checkout's PaymentIntent, not the stored reference
        payload = json.dumps({
            "id": "evt_refund",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_charge", "metadata": {}}},
        }).encode()

        async with session_factory() as db:
            status = await engine.handle_webhook(db, "stripe", payload, stripe_signature(payload))

        assert status == "refunded"
        assert (await load(session_factory, Transaction, init.transaction_id)).status == "refunded"
        async with session_factory() as db:
            enrollment = (await db.execute(select(Enrollment))).scalars().one()
        assert enrollment.status == "suspended"
