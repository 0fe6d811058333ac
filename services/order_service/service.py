import secrets
import string
import time
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.cart_service.repository import CartRepository
from services.catalog_service.repository import ProductRepository
from services.catalog_service.service import CatalogLookup
from services.payment_service.repository import TransactionRepository
from shared.config.settings import DEFAULT_CURRENCY, ORDER_NUMBER_PREFIX
from shared.errors import (
    ConflictError,
    EmptyCart,
    InsufficientStock,
    NotFoundError,
    OrderAlreadyPaid,
    OrderNotPayable,
    PermissionDenied,
    ProductNotAvailable,
    ValidationError,
)
from shared.observability import (
    academy_checkout_duration_seconds,
    academy_checkout_total,
    academy_stock_compensation_total,
)

from .models import Order, OrderItem
from .repository import OrderRepository
from .schemas import FulfillmentUpdate, OrderCreate, OrderStatistics
from .status import OrderState, apply_fulfillment_status, apply_payment_status, apply_status

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 5
CAS_ATTEMPTS = 3
CENTS = Decimal("0.01")

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number(prefix: str = ORDER_NUMBER_PREFIX) -> str:
    """ORD-<last 8 digits of epoch millis>-<4 random base36 chars>."""
    millis = str(int(time.time() * 1000))[-8:]
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{prefix}-{millis}-{suffix}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderFactory:
    """Turns a cart into an order. The cart itself is left untouched."""

    def __init__(self, catalog: CatalogLookup, number_generator=generate_order_number):
        self.catalog = catalog
        self.number_generator = number_generator

    async def create_from_cart(self, db: AsyncSession, cart_id: int, user_id: int, data: OrderCreate) -> Order:
        started = time.perf_counter()
        try:
            order = await self._create(db, cart_id, user_id, data)
        except EmptyCart:
            academy_checkout_total.labels(status="empty_cart").inc()
            raise
        except InsufficientStock:
            academy_checkout_total.labels(status="insufficient_stock").inc()
            raise
        except Exception:
            academy_checkout_total.labels(status="error").inc()
            raise

        academy_checkout_total.labels(status="success").inc()
        academy_checkout_duration_seconds.observe(time.perf_counter() - started)
        return order

    async def _create(self, db: AsyncSession, cart_id: int, user_id: int, data: OrderCreate) -> Order:
        cart = await CartRepository.get_cart(db, cart_id)
        if not cart:
            raise NotFoundError("Cart not found", cart_id=cart_id)
        if cart.user_id != user_id:
            raise PermissionDenied("Cart does not belong to this user", cart_id=cart_id)
        # Plain tuples so nothing below depends on the ORM objects after a rollback
        lines = [(i.product_id, i.quantity, Decimal(i.price_at_addition), i.currency) for i in cart.items]
        if not lines:
            raise EmptyCart(cart_id=cart_id)

        currencies = {currency.upper() for _, _, _, currency in lines}
        if len(currencies) > 1:
            raise ValidationError("Cart contains items in more than one currency", currencies=sorted(currencies))
        currency = currencies.pop()
        if data.currency and data.currency.upper() != currency:
            raise ValidationError(
                f"Cart is priced in {currency}, not {data.currency.upper()}",
                cart_currency=currency,
            )

        subtotal = sum((price * qty for _, qty, price, _ in lines), Decimal("0")).quantize(CENTS)
        total = (subtotal + data.tax_amount + data.shipping_amount - data.discount_amount).quantize(CENTS)
        if total < 0:
            raise ValidationError("Order total cannot be negative", subtotal=str(subtotal))

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order_number = self.number_generator()
            try:
                order_id = await self._insert(db, cart_id, user_id, data, lines, currency, subtotal, total, order_number)
                break
            except IntegrityError:
                await db.rollback()
                # Only the order number is unique in this transaction
                logger.warning("order_number_collision", order_number=order_number, attempt=attempt)
        else:
            raise ConflictError("Could not allocate an order number, try again")

        logger.info(
            "order_created",
            order_id=order_id,
            order_number=order_number,
            user_id=user_id,
            total=str(total),
            currency=currency,
        )
        return await OrderRepository.get_order(db, order_id)

    async def _insert(self, db, cart_id, user_id, data, lines, currency, subtotal, total, order_number) -> int:
        """
        One database transaction: order row, line snapshots and stock.
        Any failure rolls the whole thing back.
        """
        try:
            order = await OrderRepository.add_order(db, Order(
                order_number=order_number,
                user_id=user_id,
                cart_id=cart_id,
                subtotal=subtotal,
                tax_amount=data.tax_amount,
                shipping_amount=data.shipping_amount,
                discount_amount=data.discount_amount,
                total_amount=total,
                currency=currency,
                billing_address=data.billing_address.model_dump() if data.billing_address else None,
                shipping_address=data.shipping_address.model_dump() if data.shipping_address else None,
                customer_email=data.customer_email,
                customer_phone=data.customer_phone,
                customer_notes=data.customer_notes,
                payment_method=data.payment_method,
                status="pending",
                payment_status="pending",
                fulfillment_status="unfulfilled",
            ))

            products = await self.catalog.get_products(db, [product_id for product_id, _, _, _ in lines])
            for product_id, quantity, unit_price, _ in lines:
                product = products.get(product_id)
                if product is None or not product.is_available:
                    raise ProductNotAvailable(f"Product {product_id} is no longer available", product_id=product_id)

                # The authoritative stock check: the decrement itself
                if product.track_inventory:
                    if not await ProductRepository.reserve_stock(db, product_id, quantity):
                        raise InsufficientStock(
                            f"Insufficient stock for {product.name}",
                            product_id=product_id,
                            requested=quantity,
                        )
                else:
                    await ProductRepository.record_sale(db, product_id, quantity)

                await OrderRepository.add_item(db, OrderItem(
                    order_id=order.id,
                    product_id=product_id,
                    product_name=product.name,
                    product_sku=product.sku,
                    product_description=product.description,
                    unit_price=unit_price,
                    quantity=quantity,
                    total_price=(unit_price * quantity).quantize(CENTS),
                    track_inventory=product.track_inventory,
                ))

            order_id = order.id
            await db.commit()
            return order_id
        except IntegrityError:
            raise
        except Exception:
            await db.rollback()
            raise


class OrderService:

    @staticmethod
    def _check_access(order: Order, user) -> None:
        # user None means an internal caller
        if user is not None and not user.is_admin and order.user_id != user.id:
            raise NotFoundError("Order not found", order_id=order.id)

    @staticmethod
    async def get_order(db: AsyncSession, order_id: int, user=None) -> Order:
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found", order_id=order_id)
        OrderService._check_access(order, user)
        return order

    @staticmethod
    async def get_by_number(db: AsyncSession, order_number: str, user=None) -> Order:
        order = await OrderRepository.get_by_number(db, order_number)
        if not order:
            raise NotFoundError("Order not found", order_number=order_number)
        OrderService._check_access(order, user)
        return order

    @staticmethod
    async def list_orders(db: AsyncSession, user_id=None, status=None, payment_status=None,
                          fulfillment_status=None, limit: int = 20, offset: int = 0):
        return await OrderRepository.list_orders(
            db,
            user_id=user_id,
            status=status,
            payment_status=payment_status,
            fulfillment_status=fulfillment_status,
            limit=limit,
            offset=offset,
        )

    @staticmethod
    async def get_statistics(db: AsyncSession, user_id: int | None = None) -> OrderStatistics:
        by_status, paid_count, revenue = await OrderRepository.get_statistics(db, user_id)
        revenue = Decimal(revenue or 0).quantize(CENTS)
        average = (revenue / paid_count).quantize(CENTS) if paid_count else Decimal("0.00")
        return OrderStatistics(
            total_orders=sum(by_status.values()),
            by_status=by_status,
            paid_orders=paid_count,
            total_revenue=revenue,
            average_order_value=average,
        )

    @staticmethod
    async def transition(db: AsyncSession, order_id: int, apply, value: str, **values):
        """
        Applies a pure transition function to the current state and persists
        it with a compare-and-set, re-reading on a lost race. Does not commit.
        Returns (order, changed).
        """
        for _ in range(CAS_ATTEMPTS):
            order = await OrderRepository.get_order(db, order_id)
            if not order:
                raise NotFoundError("Order not found", order_id=order_id)
            current = OrderState.of(order)
            new = apply(current, value)
            if new == current:
                return order, False
            if await OrderRepository.compare_and_set(db, order_id, current, new, **values):
                return order, True
        raise ConflictError("Order was modified concurrently, try again", order_id=order_id)

    @staticmethod
    async def update_status(db: AsyncSession, order_id: int, status: str) -> Order:
        if status == "cancelled":
            return await OrderService.cancel_order(db, order_id)

        values = {}
        if status == "shipped":
            values["shipped_at"] = _utcnow()
        elif status == "delivered":
            values["delivered_at"] = _utcnow()
        _, changed = await OrderService.transition(db, order_id, apply_status, status, **values)
        await db.commit()
        if changed:
            logger.info("order_status_updated", order_id=order_id, status=status)
        return await OrderRepository.get_order(db, order_id)

    @staticmethod
    async def update_fulfillment(db: AsyncSession, order_id: int, data: FulfillmentUpdate) -> Order:
        values = {
            key: value
            for key, value in (
                ("tracking_number", data.tracking_number),
                ("tracking_url", data.tracking_url),
                ("carrier", data.carrier),
            )
            if value is not None
        }
        if data.fulfillment_status == "fulfilled":
            values["shipped_at"] = _utcnow()
        _, changed = await OrderService.transition(
            db, order_id, apply_fulfillment_status, data.fulfillment_status, **values
        )
        await db.commit()
        if changed:
            logger.info("order_fulfillment_updated", order_id=order_id, fulfillment_status=data.fulfillment_status)
        return await OrderRepository.get_order(db, order_id)

    @staticmethod
    async def ensure_payable(db: AsyncSession, order_id: int, user_id: int) -> Order:
        order = await OrderRepository.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found", order_id=order_id)
        if order.user_id != user_id:
            raise PermissionDenied("Order does not belong to this user", order_id=order_id)
        if order.payment_status == "paid":
            raise OrderAlreadyPaid(order_id=order_id)
        if order.status in ("cancelled", "failed") or order.payment_status != "pending":
            raise OrderNotPayable(order_id=order_id, status=order.status)
        return order

    # --- Payment-driven changes. None of these commit. ---

    @staticmethod
    async def mark_paid(db: AsyncSession, order_id: int) -> bool:
        """Raises InvalidStatusTransition when the order was cancelled or failed first."""
        _, changed = await OrderService.transition(
            db, order_id, apply_payment_status, "paid", paid_at=_utcnow()
        )
        return changed

    @staticmethod
    async def mark_refunded(db: AsyncSession, order_id: int) -> bool:
        _, changed = await OrderService.transition(db, order_id, apply_payment_status, "refunded")
        return changed

    @staticmethod
    async def fail_payment(db: AsyncSession, order_id: int, transaction_id: int | None = None) -> bool:
        """
        Marks the order's payment failed and gives its stock back, unless
        another live transaction for the order could still succeed.
        """
        if await TransactionRepository.count_live_for_order(db, order_id, exclude_id=transaction_id):
            logger.info("order_failure_deferred", order_id=order_id, transaction_id=transaction_id)
            return False
        order = await OrderRepository.get_order(db, order_id)
        if not order or order.payment_status != "pending":
            return False
        _, changed = await OrderService.transition(db, order_id, apply_payment_status, "failed")
        if changed:
            await OrderService.release_stock(db, order_id, reason="payment_failed")
        return changed

    @staticmethod
    async def release_stock(db: AsyncSession, order_id: int, reason: str) -> bool:
        """Gives reserved stock back at most once per order."""
        if not await OrderRepository.claim_stock_release(db, order_id, _utcnow()):
            return False
        order = await OrderRepository.get_order(db, order_id)
        for item in order.items:
            await ProductRepository.restore_stock(db, item.product_id, item.quantity, item.track_inventory)
        academy_stock_compensation_total.labels(reason=reason).inc()
        logger.info("order_stock_released", order_id=order_id, reason=reason, items=len(order.items))
        return True

    @staticmethod
    async def cancel_order(db: AsyncSession, order_id: int, user=None) -> Order:
        order = await OrderService.get_order(db, order_id, user)
        if order.payment_status in ("paid", "partially_refunded"):
            raise OrderAlreadyPaid("A paid order cannot be cancelled, refund it instead", order_id=order_id)

        try:
            _, changed = await OrderService.transition(db, order_id, apply_status, "cancelled")
            if changed:
                cancelled = await TransactionRepository.cancel_open_for_order(db, order_id)
                await OrderService.release_stock(db, order_id, reason="cancelled")
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        if changed:
            logger.info("order_cancelled", order_id=order_id, transactions_cancelled=cancelled)
        return await OrderRepository.get_order(db, order_id)
