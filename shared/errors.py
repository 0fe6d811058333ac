"""
Domain error taxonomy shared by every service.

Services raise these; the exception handlers registered on each app turn
them into `{"detail": ..., "code": ...}` responses with the mapped status.
Routers never catch them.
"""
import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class DomainError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "domain_error"

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)


# --- Validation: rejected synchronously, nothing mutated ---

class ValidationError(DomainError):
    """Request is invalid"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class EmptyCart(ValidationError):
    """Cart is empty"""
    code = "empty_cart"


class InvalidQuantity(ValidationError):
    """Quantity must be a positive integer"""
    code = "invalid_quantity"


class ProductNotAvailable(ValidationError):
    """Product is not available"""
    code = "product_not_available"


class UnsupportedProvider(ValidationError):
    """Payment provider is not available for this currency"""
    code = "unsupported_provider"


class PermissionDenied(DomainError):
    """Not allowed"""
    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class NotFoundError(DomainError):
    """Resource not found"""
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


# --- Conflicts: rejected synchronously, encompassing transaction rolled back ---

class ConflictError(DomainError):
    """Request conflicts with the current state"""
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class OutOfStock(ConflictError):
    """Insufficient stock"""
    code = "out_of_stock"


class InsufficientStock(ConflictError):
    """Insufficient stock to create the order"""
    code = "insufficient_stock"


class AlreadyEnrolled(ConflictError):
    """Already enrolled in this course"""
    code = "already_enrolled"


class SubscriptionAlreadyActive(ConflictError):
    """Subscription is already active"""
    code = "subscription_already_active"


class OrderAlreadyPaid(ConflictError):
    """Order is already paid"""
    code = "order_already_paid"


class OrderNotPayable(ConflictError):
    """Order can no longer be paid"""
    code = "order_not_payable"


class InvalidStatusTransition(ConflictError):
    """Status transition is not allowed"""
    code = "invalid_status_transition"


class TransactionNotRefundable(ConflictError):
    """Only completed transactions can be refunded"""
    code = "transaction_not_refundable"


# --- Provider errors ---

class ProviderError(DomainError):
    """Payment provider rejected the request"""
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "provider_error"


class ProviderUnavailable(ProviderError):
    """Payment provider is unreachable, try again later"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "provider_unavailable"


class SignatureInvalid(ProviderError):
    """Invalid webhook signature"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "domain_error",
        code=exc.code,
        error=exc.message,
        path=request.url.path,
        **exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "internal_error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
