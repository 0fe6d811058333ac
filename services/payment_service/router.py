from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from services.catalog_service.service import CatalogLookup
from services.fulfillment_service.dispatcher import FulfillmentDispatcher
from shared.config.database import get_db
from shared.security.dependencies import CurrentUser, get_current_user, require_admin

from .providers import GatewayRegistry, ProviderConfigService
from .reconciliation import ReconcileOutcome, ReconciliationEngine
from .schemas import (
    PaymentInitialize,
    PaymentInitResponse,
    ProviderConfigUpdate,
    ProviderPublicConfig,
    ProviderResponse,
    ProviderToggle,
    RefundRequest,
    TransactionListResponse,
    TransactionResponse,
    VerifyRequest,
    VerifyResponse,
    WebhookAck,
)
from .service import PaymentService

router = APIRouter()
# Providers call these without a user token; the signature is the authentication
webhook_router = APIRouter(prefix="/webhooks")
admin_router = APIRouter(dependencies=[Depends(require_admin)])
public_router = APIRouter()  # For any public endpoints (e.g. health check)


def get_registry() -> GatewayRegistry:
    return GatewayRegistry()


def get_dispatcher() -> FulfillmentDispatcher:
    return FulfillmentDispatcher(CatalogLookup())


def get_engine(
    registry: GatewayRegistry = Depends(get_registry),
    dispatcher: FulfillmentDispatcher = Depends(get_dispatcher),
) -> ReconciliationEngine:
    return ReconciliationEngine(registry, dispatcher)


def get_payment_service(engine: ReconciliationEngine = Depends(get_engine)) -> PaymentService:
    return PaymentService(CatalogLookup(), engine)


def _verify_response(outcome: ReconcileOutcome) -> VerifyResponse:
    return VerifyResponse(
        success=outcome.success,
        status=outcome.status,
        transaction_id=outcome.transaction_id,
        reference=outcome.reference,
        provider=outcome.provider,
        already_processed=outcome.already_processed,
        message=outcome.message,
    )


@public_router.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "payment", "status": "running"}


@public_router.get("/config", response_model=list[ProviderPublicConfig])
async def payment_config(db: AsyncSession = Depends(get_db)):
    """Public keys and currencies the checkout page needs."""
    return await ProviderConfigService.public_config(db)


@router.post("/initialize", response_model=PaymentInitResponse)
async def initialize_payment(
    data: PaymentInitialize,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
    db: AsyncSession = Depends(get_db),
):
    return await service.initialize(db, user, data)


@router.post("/verify/{transaction_id}", response_model=VerifyResponse)
async def verify_payment(
    transaction_id: int,
    data: VerifyRequest | None = None,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    provider = data.provider if data else None
    outcome = await engine.verify_transaction(db, transaction_id, user, provider)
    return _verify_response(outcome)


@router.post("/verify-by-ref/{reference}", response_model=VerifyResponse)
async def verify_by_reference(
    reference: str,
    provider: str | None = None,
    user: CurrentUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    """Return-page verification when the client only knows the provider reference."""
    outcome = await engine.verify_by_reference(db, reference, provider, user)
    return _verify_response(outcome)


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    status: str | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transactions, total = await PaymentService.list_transactions(db, user.id, status, limit, offset)
    return TransactionListResponse(transactions=transactions, total=total, limit=limit, offset=offset)


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await PaymentService.get_transaction(db, transaction_id, user)


# --- Webhooks ---

@webhook_router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    engine: ReconciliationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    status = await engine.handle_webhook(db, "stripe", raw_body, stripe_signature)
    return WebhookAck(status=status)


@webhook_router.post("/paystack", response_model=WebhookAck)
async def paystack_webhook(
    request: Request,
    paystack_signature: str | None = Header(default=None, alias="x-paystack-signature"),
    engine: ReconciliationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    status = await engine.handle_webhook(db, "paystack", raw_body, paystack_signature)
    return WebhookAck(status=status)


# --- Admin ---

@admin_router.post("/refund/{transaction_id}", response_model=VerifyResponse)
async def refund_transaction(
    transaction_id: int,
    data: RefundRequest | None = None,
    engine: ReconciliationEngine = Depends(get_engine),
    db: AsyncSession = Depends(get_db),
):
    outcome = await engine.refund(db, transaction_id, data.reason if data else None)
    return _verify_response(outcome)


@admin_router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(db: AsyncSession = Depends(get_db)):
    return await ProviderConfigService.list_providers(db)


@admin_router.put("/providers/{name}", response_model=ProviderResponse)
async def update_provider(name: str, data: ProviderConfigUpdate, db: AsyncSession = Depends(get_db)):
    return await ProviderConfigService.upsert(db, name, data)


@admin_router.patch("/providers/{name}/active", response_model=ProviderResponse)
async def toggle_provider(name: str, data: ProviderToggle, db: AsyncSession = Depends(get_db)):
    return await ProviderConfigService.set_active(db, name, data.is_active)
