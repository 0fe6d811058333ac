from fastapi import FastAPI

from shared.errors import register_exception_handlers
from .models import PaymentProvider, PaymentWebhookEvent, Transaction  # noqa: F401 registers models with Base
from .router import admin_router, public_router, router, webhook_router

payment_app = FastAPI(title="Payment Service", version="2.0.0")

register_exception_handlers(payment_app)

payment_app.include_router(public_router)
payment_app.include_router(webhook_router)
payment_app.include_router(admin_router)
payment_app.include_router(router)
