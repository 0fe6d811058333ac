from fastapi import FastAPI

from shared.errors import register_exception_handlers
from .models import Order, OrderItem  # noqa: F401 registers models with Base
from .router import admin_router, public_router, router

order_app = FastAPI(title="Order Service", version="2.0.0")

register_exception_handlers(order_app)

order_app.include_router(public_router)
order_app.include_router(admin_router)
order_app.include_router(router)
