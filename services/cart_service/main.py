from fastapi import FastAPI

from shared.errors import register_exception_handlers
from .models import Cart, CartItem  # noqa: F401 registers models with Base
from .router import router, public_router

cart_app = FastAPI(title="Cart Service", version="1.0.0")

register_exception_handlers(cart_app)

cart_app.include_router(public_router)
cart_app.include_router(router)
