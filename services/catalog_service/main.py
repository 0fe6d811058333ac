from fastapi import FastAPI

from shared.errors import register_exception_handlers
from .models import Product, Course, SubscriptionTier  # noqa: F401 registers models with Base
from .router import router, public_router

catalog_app = FastAPI(title="Catalog Service", version="1.0.0")

register_exception_handlers(catalog_app)

catalog_app.include_router(public_router)
catalog_app.include_router(router)
