import asyncio

import structlog
from fastapi import FastAPI

from shared.config.database import Base, engine, get_session_factory
from shared.config.settings import OUTBOX_RELAY_ENABLED
from shared.observability import setup_observability

# IMPORTANT: import models so they register with Base
from services.catalog_service import models as catalog_models  # noqa: F401
from services.cart_service import models as cart_models  # noqa: F401
from services.order_service import models as order_models  # noqa: F401
from services.payment_service import models as payment_models  # noqa: F401
from services.fulfillment_service import models as fulfillment_models  # noqa: F401

from services.catalog_service.main import catalog_app
from services.cart_service.main import cart_app
from services.order_service.main import order_app
from services.payment_service.main import payment_app
from services.fulfillment_service.notifications import default_email_sender, default_notification_sender
from services.fulfillment_service.outbox import OutboundRelay

logger = structlog.get_logger(__name__)

app = FastAPI(title="Academy Commerce Cluster")

# Logs, traces and /metrics for the whole cluster
setup_observability(app, "academy")

relay = OutboundRelay(get_session_factory(), default_notification_sender(), default_email_sender())


@app.on_event("startup")
async def startup_event():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if OUTBOX_RELAY_ENABLED:
        app.state.relay_task = asyncio.create_task(relay.start())


@app.on_event("shutdown")
async def shutdown_event():
    task = getattr(app.state, "relay_task", None)
    if task is not None:
        relay.stop()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await engine.dispose()


@app.get("/health", include_in_schema=False)
async def health_check():
    return {"service": "academy", "status": "running"}


app.mount("/catalog", catalog_app)
app.mount("/cart", cart_app)
app.mount("/orders", order_app)
app.mount("/payments", payment_app)
