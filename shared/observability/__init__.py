from .setup import setup_observability, configure_logging
from .metrics import (
    academy_checkout_total,
    academy_checkout_duration_seconds,
    academy_reconciliation_total,
    academy_fulfillment_total,
    academy_webhook_events_total,
    academy_stock_compensation_total,
    academy_outbound_tasks_total,
    academy_active_carts
)
