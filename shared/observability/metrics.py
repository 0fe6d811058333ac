from prometheus_client import Counter, Histogram, Gauge

# Business Metrics
academy_checkout_total = Counter(
    "academy_checkout_total",
    "Orders created from carts",
    ["status"] # Labels: 'success', 'empty_cart', 'insufficient_stock'
)

academy_checkout_duration_seconds = Histogram(
    "academy_checkout_duration_seconds",
    "Order-from-cart duration in seconds"
)

academy_reconciliation_total = Counter(
    "academy_reconciliation_total",
    "Transaction reconciliation attempts",
    ["source", "outcome"] # source: 'verify', 'webhook', 'reference'; outcome: 'completed', 'failed', 'pending', ...
)

academy_fulfillment_total = Counter(
    "academy_fulfillment_total",
    "Fulfillment actions applied",
    ["kind"] # Labels: 'enrollment', 'subscription', 'order'
)

academy_webhook_events_total = Counter(
    "academy_webhook_events_total",
    "Provider webhook deliveries",
    ["provider", "result"] # result: 'processed', 'duplicate', 'rejected', 'ignored', 'error'
)

academy_stock_compensation_total = Counter(
    "academy_stock_compensation_total",
    "Orders whose reserved stock was released",
    ["reason"] # Labels: 'payment_failed', 'cancelled'
)

academy_outbound_tasks_total = Counter(
    "academy_outbound_tasks_total",
    "Notification/email side-effect deliveries",
    ["channel", "result"] # result: 'sent', 'retry', 'failed'
)

academy_active_carts = Gauge(
    "academy_active_carts",
    "Number of carts created and not yet merged or expired"
)
