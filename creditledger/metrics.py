from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

LEDGER_OPERATIONS = Counter(
    "ledger_operations_total",
    "Spend/grant outcomes",
    ["operation", "outcome"],
)
WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Billing provider webhook deliveries",
    ["event_type", "outcome"],
)
RECONCILIATIONS = Counter(
    "subscription_reconciliations_total",
    "Subscription reconciliation runs",
    ["source", "outcome"],
)
