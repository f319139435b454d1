from __future__ import annotations

from prometheus_client import Counter

orders_created = Counter(
    "orders_created_total",
    "Orders persisted",
    ["channel"],
)
order_validation_failures = Counter(
    "order_validation_failures_total",
    "Order submissions rejected before persistence",
    ["reason"],
)
idempotency_requests = Counter(
    "idempotency_requests_total",
    "Guest order submissions by idempotency outcome",
    ["outcome"],
)
audit_write_failures = Counter(
    "audit_write_failures_total",
    "Audit log writes that failed and were skipped",
)
