"""
Prometheus metrics: order status transitions (API + worker), status events ingested (API),
messages processed/failed (worker), queue depth (SQS).
"""
from prometheus_client import Counter, Gauge, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created in the initial status",
)
order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total order status transitions committed",
    ["from_status", "to_status"],
)
order_status_transitions_rejected_total = Counter(
    "order_status_transitions_rejected_total",
    "Total order status transitions rejected by the lifecycle state machine",
    ["current_status", "requested_status"],
)

# API: status-change events accepted for asynchronous processing
status_events_ingested_total = Counter(
    "status_events_ingested_total",
    "Total status-change events accepted (202) for ingestion",
    ["status"],
)

# Worker: processing outcomes
messages_processed_total = Counter(
    "messages_processed_total",
    "Total messages successfully processed",
)
messages_rejected_total = Counter(
    "messages_rejected_total",
    "Total messages dropped without retry (illegal transition, unknown order or status)",
)
messages_failed_total = Counter(
    "messages_failed_total",
    "Total messages that failed processing (retried or sent to DLQ)",
)
messages_dlq_total = Counter(
    "messages_dlq_total",
    "Total messages moved to DLQ after max retries",
)

# SQS queue depth (when using SQS) - backpressure / consumer lag
sqs_queue_messages_waiting = Gauge(
    "sqs_queue_messages_waiting",
    "Approximate number of messages waiting in SQS (main queue)",
)
sqs_queue_messages_in_flight = Gauge(
    "sqs_queue_messages_in_flight",
    "Approximate number of messages in flight (received but not yet deleted)",
)


def record_transition(from_status: str, to_status: str) -> None:
    order_status_transitions_total.labels(from_status=from_status, to_status=to_status).inc()


def record_rejection(current_status: str, requested_status: str) -> None:
    order_status_transitions_rejected_total.labels(
        current_status=current_status, requested_status=requested_status,
    ).inc()


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
