"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking attempts',
    ['status']  # success, capacity_conflict, denied, validation, error
)

booking_latency = Histogram(
    'booking_latency_seconds',
    'Booking request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

booking_transitions = Counter(
    'booking_transitions_total',
    'Booking lifecycle transitions',
    ['to_status', 'actor_role']
)

# Resource consumption
booking_funding = Counter(
    'booking_funding_total',
    'Bookings by funding source',
    ['source']  # subscription, credit, staff
)

credits_restored = Counter(
    'session_credits_restored_total',
    'Credits returned to a grant on cancellation'
)

# Database metrics
db_retries = Counter(
    'db_retry_attempts_total',
    'Database retry attempts due to version conflicts',
    ['resource']  # session_type, subscription, credit
)

# Async reconciliation
calendar_sync_results = Counter(
    'calendar_sync_results_total',
    'Calendar sync task outcomes',
    ['result']  # synced, deleted, failed, skipped
)

payment_events = Counter(
    'payment_events_total',
    'Payment processor webhook events',
    ['event_type', 'result']  # applied, duplicate, stale, ignored, rejected, error
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)

redis_connection_errors = Counter(
    'redis_connection_errors_total',
    'Redis connection errors'
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_booking_attempt(status: str):
    """Record booking attempt. Status: success, capacity_conflict, denied, validation, error"""
    booking_attempts.labels(status=status).inc()


def record_db_retry(resource: str):
    db_retries.labels(resource=resource).inc()


def record_calendar_sync(result: str):
    calendar_sync_results.labels(result=result).inc()


def record_payment_event(event_type: str, result: str):
    payment_events.labels(event_type=event_type, result=result).inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()
