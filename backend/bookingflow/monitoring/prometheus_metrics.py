"""
Prometheus metrics for the booking pipeline.

Service latencies are fed by the ``@measure_operation`` decorator; the
domain counters below are recorded directly by the reservation, webhook,
conflict and refund services.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "bookingflow_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "bookingflow_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "bookingflow_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

reservations_total = Counter(
    "bookingflow_reservations_total",
    "Reservation attempts by outcome",
    ["outcome", "payment_path"],
    registry=REGISTRY,
)

reservations_released_total = Counter(
    "bookingflow_reservations_released_total",
    "Reservations released, by reason",
    ["reason"],
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "bookingflow_webhook_events_total",
    "Inbound payment events by ingestion outcome",
    ["event_type", "outcome"],
    registry=REGISTRY,
)

confirmation_conflicts_total = Counter(
    "bookingflow_confirmation_conflicts_total",
    "Conflicts detected when confirming a paid reservation",
    ["conflict_kind"],
    registry=REGISTRY,
)

refunds_total = Counter(
    "bookingflow_refunds_total",
    "Refund executions by outcome",
    ["outcome", "conflict_kind"],
    registry=REGISTRY,
)

orphaned_payment_events_total = Counter(
    "bookingflow_orphaned_payment_events_total",
    "Payment events with no matching reservation",
    ["event_type"],
    registry=REGISTRY,
)

gateway_retries_total = Counter(
    "bookingflow_gateway_retries_total",
    "Payment processor calls retried after a transient failure",
    ["operation"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin facade so call sites don't touch metric objects directly."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'SlotReservationManager')
            operation: Operation/method name (e.g., 'create_reservation')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_reservation(outcome: str, payment_path: str) -> None:
        reservations_total.labels(outcome=outcome, payment_path=payment_path).inc()

    @staticmethod
    def record_release(reason: str, count: int = 1) -> None:
        if count > 0:
            reservations_released_total.labels(reason=reason).inc(count)

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str) -> None:
        webhook_events_total.labels(event_type=event_type or "unknown", outcome=outcome).inc()

    @staticmethod
    def record_conflict(conflict_kind: str) -> None:
        confirmation_conflicts_total.labels(conflict_kind=conflict_kind).inc()

    @staticmethod
    def record_refund(outcome: str, conflict_kind: str) -> None:
        refunds_total.labels(outcome=outcome, conflict_kind=conflict_kind).inc()

    @staticmethod
    def record_orphaned_event(event_type: str) -> None:
        orphaned_payment_events_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_gateway_retry(operation: str) -> None:
        gateway_retries_total.labels(operation=operation).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
