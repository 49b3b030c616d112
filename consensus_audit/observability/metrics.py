"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from consensus_audit.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OUTCOME = "outcome"
    ROLE = "role"
    TASK_KIND = "task_kind"
    ALERT_TYPE = "alert_type"


class AuditMetrics:
    """
    Centralized metrics for the Consensus Audit API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Audit runs (outcome, estimated cost)
    - Model invocations (role, success/failure, latency)
    - Ledger debits and cost alerts
    - Background task processing
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "audit_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "audit_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "audit_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        self.http_requests_in_progress = Gauge(
            "audit_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Audit Run Metrics
        # ====================================================================
        self.audits_total = Counter(
            "audit_runs_total",
            "Total audit runs by outcome (completed or error kind)",
            [MetricLabels.OUTCOME],
        )

        self.audit_estimated_cost = Histogram(
            "audit_estimated_cost_dollars",
            "Estimated cost of completed audits in dollars",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        # ====================================================================
        # Model Invocation Metrics
        # ====================================================================
        self.model_invocations_total = Counter(
            "audit_model_invocations_total",
            "Total model invocations",
            [MetricLabels.ROLE, "success"],
        )

        self.model_latency_seconds = Histogram(
            "audit_model_latency_seconds",
            "Model invocation latency in seconds",
            [MetricLabels.ROLE],
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_debits_total = Counter(
            "audit_ledger_debits_total",
            "Total ledger debits",
            ["success"],
        )

        self.cost_alerts_total = Counter(
            "audit_cost_alerts_total",
            "Total cost alerts raised",
            [MetricLabels.ALERT_TYPE],
        )

        # ====================================================================
        # Background Task Metrics
        # ====================================================================
        self.background_tasks_total = Counter(
            "audit_background_tasks_total",
            "Background tasks processed",
            [MetricLabels.TASK_KIND, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "audit_errors_total",
            "Total errors by type",
            ["error_type", "operation"],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_audit(self, outcome: str, estimated_cost: float | None = None) -> None:
        """Record an audit run outcome."""
        self.audits_total.labels(outcome=outcome).inc()
        if estimated_cost is not None:
            self.audit_estimated_cost.observe(estimated_cost)

    def record_model_invocation(self, role: str, success: bool, latency_ms: int) -> None:
        """Record a single model invocation."""
        self.model_invocations_total.labels(role=role, success=str(success)).inc()
        self.model_latency_seconds.labels(role=role).observe(latency_ms / 1000)

    def record_ledger_debit(self, success: bool) -> None:
        """Record a ledger debit attempt."""
        self.ledger_debits_total.labels(success=str(success)).inc()

    def record_cost_alert(self, alert_type: str) -> None:
        """Record a raised cost alert."""
        self.cost_alerts_total.labels(alert_type=alert_type).inc()

    def record_background_task(self, task_kind: str, outcome: str) -> None:
        """Record a processed background task."""
        self.background_tasks_total.labels(task_kind=task_kind, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AuditMetrics()
