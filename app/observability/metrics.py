"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"


class AppraisalMetrics:
    """
    Centralized metrics for the Appraisal API.

    Covers HTTP traffic, entitlement decisions, valuation status transitions,
    analysis provider calls, image uploads and the stale-request sweeper.
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "appraisal_service",
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
            "appraisal_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "appraisal_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        self.http_requests_in_progress = Gauge(
            "appraisal_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_decisions_total = Counter(
            "appraisal_entitlement_decisions_total",
            "Entitlement decisions by funding source or denial reason",
            ["allowed", "source", "reason"],
        )

        # ====================================================================
        # Valuation Lifecycle Metrics
        # ====================================================================
        self.valuation_transitions_total = Counter(
            "appraisal_valuation_transitions_total",
            "Valuation request status transitions",
            ["from_status", "to_status"],
        )

        # ====================================================================
        # Analysis Provider Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "appraisal_provider_calls_total",
            "Analysis provider calls",
            ["success"],
        )

        self.provider_call_duration_seconds = Histogram(
            "appraisal_provider_call_duration_seconds",
            "Analysis provider call duration in seconds",
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0),
        )

        self.provider_failures_total = Counter(
            "appraisal_provider_failures_total",
            "Analysis provider failures by kind",
            ["kind"],
        )

        # ====================================================================
        # Image Storage Metrics
        # ====================================================================
        self.image_uploads_total = Counter(
            "appraisal_image_uploads_total",
            "Image uploads",
            ["success"],
        )

        self.image_upload_batch_duration_seconds = Histogram(
            "appraisal_image_upload_batch_duration_seconds",
            "Duration of one request's concurrent image uploads",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Sweeper Metrics
        # ====================================================================
        self.sweeps_total = Counter(
            "appraisal_sweeps_total",
            "Stale-request sweeper runs",
        )

        self.swept_requests_total = Counter(
            "appraisal_swept_requests_total",
            "Requests failed by the sweeper",
        )

        self.sweep_refunds_total = Counter(
            "appraisal_sweep_refunds_total",
            "Entitlement units refunded by the sweeper",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "appraisal_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
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

    def record_entitlement_decision(self, source: Enum | None, reason: str | None) -> None:
        """Record an entitlement grant (source set) or denial (reason set)."""
        self.entitlement_decisions_total.labels(
            allowed=str(source is not None),
            source=source.value if source is not None else "none",
            reason=reason or "granted",
        ).inc()

    def record_transition(self, from_status: Enum | None, to_status: Enum) -> None:
        """Record a valuation status change; None means the request was just created."""
        self.valuation_transitions_total.labels(
            from_status=from_status.value if from_status is not None else "none",
            to_status=to_status.value,
        ).inc()

    def record_provider_call(self, duration: float, success: bool) -> None:
        """Record one analysis provider attempt."""
        self.provider_calls_total.labels(success=str(success)).inc()
        self.provider_call_duration_seconds.observe(duration)

    def record_provider_failure(self, kind: str) -> None:
        """Record a transport or parse failure."""
        self.provider_failures_total.labels(kind=kind).inc()

    def record_image_uploads(self, succeeded: int, failed: int, duration: float) -> None:
        """Record one request's upload batch."""
        if succeeded:
            self.image_uploads_total.labels(success="True").inc(succeeded)
        if failed:
            self.image_uploads_total.labels(success="False").inc(failed)
        self.image_upload_batch_duration_seconds.observe(duration)

    def record_sweep(self, swept: int, refunded: int) -> None:
        """Record a sweeper run."""
        self.sweeps_total.inc()
        if swept:
            self.swept_requests_total.inc(swept)
        if refunded:
            self.sweep_refunds_total.inc(refunded)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = AppraisalMetrics()
