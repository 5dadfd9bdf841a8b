"""
Metrics Collection with Prometheus.

Exposes credential, quota and completion metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from tokengate.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    ERROR_TYPE = "error_type"


class TokenGateMetrics:
    """
    Centralized metrics for the TokenGate API.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Completions (rate by path and outcome, provider latency)
    - Quota (rejections by kind, tokens committed)
    - Remote registry (soft failures by operation)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "tokengate_service",
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
            "tokengate_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "tokengate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "tokengate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Completion Metrics
        # ====================================================================
        self.completions_total = Counter(
            "tokengate_completions_total",
            "Total completions by credential path and outcome",
            [MetricLabels.PROVIDER, "path", "outcome"],
        )

        self.provider_call_duration_seconds = Histogram(
            "tokengate_provider_call_duration_seconds",
            "Outbound AI provider call duration in seconds",
            [MetricLabels.PROVIDER, "path"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Quota Metrics
        # ====================================================================
        self.quota_rejections_total = Counter(
            "tokengate_quota_rejections_total",
            "Shared-pool requests rejected by quota kind",
            [MetricLabels.PROVIDER, "kind"],
        )

        self.quota_tokens_committed_total = Counter(
            "tokengate_quota_tokens_committed_total",
            "Tokens committed against the shared pool",
            [MetricLabels.PROVIDER],
        )

        # ====================================================================
        # Remote Registry Metrics
        # ====================================================================
        self.remote_registry_failures_total = Counter(
            "tokengate_remote_registry_failures_total",
            "Remote registry calls that failed softly",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "tokengate_errors_total",
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

    def record_completion(self, provider: str, path: str, outcome: str) -> None:
        """Record a completion outcome ("success", "fallback", "quota", "error")."""
        self.completions_total.labels(provider=provider, path=path, outcome=outcome).inc()

    def record_provider_call(self, provider: str, path: str, duration: float) -> None:
        """Record outbound provider latency."""
        self.provider_call_duration_seconds.labels(provider=provider, path=path).observe(duration)

    def record_quota_rejection(self, provider: str, kind: str) -> None:
        """Record a quota rejection."""
        self.quota_rejections_total.labels(provider=provider, kind=kind).inc()

    def record_tokens_committed(self, provider: str, tokens: int) -> None:
        """Record tokens debited from the shared pool."""
        self.quota_tokens_committed_total.labels(provider=provider).inc(tokens)

    def record_remote_failure(self, operation: str) -> None:
        """Record a soft remote registry failure."""
        self.remote_registry_failures_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = TokenGateMetrics()
