"""
Observability module - Logging, Metrics, and Tracing.
"""

from tokengate.observability.logging import get_logger, setup_logging
from tokengate.observability.metrics import metrics
from tokengate.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
