"""Observability module for logging and metrics.

This module provides:
- Structured logging with correlation IDs
- Prometheus metrics for routed requests and agent invocations
"""

from switchboard.observability.logging import correlation_scope, get_logger, setup_logging
from switchboard.observability.metrics import MetricsCollector, get_metrics_collector

__all__ = [
    "correlation_scope",
    "setup_logging",
    "get_logger",
    "MetricsCollector",
    "get_metrics_collector",
]
