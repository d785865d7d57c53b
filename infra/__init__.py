# Infrastructure module - Logging, metrics and background maintenance
# infra.config is imported directly: it builds on api.client

from .logging import (
    get_logger, configure_logging, RequestContext,
    get_request_id, generate_request_id,
)
from .maintenance import PeriodicTask
from .metrics import APIMetrics, MetricsCollector

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "RequestContext",
    "get_request_id",
    "generate_request_id",
    # Maintenance
    "PeriodicTask",
    # Metrics
    "APIMetrics",
    "MetricsCollector",
]
