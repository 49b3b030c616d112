"""
Observability module - Logging, Metrics, and Tracing.
"""

from consensus_audit.observability.logging import (
    current_request_id,
    get_logger,
    log_context,
    setup_logging,
)
from consensus_audit.observability.metrics import metrics
from consensus_audit.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "current_request_id",
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
