"""Observability infrastructure for noknok.

Provides structured logging with correlation IDs and Prometheus metrics.
"""

from noknok.infra.observability.logging import (
    CorrelationIDFilter,
    JSONFormatter,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
    setup_logging,
)
from noknok.infra.observability.metrics import (
    get_metrics_text,
    get_registry,
    record_admin_mutation,
    record_forward_auth,
    record_health_poll,
    record_login,
    record_session_created,
    record_sessions_cleaned,
)

__all__ = [
    # Logging
    "correlation_id_var",
    "get_correlation_id",
    "set_correlation_id",
    "CorrelationIDFilter",
    "JSONFormatter",
    "setup_logging",
    # Metrics
    "get_registry",
    "get_metrics_text",
    "record_forward_auth",
    "record_login",
    "record_session_created",
    "record_sessions_cleaned",
    "record_health_poll",
    "record_admin_mutation",
]
