"""Prometheus metrics for the gateway.

All collectors live on a private registry exposed at ``GET /metrics``.
"""

import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global registry for metrics
_registry = CollectorRegistry()


# Forward-auth
forward_auth_decisions_total = Counter(
    "noknok_forward_auth_decisions_total",
    "Forward-auth verdicts",
    ["verdict", "reason"],
    registry=_registry,
)

forward_auth_duration_seconds = Histogram(
    "noknok_forward_auth_duration_seconds",
    "Time to reach a forward-auth verdict",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
    registry=_registry,
)

# Login
logins_total = Counter(
    "noknok_logins_total",
    "Login attempts by outcome",
    ["outcome"],
    registry=_registry,
)

# Sessions
sessions_created_total = Counter(
    "noknok_sessions_created_total",
    "Sessions created",
    registry=_registry,
)

sessions_cleaned_total = Counter(
    "noknok_sessions_cleaned_total",
    "Expired sessions removed by the cleanup job",
    registry=_registry,
)

# Health poller
health_polls_total = Counter(
    "noknok_health_polls_total",
    "Health poll runs by status",
    ["status"],
    registry=_registry,
)

service_up = Gauge(
    "noknok_service_up",
    "Whether the service answered the last HEAD probe (1=up, 0=down)",
    ["service_id"],
    registry=_registry,
)

# Admin
admin_mutations_total = Counter(
    "noknok_admin_mutations_total",
    "Successful admin mutations by action",
    ["action"],
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    return _registry


def get_metrics_text() -> str:
    """Render all metrics in Prometheus text format."""
    return generate_latest(_registry).decode("utf-8")


def record_forward_auth(verdict: str, reason: str, duration: float) -> None:
    forward_auth_decisions_total.labels(verdict=verdict, reason=reason).inc()
    forward_auth_duration_seconds.observe(duration)


def record_login(outcome: str) -> None:
    """Record a login step.

    Outcomes: started, start_failed, callback_failed, denied, switched,
    success, error.
    """
    logins_total.labels(outcome=outcome).inc()


def record_session_created() -> None:
    sessions_created_total.inc()


def record_sessions_cleaned(count: int) -> None:
    if count:
        sessions_cleaned_total.inc(count)


def record_health_poll(results: dict[int, bool] | None) -> None:
    """Record one health poll run.

    Args:
        results: Per-service liveness, or None when the run failed
    """
    if results is None:
        health_polls_total.labels(status="error").inc()
        return
    health_polls_total.labels(status="ok").inc()
    for service_id, alive in results.items():
        service_up.labels(service_id=str(service_id)).set(1 if alive else 0)


def record_admin_mutation(action: str) -> None:
    admin_mutations_total.labels(action=action).inc()


__all__ = [
    "get_registry",
    "get_metrics_text",
    "record_forward_auth",
    "record_login",
    "record_session_created",
    "record_sessions_cleaned",
    "record_health_poll",
    "record_admin_mutation",
]
