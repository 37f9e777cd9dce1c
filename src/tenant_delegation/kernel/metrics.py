"""
Prometheus metrics collection for the delegation engine.

Provides observability into lifecycle transitions, permission checks,
notification delivery and the expiration sweep.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram, start_http_server

# ============================================================================
# Lifecycle Metrics
# ============================================================================

delegation_transitions_total = Counter(
    "delegation_transitions_total",
    "Total number of delegation lifecycle operations",
    ["action", "status"],  # status: success, failure
)

operation_duration_seconds = Histogram(
    "delegation_operation_duration_seconds",
    "Duration of delegation service operations in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

concurrent_modifications_total = Counter(
    "delegation_concurrent_modifications_total",
    "Total number of optimistic locking conflicts on delegation rows",
)

# ============================================================================
# Authorization Read Path
# ============================================================================

delegation_checks_total = Counter(
    "delegation_checks_total",
    "Total number of has-active-delegation checks",
    ["result"],  # result: granted, denied
)

# ============================================================================
# Notifications
# ============================================================================

notifications_total = Counter(
    "delegation_notifications_total",
    "Total number of delegation notifications by outcome",
    ["event", "status"],  # status: queued, delivered, failed
)

# ============================================================================
# Expiration Sweep
# ============================================================================

sweep_expired_total = Counter(
    "delegation_sweep_expired_total",
    "Total number of delegations promoted to EXPIRED by the sweeper",
)

sweep_failures_total = Counter(
    "delegation_sweep_failures_total",
    "Total number of delegations the sweeper failed to expire",
)

sweep_duration_seconds = Histogram(
    "delegation_sweep_duration_seconds",
    "Duration of an expiration sweep pass in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_operation_duration(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track service operation duration and outcome.

    Args:
        operation: Operation name, used as the histogram label and the
            transition counter's action label

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start
                operation_duration_seconds.labels(operation=operation).observe(duration)
                delegation_transitions_total.labels(action=operation, status=status).inc()

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)
