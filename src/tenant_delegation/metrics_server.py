"""
Prometheus metrics server for the delegation engine.

This script starts an HTTP server that exposes Prometheus metrics at /metrics.
Given a database, it also acts as the sweep host: it runs the expiration
sweep every DelegationPolicy.sweep_interval_hours so the sweep counters move.

Usage:
    python -m tenant_delegation.metrics_server --port 9090
    python -m tenant_delegation.metrics_server --port 9090 --db delegations.db
"""

import argparse
import time

from tenant_delegation.engine import DelegationEngine
from tenant_delegation.kernel.logging import configure_logging, get_logger, is_production
from tenant_delegation.kernel.metrics import start_metrics_server

logger = get_logger(__name__)


def run_sweep(engine: DelegationEngine) -> None:
    result = engine.sweep()
    delivered = engine.dispatch_notifications()
    logger.info(
        "Scheduled sweep completed",
        expired_count=result.expired_count,
        failed_count=len(result.failed_ids),
        notifications_dispatched=delivered,
    )


def main() -> None:
    """
    Start the Prometheus metrics server.

    The server exposes all delegation metrics at http://0.0.0.0:<port>/metrics
    in Prometheus text format.
    """
    parser = argparse.ArgumentParser(description="Tenant Delegation Metrics Server")
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="Port to listen on (default: 9090)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Delegation database; when given, the expiration sweep runs on schedule",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (default: on when ENVIRONMENT=production)",
    )

    args = parser.parse_args()

    configure_logging(json_output=args.json_logs or is_production(), log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )

    start_metrics_server(port=args.port)

    logger.info("Metrics server started successfully")

    engine = DelegationEngine(args.db) if args.db else None
    interval_seconds = engine.policy.sweep_interval_hours * 3600 if engine else None
    next_sweep = time.monotonic()

    # Keep the server running
    try:
        while True:
            if engine is not None and interval_seconds and time.monotonic() >= next_sweep:
                run_sweep(engine)
                next_sweep = time.monotonic() + interval_seconds
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
