"""
Health check HTTP server for Kubernetes liveness and readiness probes.

Provides endpoints for monitoring the delegation database and the backlog of
overdue delegations the sweep has not reached yet.
"""

import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from flask import Flask, Response, g, jsonify, request

from tenant_delegation import __version__
from tenant_delegation.delegation.models import TERMINAL_STATUSES
from tenant_delegation.delegation.sqlite_repository import to_db_time
from tenant_delegation.kernel.logging import (
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

app = Flask(__name__)

SERVICE_NAME = "tenant-delegation"

CORRELATION_HEADER = "X-Correlation-ID"
# Echoed into logs and headers, so only plain tokens are accepted
CORRELATION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{8,64}")

# Global state - will be set by initialize_health_server()
_db_path: Path | None = None


def initialize_health_server(db_path: str | Path) -> None:
    """
    Initialize the health server with the database path.

    Args:
        db_path: Path to SQLite database
    """
    global _db_path
    _db_path = Path(db_path)
    logger.info("Health server initialized", db_path=str(_db_path))


@app.before_request
def bind_correlation_id() -> None:
    """Reuse a well-formed caller X-Correlation-ID, otherwise mint one"""
    supplied = request.headers.get(CORRELATION_HEADER, "")
    cid = supplied if CORRELATION_ID_PATTERN.fullmatch(supplied) else generate_correlation_id()
    g.correlation_id = cid
    set_correlation_id(cid)


@app.teardown_request
def clear_correlation_id(exc: BaseException | None) -> None:
    set_correlation_id("")


@app.after_request
def add_security_headers(response: Response) -> Response:
    """Harden every response (health output is never meant to be rendered)"""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if "correlation_id" in g:
        response.headers[CORRELATION_HEADER] = g.correlation_id
    return response


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Response, int]:
    """
    Liveness probe - checks if the process is running.

    Returns:
        JSON response with status and 200 OK
    """
    return jsonify({"status": "alive", "service": SERVICE_NAME}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Response, int]:
    """
    Readiness probe - checks if the service is ready to accept requests.

    Checks:
    - Database path is configured and the file exists
    - The delegations table can be queried

    Returns:
        JSON response with status and 200 OK if ready, 503 if not ready
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return (
            jsonify({"status": "not_ready", "reason": "database_path_not_initialized"}),
            503,
        )

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_file_not_found",
                    "db_path": str(_db_path),
                }
            ),
            503,
        )

    try:
        conn = sqlite3.connect(str(_db_path), timeout=1.0)
        try:
            delegation_count = conn.execute("SELECT COUNT(*) FROM delegations").fetchone()[0]
        finally:
            conn.close()

        logger.debug("Readiness check passed", delegation_count=delegation_count)
        return (
            jsonify(
                {
                    "status": "ready",
                    "database": "accessible",
                    "delegation_count": delegation_count,
                }
            ),
            200,
        )

    except sqlite3.OperationalError as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_operational_error",
                    "error": str(e),
                }
            ),
            503,
        )


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Response, int]:
    """
    Detailed health check - database size, delegation counts and sweep backlog.

    Returns:
        JSON response with detailed health information
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
    }

    if _db_path and _db_path.exists():
        try:
            conn = sqlite3.connect(str(_db_path), timeout=1.0)
            try:
                status_counts = {
                    row[0]: row[1]
                    for row in conn.execute(
                        "SELECT status, COUNT(*) FROM delegations GROUP BY status"
                    )
                }

                terminal = [s.value for s in TERMINAL_STATUSES]
                placeholders = ", ".join("?" for _ in terminal)
                overdue_count = conn.execute(
                    f"SELECT COUNT(*) FROM delegations "
                    f"WHERE status NOT IN ({placeholders}) AND expires_at <= ?",
                    [*terminal, to_db_time(datetime.now(timezone.utc))],
                ).fetchone()[0]

                audit_count = conn.execute(
                    "SELECT COUNT(*) FROM delegation_audit_logs"
                ).fetchone()[0]
                tenant_count = conn.execute(
                    "SELECT COUNT(DISTINCT tenant_id) FROM delegations"
                ).fetchone()[0]

                page_count = conn.execute("PRAGMA page_count").fetchone()[0]
                page_size = conn.execute("PRAGMA page_size").fetchone()[0]
                db_size_mb = (page_count * page_size) / (1024 * 1024)
            finally:
                conn.close()

            health_data["database"] = {
                "status": "healthy",
                "path": str(_db_path),
                "size_mb": round(db_size_mb, 2),
                "audit_log_count": audit_count,
            }
            health_data["delegations"] = {
                "total": sum(status_counts.values()),
                "by_status": status_counts,
                "tenants": tenant_count,
                "overdue_unswept": overdue_count,
            }

        except sqlite3.Error as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(port: int = 8080, debug: bool = False) -> None:
    """
    Run the health check server.

    Args:
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting health check server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)


if __name__ == "__main__":
    # For local runs: python -m tenant_delegation.health_server
    initialize_health_server(".delegations.db")
    run_health_server(port=8080, debug=False)
