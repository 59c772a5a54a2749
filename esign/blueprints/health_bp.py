"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database and signing configuration status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from esign.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check — database failed: %s", exc)

    for setting in ("DOCUMENT_SIGNING_SECRET", "EXECUTED_FILE_TOKEN_SECRET"):
        configured = bool(current_app.config.get(setting))
        checks[setting.lower()] = {"status": "ok" if configured else "missing"}
        overall = overall and configured

    checks["mail"] = {"status": "smtp" if current_app.config.get("MAIL_SERVER") else "log_only"}

    return jsonify({"status": "ok" if overall else "degraded", "checks": checks}), 200 if overall else 503
