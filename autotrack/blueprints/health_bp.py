"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database round-trip, registered jobs and their last runs
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from autotrack.models import db
from autotrack.services.scheduler_service import get_last_outcomes, get_registered_jobs

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe: 200 whenever the process is serving."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    last_runs = {
        name: {key: outcome.get(key) for key in ("status", "started_at", "duration_ms")}
        for name, outcome in get_last_outcomes().items()
    }
    checks["scheduler"] = {"status": "ok", "jobs": sorted(get_registered_jobs()), "last_runs": last_runs}

    body = {"status": "ok" if overall else "degraded", "checks": checks}
    return jsonify(body), 200 if overall else 503
