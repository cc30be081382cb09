"""
Probes for the load balancer and the orchestrator.

    GET /api/v1/health/ready   process is up
    GET /api/v1/health/live    process is up and the database answers
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from orbit.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
        database = {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        database = {"status": "error", "detail": str(exc)}
        logger.error("Liveness probe: database unreachable: %s", exc)

    healthy = database["status"] == "ok"
    body = {
        "status": "ok" if healthy else "degraded",
        "checks": {
            "database": database,
            "email": {"mode": "smtp" if current_app.config.get("MAIL_SERVER") else "log_only"},
        },
    }
    return jsonify(body), 200 if healthy else 503
