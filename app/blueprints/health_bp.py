"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 whenever the process is serving
    GET /api/v1/health/live   — database, KPI generation markers, rate-limit storage

Both routes skip actor resolution and rate limiting.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import select

from app.models import db
from app.models.kpi import RUN_RUNNING, KpiGenerationRun

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


def _timed(fn):
    t0 = time.perf_counter()
    result = fn()
    return result, round((time.perf_counter() - t0) * 1000, 1)


def _check_database() -> dict:
    _, ms = _timed(lambda: db.session.execute(db.text("SELECT 1")))
    return {"status": "ok", "latency_ms": ms}


def _check_generation() -> dict:
    """Running month markers; a stuck one shows up here before finance notices."""
    running = db.session.execute(
        select(KpiGenerationRun.month).where(KpiGenerationRun.status == RUN_RUNNING)
    ).all()
    return {
        "status": "ok",
        "running": len(running),
        "months": sorted(month for (month,) in running),
    }


def _check_redis(url: str) -> dict:
    import redis

    client = redis.from_url(url, socket_timeout=2)
    _, ms = _timed(client.ping)
    return {"status": "ok", "latency_ms": ms}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        checks["database"] = _check_database()
    except Exception as exc:
        logger.error("Health check: database unreachable: %s", exc)
        checks["database"] = {"status": "error", "detail": str(exc)}
        healthy = False

    if healthy:
        try:
            checks["kpi_generation"] = _check_generation()
        except Exception as exc:
            db.session.rollback()
            checks["kpi_generation"] = {"status": "error", "detail": str(exc)}

    redis_url = current_app.config.get("REDIS_URL", "")
    if not redis_url:
        checks["redis"] = {"status": "skipped", "detail": "no REDIS_URL configured"}
    else:
        # Only the rate limiter uses Redis; an outage degrades nothing else
        try:
            checks["redis"] = _check_redis(redis_url)
        except Exception as exc:
            checks["redis"] = {"status": "error", "detail": str(exc)}

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
        "testing": current_app.testing,
    }), 200 if healthy else 503
