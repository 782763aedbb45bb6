"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Limits are keyed by the acting user (``g.actor``) when one is resolved,
else by remote IP.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

# Month/project generation scans whole months of projects
_GENERATION_ENDPOINTS = ("kpi_bp.generate_monthly", "kpi_bp.generate_project")


def actor_rate_limit_key():
    """Dynamic rate limit key: acting user if resolved, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None and actor.user_id is not None:
        return f"user:{actor.user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - KPI generation:   KPI_GENERATION_RATE_LIMIT (default 10/minute)
        - Project writes:   60/minute
        - KPI reads:        200/minute
        - Health check:     exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    generation_limit = app.config.get("KPI_GENERATION_RATE_LIMIT", "10 per minute")
    for endpoint in _GENERATION_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view is not None:
            limiter.limit(generation_limit, key_func=actor_rate_limit_key)(view)

    for bp_name in ("project_bp", "coefficient_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=actor_rate_limit_key)(bp)

    for bp_name in ("kpi_bp", "notification_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(READ_LIMIT, key_func=actor_rate_limit_key)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — generation: %s, write: %s, read: %s",
        generation_limit, WRITE_LIMIT, READ_LIMIT,
    )
