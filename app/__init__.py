"""
Translation KPI Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as sa_engine
from sqlalchemy import event as sa_event

from app.auth import Actor, init_auth
from app.config import config
from app.core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.timing import init_request_timing
from app.models import db
from app.services.coefficient_registry import init_coefficient_registry
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


@sa_event.listens_for(sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
# Storage comes from RATELIMIT_STORAGE_URI; limits are attached per route in init_rate_limits
limiter = Limiter(key_func=get_remote_address, default_limits=[])


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)

    app.config.setdefault("RATELIMIT_STORAGE_URI", app.config.get("REDIS_URL") or "memory://")
    limiter.init_app(app)

    origins = [o.strip() for o in (app.config.get("CORS_ORIGINS") or "").split(",") if o.strip()]
    if origins and origins != ["*"]:
        CORS(app, origins=origins)
    else:
        CORS(app)


def _create_tables(app):
    """CREATE IF NOT EXISTS for every model; migrations stay authoritative in production."""
    from app.models import audit, coefficient, kpi, notification, project, user  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)


def _register_blueprints(app):
    from app.blueprints.coefficient_bp import coefficient_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.kpi_bp import kpi_bp
    from app.blueprints.notification_bp import notification_bp
    from app.blueprints.project_bp import project_bp

    for bp in (project_bp, kpi_bp, coefficient_bp, notification_bp, health_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app):
    """Map service exceptions and HTTP errors to the standard JSON body."""

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        db.session.rollback()
        return api_error(e.code, str(e), details=e.details or None)

    @app.errorhandler(NotFoundError)
    def _not_found_error(e):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(e))

    @app.errorhandler(ConflictError)
    def _conflict_error(e):
        db.session.rollback()
        return api_error(e.code, str(e), details=e.details or None)

    @app.errorhandler(PermissionDeniedError)
    def _permission_error(e):
        db.session.rollback()
        logger.warning("Permission denied: user %s tried %s", e.user_id, e.action)
        return api_error(E.FORBIDDEN, str(e))

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, f"No route for {request.path}")

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed on {request.path}")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests",
                         details={"limit": str(e.description)})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.group("kpi")
    def kpi_group():
        """KPI ledger maintenance commands."""

    @kpi_group.command("generate-month")
    @click.argument("month")
    @click.option("--force", is_flag=True, help="Recompute unreviewed records.")
    def generate_month_cmd(month, force):
        """Generate KPI records for MONTH (YYYY-MM)."""
        from app.services.kpi_generation import generate_monthly_kpi

        try:
            report = generate_monthly_kpi(month, actor=Actor.system(), force=force)
        except (ValidationError, ConflictError) as exc:
            raise click.ClickException(str(exc))
        click.echo(
            f"{report['month']}: created={report['count']} updated={report['updated']} "
            f"skipped={report['skipped']} projects={report['projects_processed']} "
            f"company_total={report['company_total']} errors={len(report['errors'])}"
        )
        for err in report["errors"]:
            click.echo(f"  ! {err}", err=True)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, else "development".

    Returns:
        Configured Flask application instance.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # ProductionConfig validates its environment on instantiation
    app.config.from_object(cfg() if config_name == "production" else cfg)

    configure_logging(app)
    _init_extensions(app)
    init_auth(app)
    init_request_timing(app)
    init_coefficient_registry(app)
    _create_tables(app)
    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cli(app)
    # Limits attach to registered views, so this runs last
    init_rate_limits(app, limiter)

    logger.info("App created (config=%s)", config_name)
    return app
