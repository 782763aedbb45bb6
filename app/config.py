"""
Translation KPI Platform
Configuration classes for the Flask app factory.

    app.config.from_object(config[os.getenv("APP_ENV", "development")])

Every tunable reads an environment variable of the same name.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(default=None):
    """DATABASE_URL with the legacy ``postgres://`` scheme rewritten for SQLAlchemy 2."""
    raw = os.getenv("DATABASE_URL", "")
    if not raw:
        return default
    return raw.replace("postgres://", "postgresql://", 1)


def _flag(name, default):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Flask-Limiter; storage falls back to memory:// without Redis
    REDIS_URL = os.getenv("REDIS_URL", "")
    RATELIMIT_ENABLED = _flag("RATELIMIT_ENABLED", "true")
    KPI_GENERATION_RATE_LIMIT = os.getenv("KPI_GENERATION_RATE_LIMIT", "10 per minute")

    # Projects
    PROJECT_NUMBER_PREFIX = os.getenv("PROJECT_NUMBER_PREFIX", "PRJ")
    MAX_PROJECT_AMOUNT = float(os.getenv("MAX_PROJECT_AMOUNT", "100000000"))
    PROJECT_LOCK_TIMEOUT_SECONDS = float(os.getenv("PROJECT_LOCK_TIMEOUT_SECONDS", "10"))

    # KPI
    KPI_GENERATION_LOCK_TIMEOUT_SECONDS = int(os.getenv("KPI_GENERATION_LOCK_TIMEOUT_SECONDS", "1800"))
    KPI_PREVIEW_BATCH_LIMIT = int(os.getenv("KPI_PREVIEW_BATCH_LIMIT", "200"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        f"sqlite:///{os.path.join(basedir, 'instance', 'translation_kpi_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """PostgreSQL only; refuses to start without DATABASE_URL and SECRET_KEY."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Monthly generation runs inside one request; allow it a minute
        "connect_args": {"options": "-c statement_timeout=60000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
