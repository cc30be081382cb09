"""
Approval Orbit configuration.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())

Every setting can be overridden through the environment variable of the
same name.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'approval_orbit_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_bool(name, default):
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes")


def _database_url():
    # SQLAlchemy 2 only understands the postgresql:// scheme
    raw = os.getenv("DATABASE_URL", "")
    return raw.replace("postgres://", "postgresql://", 1) if raw else None


_POOLED_ENGINE = {
    "pool_pre_ping": True,
    "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
    "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
    "pool_recycle": 300,
    "pool_timeout": 20,
}


class Config:
    """Settings shared by every environment."""

    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOLED_ENGINE)

    # Rate limiter storage; memory:// keeps counters per process
    RATELIMIT_STORAGE_URI = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # SMTP; without MAIL_SERVER emails are written to email_logs only
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", True)
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "Approval Orbit <noreply@approvalorbit.com>")

    # Review notifications
    NOTIFICATION_EMAIL_ENABLED = _env_bool("NOTIFICATION_EMAIL_ENABLED", True)
    NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
    NOTIFICATION_RETRY_WAIT_SECONDS = float(os.getenv("NOTIFICATION_RETRY_WAIT_SECONDS", "1"))
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")

    # Dashboard: asset progress (percent) that counts as "near completion"
    NEAR_COMPLETION_THRESHOLD = int(os.getenv("NEAR_COMPLETION_THRESHOLD", "80"))


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _SQLITE_DEV


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a single static connection; pool sizing does not apply
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    NOTIFICATION_RETRY_WAIT_SECONDS = 0


class ProductionConfig(Config):
    """Production settings.  Instantiating it validates required secrets."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOLED_ENGINE,
        "connect_args": {"options": "-c statement_timeout=30000"},
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
