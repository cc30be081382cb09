"""
Approval Orbit application factory.

Usage:
    from orbit import create_app
    app = create_app()           # APP_ENV or "development"
    app = create_app("testing")
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine

from orbit.config import config
from orbit.core.exceptions import OrbitError
from orbit.middleware.identity import init_identity_context
from orbit.middleware.logging_config import configure_logging
from orbit.middleware.rate_limiter import init_rate_limits
from orbit.middleware.timing import init_request_timing
from orbit.models import db
from orbit.utils.errors import E, api_error, error_response

logger = logging.getLogger(__name__)

migrate = Migrate()
# Limits are attached per blueprint in init_rate_limits
limiter = Limiter(key_func=get_remote_address, default_limits=[])


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, _record):
    # ON DELETE CASCADE / SET NULL on the review tables rely on this
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _register_blueprints(app):
    from orbit.blueprints.approval_bp import approval_bp
    from orbit.blueprints.health_bp import health_bp
    from orbit.blueprints.metrics_bp import metrics_bp
    from orbit.blueprints.notification_bp import notification_bp
    from orbit.blueprints.project_bp import project_bp
    from orbit.blueprints.workflow_bp import workflow_bp

    for bp in (workflow_bp, project_bp, approval_bp, metrics_bp, notification_bp, health_bp):
        app.register_blueprint(bp)


def _register_error_handlers(app):
    @app.errorhandler(OrbitError)
    def handle_orbit_error(exc):
        db.session.rollback()
        return error_response(exc)

    @app.errorhandler(404)
    def not_found(_exc):
        return api_error(E.NOT_FOUND, "Not found", details={"kind": "not_found", "path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(_exc):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def rate_limited(exc):
        return api_error("ERR_RATE_LIMITED", "Too many requests", status=429,
                         details={"retry_after": exc.description})

    @app.errorhandler(500)
    def server_error(exc):
        logger.error("Unhandled error: %s", exc, exc_info=True)
        db.session.rollback()
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Build the Flask application.

    Args:
        config_name: "development", "testing" or "production".  Defaults to
                     the APP_ENV environment variable.
    """
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name or os.getenv("APP_ENV", "development")]())
    os.makedirs(app.instance_path, exist_ok=True)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    origins = app.config.get("CORS_ORIGINS", "*")
    CORS(app, origins="*" if origins == "*" else [o.strip() for o in origins.split(",") if o.strip()])

    # Timing first so 401 responses still carry a request id
    init_request_timing(app)
    init_identity_context(app)

    # Model modules must be imported before create_all / autogenerate
    from orbit.models import notification, project, review, workflow  # noqa: F401

    with app.app_context():
        try:
            db.create_all()
        except Exception as exc:
            app.logger.warning("db.create_all() failed: %s", exc)

    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)
    return app
