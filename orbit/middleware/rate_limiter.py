"""
Per-blueprint request quotas with Flask-Limiter.

The shared Limiter lives in orbit/__init__.py without default limits;
quotas are attached here once the blueprints are registered.  Keys are the
remote address.  Health probes are exempt, and nothing is limited under
TESTING.
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
# Dashboards poll metrics and the inbox.
READ_LIMIT = "200/minute"

_QUOTAS = {
    "approval_bp": WRITE_LIMIT,
    "project_bp": WRITE_LIMIT,
    "workflow_bp": WRITE_LIMIT,
    "metrics_bp": READ_LIMIT,
    "notification_bp": READ_LIMIT,
}


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        logger.info("Rate limits skipped in testing")
        return

    for name, quota in _QUOTAS.items():
        blueprint = app.blueprints.get(name)
        if blueprint is not None:
            limiter.limit(quota)(blueprint)

    if "health_bp" in app.blueprints:
        limiter.exempt(app.blueprints["health_bp"])

    logger.info("Rate limits applied to %d blueprints", len(_QUOTAS))
