"""
Identity Context Middleware: caller identity from the upstream auth proxy.

Authentication and organization membership are resolved before requests
reach this service.  The proxy forwards the result in headers:

    X-User-Id     authenticated user id (required)
    X-Org-Id      active organization id (required)
    X-User-Name   display name (optional)
    X-User-Email  email address (optional)

This middleware copies them onto ``g`` and rejects API calls that arrive
without them.

Chain order:
  timing.py  →  identity.py  →  route handler
"""

import logging

from flask import g, request

from orbit.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that do not need a caller identity
IDENTITY_SKIP_PREFIXES = (
    "/api/v1/health",
)


def init_identity_context(app):
    """Register the identity middleware as a before_request hook."""

    @app.before_request
    def _identity_context():
        g.user_id = None
        g.user_name = None
        g.user_email = None
        g.organization_id = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in IDENTITY_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        user_id = (request.headers.get("X-User-Id") or "").strip()
        org_id = (request.headers.get("X-Org-Id") or "").strip()
        if not user_id or not org_id:
            logger.warning("Rejected unauthenticated request to %s", request.path,
                           extra={"path": request.path, "request_id": getattr(g, "request_id", None)})
            return api_error(E.UNAUTHENTICATED, "Authentication required",
                             details={"kind": "unauthenticated"})

        g.user_id = user_id
        g.organization_id = org_id
        g.user_name = (request.headers.get("X-User-Name") or "").strip() or user_id
        g.user_email = (request.headers.get("X-User-Email") or "").strip() or None
        return None
