"""JSON error bodies shared by every blueprint.

Shape: ``{"error": <message>, "code": <ERR_*>, "details": {"kind": ...}}``.
``details`` is omitted when empty.  Views either return ``api_error(...)``
directly or let an OrbitError bubble up to the app-level handler, which
calls ``error_response``.
"""

from __future__ import annotations

from flask import jsonify

from orbit.core.exceptions import (
    ConcurrencyConflict,
    ConflictError,
    NotFoundError,
    OrbitError,
    PreconditionFailed,
    ValidationError,
)


class E:
    """Stable ``code`` values; clients branch on these, not on messages."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    # Lost an optimistic-lock race twice; safe to resend.
    CONFLICT_CONCURRENT = "ERR_CONFLICT_CONCURRENT"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_CONCURRENT: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a view to return.

    ``status`` defaults to the code's usual HTTP status, or 400 for codes
    not in the table.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)


def error_response(exc: OrbitError):
    """Translate a service exception into its HTTP error."""
    details = {"kind": exc.kind}
    if isinstance(exc, ValidationError):
        details.update(exc.details)
        return api_error(E.VALIDATION_INVALID, str(exc), details=details)
    if isinstance(exc, NotFoundError):
        return api_error(E.NOT_FOUND, str(exc), details=details)
    if isinstance(exc, PreconditionFailed):
        code = E.FORBIDDEN if exc.forbidden else E.CONFLICT_STATE
        return api_error(code, str(exc), details=details)
    if isinstance(exc, ConcurrencyConflict):
        details["retryable"] = True
        return api_error(E.CONFLICT_CONCURRENT, str(exc), details=details)
    if isinstance(exc, ConflictError):
        details["field"] = exc.field
        return api_error(E.CONFLICT_STATE, str(exc), details=details)
    return api_error(E.INTERNAL, str(exc), details=details)
