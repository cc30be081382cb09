"""Shared utility functions for services and blueprints.

get_scoped:         PK lookup limited to one organization, raises NotFoundError
parse_optional_int: lenient int parsing for JSON bodies and query args
commit_or_raise:    commit the session, rolling back before re-raising
"""
import logging

from orbit.core.exceptions import NotFoundError, ValidationError
from orbit.models import db

logger = logging.getLogger(__name__)


def get_scoped(model, pk, organization_id=None, label=None):
    """Fetch a model instance by primary key within an organization.

    Records that exist but belong to another organization are reported as
    missing, never as forbidden.

    Raises:
        NotFoundError: no row, or the row is outside ``organization_id``.
    """
    label = label or model.__name__
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(resource=label, resource_id=pk, organization_id=organization_id)
    if organization_id is not None and getattr(obj, "organization_id", organization_id) != organization_id:
        raise NotFoundError(resource=label, resource_id=pk, organization_id=organization_id)
    return obj


def parse_optional_int(value, field):
    """Return ``value`` as an int, None when absent.

    Raises:
        ValidationError: value is present but not an integer.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", details={field: "not an integer"}) from exc


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_raise():
    """Commit the current session; on any failure roll back and re-raise.

    Services call this so a failed commit never leaves a half-applied
    session behind for the next request in the same app context.
    """
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Database error on commit")
        raise
