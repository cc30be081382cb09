"""
Approval Orbit
Blueprint registry and shared request helpers.
"""

from flask import request

from orbit.core.exceptions import ValidationError


def pagination_args(default_limit=50, max_limit=200):
    """Read limit/offset pagination from the query string.

    Query params:
        limit  : max items (default ``default_limit``, capped at max_limit)
        offset : starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset


def json_body():
    """Parsed JSON object of the request; an empty or unparseable body is ``{}``.

    Raises:
        ValidationError: the body is JSON but not an object.
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object",
                              details={"body": "must be an object"}, kind="invalid_body")
    return data
