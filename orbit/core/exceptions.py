"""
Service-layer exception hierarchy.

Services raise these; blueprints register handlers against them once and
turn them into ``api_error`` responses.  Every exception carries a ``kind``
so a client can render an inline message without parsing the text.

Usage:
    from orbit.core.exceptions import NotFoundError, PreconditionFailed

    raise NotFoundError(resource="Asset", resource_id=42)
    raise PreconditionFailed("Only the project owner can give final approval",
                             kind="not_owner", forbidden=True)
"""


class OrbitError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "error"

    def __init__(self, message: str, kind: str | None = None) -> None:
        if kind:
            self.kind = kind
        super().__init__(message)


class NotFoundError(OrbitError):
    """Raised when a requested resource does not exist within the caller's organization.

    Used for BOTH genuinely missing records AND cross-organization access, so a
    caller cannot probe for ids that belong to someone else.

    Args:
        resource: Human-readable model name (e.g. "Asset", "Workflow").
        resource_id: The PK that was looked up.
        organization_id: Optional scope that was enforced, for debug logging.
    """

    kind = "not_found"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(OrbitError):
    """Raised when input is well-formed but invalid for the operation.

    Missing rejection notes, an unknown stage order and an invalid workflow
    stage list all end up here.  Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown, keyed by field name.
    """

    kind = "validation"

    def __init__(self, message: str, details: dict | None = None, kind: str | None = None) -> None:
        self.details = details or {}
        super().__init__(message, kind)


class PreconditionFailed(OrbitError):
    """Raised when the caller acts outside what the asset's state allows.

    Role failures (not a reviewer of the stage, not the project owner) map to
    HTTP 403; state failures (wrong stage, not pending final approval) map
    to HTTP 409.  Nothing is mutated and the call is never retried.
    """

    kind = "precondition_failed"

    def __init__(self, message: str, kind: str | None = None, forbidden: bool = False) -> None:
        self.forbidden = forbidden
        super().__init__(message, kind)


class ConflictError(OrbitError):
    """Raised when an operation conflicts with existing data.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field that conflicts.
        value: The conflicting value.
        message: Optional override of the default duplicate message.
    """

    kind = "conflict"

    def __init__(self, resource: str, field: str, value=None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class ConcurrencyConflict(OrbitError):
    """Raised when a concurrent writer won the same asset transition twice in a row.

    The engine already retried once; the caller may retry the request.
    """

    kind = "concurrency_conflict"


class NotificationDeliveryFailure(Exception):
    """Raised by delivery channels when a message could not be sent.

    The dispatcher catches it, logs it and moves on; it never reaches an
    API caller.
    """

    def __init__(self, channel: str, recipient: str, reason: str) -> None:
        self.channel = channel
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"{channel} delivery to {recipient} failed: {reason}")
