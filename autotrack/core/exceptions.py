"""
Service-wide exception hierarchy.

Services raise these; blueprints register one handler per type and map
them to HTTP status codes:

    NotFoundError        → 404
    ValidationError      → 422
    ConflictError        → 409
    TransitionError      → 409
    AccessDeniedError    → 403
    AuthenticationError  → 401

Usage:
    from autotrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Subscription", resource_id=sub_id)
    raise ValidationError("HOD for department Sales not found.", details={"department": "Sales"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Subscription", "User").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Nothing has been mutated when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a uniqueness clash or a concurrent modification.

    Args:
        resource: Model name.
        field: The field in conflict (``email``, ``version``, …).
        value: The conflicting value.
        message: Optional override of the default message.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class TransitionError(Exception):
    """Raised when a workflow action is not valid from the current status."""

    def __init__(self, subscription_id: str, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' subscription {subscription_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.subscription_id = subscription_id
        self.action = action
        self.current_status = current
        self.reason = reason


class AccessDeniedError(Exception):
    """Raised when the actor's role/sub-role does not allow the action."""

    def __init__(self, user_id: str | None, action: str, reason: str | None = None):
        msg = f"Access denied: user {user_id} may not '{action}'"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.user_id = user_id
        self.action = action
        self.reason = reason


class AuthenticationError(Exception):
    """Raised when credentials are missing, invalid, or do not match the portal."""
