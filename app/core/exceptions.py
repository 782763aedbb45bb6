"""
Platform-wide exception hierarchy.

Services raise these types; the application factory registers one handler
per type and maps it to the standard JSON error body produced by
``app.utils.errors.api_error``.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=42)
    raise ValidationError("amount must be positive", details={"amount": -1})
    raise ConflictError.duplicate("ProjectMember", "user_id", 7)
"""

from app.utils.errors import E


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Also used for acceptance actions against an assignment that has already
    been resolved: from the caller's point of view the pending assignment is
    gone.

    Args:
        resource: Human-readable model/entity name (e.g. "Project", "KpiRecord").
        resource_id: The key that was looked up.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input violates a business rule.

    Covers bad amounts and dates, unsupported transitions, missing required
    roles and backward status moves.  Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
        code: Machine-readable code, ``E.VALIDATION_INVALID`` unless a more
              specific one applies (e.g. ``E.STATUS_CANNOT_ROLLBACK``).
    """

    def __init__(self, message: str, details: dict | None = None, code: str | None = None) -> None:
        self.details = details or {}
        self.code = code or E.VALIDATION_INVALID
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the operation collides with existing state.

    Duplicate natural keys, a month generation already running, or any
    mutation attempted on a terminal project.  Maps to HTTP 409.
    """

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None) -> None:
        self.code = code or E.CONFLICT_STATE
        self.details = details or {}
        super().__init__(message)

    @classmethod
    def duplicate(cls, resource: str, field: str, value=None) -> "ConflictError":
        return cls(
            f"{resource} with {field}={value!r} already exists",
            code=E.CONFLICT_DUPLICATE,
            details={"resource": resource, "field": field},
        )


class PermissionDeniedError(Exception):
    """Raised when the acting user's role lacks the capability.  Maps to HTTP 403."""

    code = E.FORBIDDEN

    def __init__(self, user_id: int | None, action: str) -> None:
        self.user_id = user_id
        self.action = action
        super().__init__(f"User {user_id} is not allowed to {action}")
