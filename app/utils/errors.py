"""JSON error bodies shared by the blueprints and the app-level handlers.

Every error response is ``{"error": <message>, "code": <E.*>[, "details": {...}]}``
with the HTTP status derived from the code:

    return api_error(E.VALIDATION_REQUIRED, "month is required")
    return api_error(E.STATUS_CANNOT_ROLLBACK, "Cannot move back", details={"current": "review_done"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes.  ``ERR_*`` for general failures, ``STATUS_*`` for lifecycle ordering."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    STATUS_CANNOT_ROLLBACK = "STATUS_CANNOT_ROLLBACK"
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_RUNNING = "ERR_CONFLICT_RUNNING"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 400,
    E.STATUS_CANNOT_ROLLBACK: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_RUNNING: 409,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Return ``(response, status)`` for a Flask view; unknown codes map to 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
