"""JSON error bodies: ``{"error": <message>, "code": <ERR_*>, "details": {...}}``.

    return api_error(E.NOT_FOUND, "Subscription not found")
    return api_error(E.CONFLICT_STATE, str(exc), details={"status": "Declined"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"  # malformed request
    VALIDATION_RULE = "ERR_VALIDATION_RULE"        # well-formed, fails a business rule
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"          # illegal status transition
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"      # stale expected_version
    RATE_LIMITED = "ERR_RATE_LIMITED"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS = {
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.RATE_LIMITED: 429,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for a view or error handler to return.

    *status* overrides the code's default (unknown codes fall back to 400).
    """
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
