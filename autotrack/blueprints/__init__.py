"""
AutoTrack — Subscription Request & Approval Service
Blueprint helpers shared by all API modules.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from autotrack.core.exceptions import (
    AccessDeniedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from autotrack.models import db
from autotrack.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def request_json() -> dict:
    """Return the JSON body as a dict, or an empty dict for missing/invalid bodies."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ── Error handlers ────────────────────────────────────────────────────────────


def register_error_handlers(bp):
    """Map service exceptions to JSON error responses on *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(TransitionError)
    def _handle_transition(error: TransitionError):
        return api_error(E.CONFLICT_STATE, str(error), details={
            "status": error.current_status, "action": error.action,
        })

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        code = E.CONFLICT_VERSION if error.field == "version" else E.CONFLICT_DUPLICATE
        return api_error(code, str(error), details={"field": error.field})

    @bp.errorhandler(AccessDeniedError)
    def _handle_forbidden(error: AccessDeniedError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(AuthenticationError)
    def _handle_unauthorized(error: AuthenticationError):
        return api_error(E.UNAUTHORIZED, str(error))

    @bp.errorhandler(HTTPException)
    def _handle_http(error: HTTPException):
        return api_error(E.VALIDATION_INVALID, error.description or error.name, status=error.code)

    @bp.errorhandler(SQLAlchemyError)
    def _handle_database(error: SQLAlchemyError):
        db.session.rollback()
        logger.exception("Database error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.DATABASE, "Database error")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
