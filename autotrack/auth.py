"""
AutoTrack — Subscription Request & Approval Service
Caller resolution and role guards for blueprints.

Usage:
    @subscription_bp.route("/subscriptions/<sub_id>/forward-to-am", methods=["POST"])
    @require_auth
    def forward(sub_id):
        actor = g.current_user
        ...

    @require_auth
    @require_role("admin")
    def delete_subscription(sub_id): ...
"""

import functools
import logging

from flask import g, request

from autotrack.core.exceptions import AccessDeniedError, AuthenticationError
from autotrack.models import db
from autotrack.models.directory import User

logger = logging.getLogger(__name__)


def get_current_user() -> User:
    """Resolve the caller set by the JWT middleware to a directory user."""
    error = getattr(g, "jwt_auth_error", None)
    if error:
        raise AuthenticationError(error)

    user_id = getattr(g, "jwt_user_id", None)
    if not user_id:
        raise AuthenticationError("Authentication required")

    user = db.session.get(User, user_id)
    if user is None:
        logger.warning("Token or header references unknown user %s", user_id)
        raise AuthenticationError("Unknown user")
    return user


def require_auth(f):
    """Decorator: resolve the caller into ``g.current_user`` or fail with 401."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = get_current_user()
        return f(*args, **kwargs)

    return decorated


def require_role(*roles: str):
    """Decorator: the caller's role must be one of *roles* (use after ``require_auth``)."""

    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user = g.current_user
            if user.role not in roles:
                logger.warning(
                    "Access denied: role '%s' tried to access %s",
                    user.role, request.path,
                )
                raise AccessDeniedError(user.id, request.endpoint or request.path,
                                        f"requires role {', '.join(sorted(roles))}")
            return f(*args, **kwargs)
        return decorated

    return decorator
