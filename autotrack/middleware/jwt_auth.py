"""
JWT Auth Middleware — parses the caller identity, sets ``g.jwt_user_id``.

Priority order:
  1. JWT (Authorization: Bearer <token>)          →  g.jwt_user_id
  2. X-User-Id header, when TRUST_USER_HEADER=on  →  g.jwt_user_id

Routes decide whether a caller is required (see ``autotrack.auth``);
this hook never rejects a request on its own.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from autotrack.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip identity parsing entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/federated-login",
    "/api/v1/health",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_auth_error = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
            try:
                payload = decode_access_token(token)
                g.jwt_user_id = payload.get("sub")
            except pyjwt.ExpiredSignatureError:
                g.jwt_auth_error = "Token expired"
            except pyjwt.InvalidTokenError:
                logger.warning("Invalid bearer token on %s", path)
                g.jwt_auth_error = "Invalid token"
            return

        if current_app.config.get("TRUST_USER_HEADER"):
            header_user = request.headers.get("X-User-Id", "").strip()
            if header_user:
                g.jwt_user_id = header_user
