"""
Access tokens for AutoTrack users (PyJWT, HS256).

Claims: ``sub`` (user id), ``role``, ``sub_role`` (finance only),
``dept``, ``type="access"``, ``iat``, ``exp`` and a random ``jti``.
Lifetime is ``JWT_ACCESS_EXPIRES`` seconds (default one hour).

Only ``sub`` is trusted by the middleware; the role claims are a hint for
clients. Roles are always re-read from the directory on each request.
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

ALGORITHM = "HS256"
TOKEN_TYPE = "access"


def _signing_key() -> str:
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def access_lifetime() -> int:
    return int(current_app.config.get("JWT_ACCESS_EXPIRES", 3600))


def claims_for(user, now: datetime | None = None) -> dict:
    issued = now or datetime.now(timezone.utc)
    claims = {
        "sub": user.id,
        "role": user.role,
        "dept": user.department or None,
        "type": TOKEN_TYPE,
        "iat": issued,
        "exp": issued + timedelta(seconds=access_lifetime()),
        "jti": uuid.uuid4().hex,
    }
    if user.sub_role:
        claims["sub_role"] = user.sub_role
    return claims


def issue_access_token(user) -> str:
    return jwt.encode(claims_for(user), _signing_key(), algorithm=ALGORITHM)


def token_response(user) -> dict:
    """Body returned by the login / register endpoints."""
    return {
        "access_token": issue_access_token(user),
        "token_type": "Bearer",
        "expires_in": access_lifetime(),
        "user": user.to_dict(),
    }


def decode_access_token(token: str) -> dict:
    """Verify *token* and return its claims.

    Raises ``jwt.ExpiredSignatureError`` or ``jwt.InvalidTokenError``.
    """
    claims = jwt.decode(token, _signing_key(), algorithms=[ALGORITHM], options={"require": ["sub", "exp"]})
    if claims.get("type") != TOKEN_TYPE:
        raise jwt.InvalidTokenError("Not an access token")
    return claims
