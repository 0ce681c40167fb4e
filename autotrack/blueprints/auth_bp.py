"""
Auth Blueprint — registration and sign-in.

Endpoints:
  POST /api/v1/auth/register         — Create a password account → JWT
  POST /api/v1/auth/login            — Email + password + portal → JWT
  POST /api/v1/auth/federated-login  — Google / Microsoft ID token → JWT
  GET  /api/v1/auth/me               — Current user profile
"""

from flask import Blueprint, g, jsonify

from autotrack.auth import require_auth
from autotrack.blueprints import register_error_handlers, request_json
from autotrack.services import auth_service
from autotrack.services.jwt_service import token_response

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1/auth")
register_error_handlers(auth_bp)


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/register
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/register", methods=["POST"])
def register():
    """
    Body: { "name", "email", "password", "role", "sub_role"?, "department"? }
    """
    user = auth_service.register_user(request_json())
    return jsonify(token_response(user)), 201


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/login", methods=["POST"])
def login():
    """
    Authenticate with email + password against a portal.

    Body: { "email": "...", "password": "...", "role": "finance", "sub_role": "apa" }
    """
    data = request_json()
    user = auth_service.authenticate(
        (data.get("email") or "").strip(),
        data.get("password") or "",
        role=data.get("role"),
        sub_role=data.get("sub_role"),
    )
    return jsonify(token_response(user)), 200


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/federated-login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/federated-login", methods=["POST"])
def federated_login():
    """
    Sign in with the ID token issued by Google or Microsoft.

    Body: { "provider": "google"|"microsoft", "id_token", "role"?, "sub_role"? }
    """
    data = request_json()
    user = auth_service.federated_login(
        data.get("provider"),
        data.get("id_token"),
        role=data.get("role"),
        sub_role=data.get("sub_role"),
    )
    return jsonify(token_response(user)), 200


# ═══════════════════════════════════════════════════════════════
# GET /api/v1/auth/me
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    return jsonify({"user": g.current_user.to_dict()}), 200
