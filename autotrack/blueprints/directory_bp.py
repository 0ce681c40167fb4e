"""
AutoTrack — Subscription Request & Approval Service
Directory Blueprint — users and departments.

Endpoints:
    GET   /api/v1/users           — ?role=&sub_role=&department=&search=&limit=&offset=
    PATCH /api/v1/users/<id>      — admin: name / role / sub_role / department / is_hod
    GET   /api/v1/departments
    POST  /api/v1/departments     — admin
"""

from flask import Blueprint, jsonify, request

from autotrack.auth import require_auth, require_role
from autotrack.blueprints import paginate_query, register_error_handlers, request_json
from autotrack.services import directory

directory_bp = Blueprint("directory", __name__, url_prefix="/api/v1")
register_error_handlers(directory_bp)


@directory_bp.route("/users", methods=["GET"])
@require_auth
def list_users():
    q = directory.list_users(
        role=request.args.get("role"),
        sub_role=request.args.get("sub_role"),
        department=request.args.get("department"),
        search=request.args.get("search"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [u.to_dict() for u in items], "total": total}), 200


@directory_bp.route("/users/<user_id>", methods=["PATCH"])
@require_auth
@require_role("admin")
def update_user(user_id):
    user = directory.update_user(user_id, request_json())
    return jsonify({"user": user.to_dict()}), 200


@directory_bp.route("/departments", methods=["GET"])
@require_auth
def list_departments():
    depts = directory.list_departments()
    return jsonify({"items": [d.to_dict() for d in depts], "total": len(depts)}), 200


@directory_bp.route("/departments", methods=["POST"])
@require_auth
@require_role("admin")
def create_department():
    dept = directory.create_department(request_json().get("name"))
    return jsonify({"department": dept.to_dict()}), 201
