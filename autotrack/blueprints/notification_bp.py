"""
AutoTrack — Subscription Request & Approval Service
Notification Blueprint.

Endpoints (always scoped to the caller):
    GET  /api/v1/notifications               — ?unread_only=true&limit=&offset=
    GET  /api/v1/notifications/unread-count
    POST /api/v1/notifications/<id>/read
    POST /api/v1/notifications/read-all
"""

from flask import Blueprint, g, jsonify, request

from autotrack.auth import require_auth
from autotrack.blueprints import register_error_handlers
from autotrack.services.notification import NotificationService

notification_bp = Blueprint("notifications", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


@notification_bp.route("/notifications", methods=["GET"])
@require_auth
def list_notifications():
    unread_only = request.args.get("unread_only", "false").lower() in ("true", "1", "yes")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)

    items, total = NotificationService.list_for_user(
        g.current_user.id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(g.current_user.id),
    }), 200


@notification_bp.route("/notifications/unread-count", methods=["GET"])
@require_auth
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(g.current_user.id)}), 200


@notification_bp.route("/notifications/<notif_id>/read", methods=["POST"])
@require_auth
def mark_read(notif_id):
    notif = NotificationService.mark_read(g.current_user.id, notif_id)
    return jsonify(notif.to_dict()), 200


@notification_bp.route("/notifications/read-all", methods=["POST"])
@require_auth
def mark_all_read():
    count = NotificationService.mark_all_read(g.current_user.id)
    return jsonify({"marked_read": count}), 200
