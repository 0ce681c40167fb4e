"""
AutoTrack — Subscription Request & Approval Service
Subscription Blueprint.

Endpoints:
    POST   /api/v1/subscriptions                          — submit a request
    GET    /api/v1/subscriptions                          — role-scoped listing / work queues
    GET    /api/v1/subscriptions/renewal-alerts           — paid-for subscriptions in their alert window
    GET    /api/v1/subscriptions/continuations-due        — Active subscriptions awaiting this month's decision
    GET    /api/v1/subscriptions/<id>                     — detail
    PATCH  /api/v1/subscriptions/<id>                     — admin edit (descriptive / financial fields)
    DELETE /api/v1/subscriptions/<id>                     — admin delete with justification
    GET    /api/v1/subscriptions/<id>/audit               — transition history
    POST   /api/v1/subscriptions/<id>/renew
    POST   /api/v1/subscriptions/<id>/decision            — HOD approve/decline, APA decline
    POST   /api/v1/subscriptions/<id>/forward-to-am       — APA
    POST   /api/v1/subscriptions/<id>/am-log              — AM verification
    POST   /api/v1/subscriptions/<id>/payment             — APA payment execution
    POST   /api/v1/subscriptions/<id>/renewal-alert
    POST   /api/v1/subscriptions/<id>/continuation        — monthly continue / decline
    GET    /api/v1/deleted-subscriptions                  — admin archive

Mutating endpoints accept ``expected_version`` in the body; a stale value
returns 409. The workflow engine owns validation, persistence and
notifications; this module only translates HTTP.
"""

import logging
from datetime import date

from flask import Blueprint, current_app, g, jsonify, request

from autotrack.auth import require_auth, require_role
from autotrack.blueprints import paginate_query, register_error_handlers, request_json
from autotrack.core.exceptions import ValidationError
from autotrack.models.audit import AuditLog
from autotrack.services.subscription_workflow import get_workflow

logger = logging.getLogger(__name__)

subscription_bp = Blueprint("subscriptions", __name__, url_prefix="/api/v1")
register_error_handlers(subscription_bp)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _as_of(raw) -> date | None:
    """Optional evaluation date; honoured only when ALLOW_AS_OF is on."""
    if not raw or not current_app.config.get("ALLOW_AS_OF"):
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        raise ValidationError("as_of must be an ISO date (YYYY-MM-DD)", details={"as_of": raw}) from None


def _one(sub, status=200):
    return jsonify({"subscription": sub.to_dict()}), status


# ═════════════════════════════════════════════════════════════════════════
# Create & query
# ═════════════════════════════════════════════════════════════════════════


@subscription_bp.route("/subscriptions", methods=["POST"])
@require_auth
def submit_request():
    """
    Body: { "tool_name", "department"?, "cost", "currency"?, "duration"? |
            "start_date"/"end_date"? | "frequency"?, "alert_days"?, "vendor_name"?,
            "purpose"?, "location"?, "request_type"?, "base_monthly_cost"? }
    """
    sub = get_workflow().submit_request(g.current_user, request_json())
    return _one(sub, 201)


@subscription_bp.route("/subscriptions", methods=["GET"])
@require_auth
def list_subscriptions():
    """Query params: status (comma-separated), department, requested_by, tool_name, queue."""
    status = request.args.get("status")
    q = get_workflow().search(
        g.current_user,
        status=[s.strip() for s in status.split(",") if s.strip()] if status else None,
        department=request.args.get("department"),
        requested_by=request.args.get("requested_by"),
        tool_name=request.args.get("tool_name"),
        queue=request.args.get("queue"),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [s.to_dict() for s in items], "total": total}), 200


@subscription_bp.route("/subscriptions/renewal-alerts", methods=["GET"])
@require_auth
def renewal_alerts():
    subs = get_workflow().renewal_alerts_due(g.current_user, _as_of(request.args.get("as_of")))
    return jsonify({"items": [s.to_dict() for s in subs], "total": len(subs)}), 200


@subscription_bp.route("/subscriptions/continuations-due", methods=["GET"])
@require_auth
def continuations_due():
    subs = get_workflow().continuations_due(g.current_user, _as_of(request.args.get("as_of")))
    return jsonify({"items": [s.to_dict() for s in subs], "total": len(subs)}), 200


@subscription_bp.route("/subscriptions/<sub_id>", methods=["GET"])
@require_auth
def get_subscription(sub_id):
    return _one(get_workflow().get_visible(g.current_user, sub_id))


@subscription_bp.route("/subscriptions/<sub_id>/audit", methods=["GET"])
@require_auth
def subscription_audit(sub_id):
    get_workflow().get_visible(g.current_user, sub_id)
    logs = (
        AuditLog.query
        .filter_by(entity_type="subscription", entity_id=sub_id)
        .order_by(AuditLog.created_at, AuditLog.id)
        .all()
    )
    return jsonify({"items": [log.to_dict() for log in logs], "total": len(logs)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Admin
# ═════════════════════════════════════════════════════════════════════════


@subscription_bp.route("/subscriptions/<sub_id>", methods=["PATCH"])
@require_auth
@require_role("admin")
def update_subscription(sub_id):
    data = request_json()
    expected_version = data.pop("expected_version", None)
    sub = get_workflow().update_details(g.current_user, sub_id, data, expected_version=expected_version)
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>", methods=["DELETE"])
@require_auth
@require_role("admin")
def delete_subscription(sub_id):
    """Body: { "justification": "..." }"""
    archive = get_workflow().admin_delete(g.current_user, sub_id, request_json().get("justification"))
    return jsonify({"deleted": archive.to_dict()}), 200


@subscription_bp.route("/deleted-subscriptions", methods=["GET"])
@require_auth
@require_role("admin")
def list_deleted():
    items, total = paginate_query(get_workflow().store.deleted_query())
    return jsonify({"items": [d.to_dict() for d in items], "total": total}), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow transitions
# ═════════════════════════════════════════════════════════════════════════


@subscription_bp.route("/subscriptions/<sub_id>/renew", methods=["POST"])
@require_auth
def renew(sub_id):
    """Body: { "duration", "cost", "remarks"?, "alert_days"?, "currency"?, "location"?,
               "frequency"?, "request_type"?, "expected_version"? }"""
    data = request_json()
    sub = get_workflow().renew(
        g.current_user, sub_id,
        duration=data.get("duration"),
        cost=data.get("cost"),
        remarks=data.get("remarks"),
        alert_days=data.get("alert_days"),
        currency=data.get("currency"),
        location=data.get("location"),
        frequency=data.get("frequency"),
        request_type=data.get("request_type"),
        expected_version=data.get("expected_version"),
    )
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>/decision", methods=["POST"])
@require_auth
def decide(sub_id):
    """Body: { "decision": "Approved"|"Declined", "reason"?, "expected_version"? }"""
    data = request_json()
    sub = get_workflow().decide(
        g.current_user, sub_id, data.get("decision"), data.get("reason"),
        expected_version=data.get("expected_version"),
    )
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>/forward-to-am", methods=["POST"])
@require_auth
def forward_to_am(sub_id):
    data = request_json()
    sub = get_workflow().forward_to_am(
        g.current_user, sub_id, expected_version=data.get("expected_version"),
    )
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>/am-log", methods=["POST"])
@require_auth
def submit_am_log(sub_id):
    """Body: { "planned_amount", "planned_currency", "planned_date"?, "verification_note"?,
               "recommended_payment_type"?, "suggested_payment_account"?, "attachments"? }"""
    data = request_json()
    expected_version = data.pop("expected_version", None)
    sub = get_workflow().submit_am_log(g.current_user, sub_id, data, expected_version=expected_version)
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>/payment", methods=["POST"])
@require_auth
def mark_as_paid(sub_id):
    """Body: { "transaction_id", "amount_paid", "currency"?, "exchange_rate"?, "payment_type"?,
               "payment_date"?, "receipt_url"?, "invoice_number"?, "notes"? }"""
    data = request_json()
    expected_version = data.pop("expected_version", None)
    sub = get_workflow().mark_as_paid(g.current_user, sub_id, data, expected_version=expected_version)
    return _one(sub)


@subscription_bp.route("/subscriptions/<sub_id>/renewal-alert", methods=["POST"])
@require_auth
def trigger_renewal_alert(sub_id):
    wf = get_workflow()
    wf.get_visible(g.current_user, sub_id)
    sub, triggered = wf.trigger_renewal_alert(
        sub_id, _as_of(request_json().get("as_of")), actor=g.current_user,
    )
    return jsonify({"subscription": sub.to_dict(), "triggered": triggered}), 200


@subscription_bp.route("/subscriptions/<sub_id>/continuation", methods=["POST"])
@require_auth
def update_continuation(sub_id):
    """Body: { "decision": "continue"|"decline", "expected_version"?, "as_of"? }"""
    data = request_json()
    sub, new_request = get_workflow().update_continuation(
        g.current_user, sub_id, data.get("decision"), _as_of(data.get("as_of")),
        expected_version=data.get("expected_version"),
    )
    return jsonify({
        "subscription": sub.to_dict(),
        "new_request": new_request.to_dict() if new_request else None,
    }), 200
