"""
AutoTrack — Tests: subscription HTTP API.

End-to-end through the Flask test client against SQLite. Callers are
identified with the X-User-Id header (TRUST_USER_HEADER is on in testing).

Covers:
    1. Request → approval → finance → payment walkthrough (notifications at each step)
    2. Missing HOD, authorization, routing and error mapping
    3. Declined absorbing, wrong-status payment, renew reset
    4. Optimistic concurrency via expected_version
    5. Renewal alerts and monthly continuation
    6. Persistence round-trip of the nested finance record
    7. Admin edit / delete / archive, audit trail
"""

from datetime import datetime, timedelta, timezone

from autotrack.models import db
from autotrack.models.audit import AuditLog
from autotrack.models.notification import AppNotification
from autotrack.models.subscription import Subscription
from autotrack.services import pricing

API = "/api/v1/subscriptions"


def _submit(client, headers, user, **overrides):
    body = {"tool_name": "Figma", "department": "Engineering", "cost": 120, "duration": 1}
    body.update(overrides)
    return client.post(API, json=body, headers=headers(user))


def _post(client, headers, user, sub_id, action, body=None):
    return client.post(f"{API}/{sub_id}/{action}", json=body or {}, headers=headers(user))


def _messages(user):
    return [n.message for n in AppNotification.query.filter_by(user_id=user.id).order_by(AppNotification.created_at)]


def _create_paid(client, headers, org):
    sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
    assert _post(client, headers, org.alice, sub_id, "decision",
                 {"decision": "Approved", "reason": "approved for Q1 budget"}).status_code == 200
    assert _post(client, headers, org.apa, sub_id, "forward-to-am").status_code == 200
    assert _post(client, headers, org.am, sub_id, "am-log",
                 {"planned_amount": 120, "planned_currency": "USD"}).status_code == 200
    res = _post(client, headers, org.apa, sub_id, "payment", {"amount_paid": 120, "transaction_id": "TX1"})
    assert res.status_code == 200
    return res.get_json()["subscription"]


# ═══════════════════════════════════════════════════════════════════════════
#  1. WALKTHROUGH
# ═══════════════════════════════════════════════════════════════════════════


class TestWalkthrough:
    def test_submit_routes_to_hod(self, client, org, headers):
        res = _submit(client, headers, org.bob)
        assert res.status_code == 201
        sub = res.get_json()["subscription"]
        assert sub["status"] == "Pending"
        assert sub["hod_id"] == org.alice.id
        assert sub["version"] == 1
        assert _messages(org.alice) == ["New subscription request for Figma from Bob."]
        assert _messages(org.bob) == ["Your request for Figma has been submitted."]

    def test_hod_approval_notifies_all_apa(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.alice, sub_id, "decision",
                    {"decision": "Approved", "reason": "approved for Q1 budget"})
        assert res.status_code == 200
        sub = res.get_json()["subscription"]
        assert sub["status"] == "Approved"
        assert sub["approved_by"] == org.alice.id
        assert sub["remarks"] == "HOD Note: approved for Q1 budget"
        msg = "Subscription for Figma is approved and awaiting APA verification."
        assert _messages(org.apa) == [msg]
        assert _messages(org.apa2) == [msg]

    def test_forward_and_am_log(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        _post(client, headers, org.alice, sub_id, "decision", {"decision": "Approved"})

        res = _post(client, headers, org.apa, sub_id, "forward-to-am")
        assert res.get_json()["subscription"]["status"] == "ForwardedToAM"
        assert _messages(org.am) == ["Request for Figma has been forwarded to you for payment verification."]

        res = _post(client, headers, org.am, sub_id, "am-log", {"planned_amount": 120, "planned_currency": "USD"})
        assert res.status_code == 200
        assert res.get_json()["subscription"]["status"] == "VerifiedByAM"
        assert _messages(org.apa)[-1] == (
            "Amit has submitted payment verification for Figma. It is now pending your execution."
        )
        assert _messages(org.apa2)[-1] == _messages(org.apa)[-1]

    def test_payment_sets_expiry(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        assert sub["status"] == "PaymentCompleted"
        request_date = datetime.fromisoformat(sub["request_date"])
        assert datetime.fromisoformat(sub["expiry_date"]) == pricing.compute_expiry(request_date, 1)
        assert _messages(org.bob)[-1] == "Payment for Figma has been completed. Your subscription is now active."
        assert _messages(org.alice)[-1] == (
            "Subscription for Figma in your department has been paid and is now active."
        )

    def test_work_queues(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.get(f"{API}?queue=hod", headers=headers(org.alice))
        assert [s["id"] for s in res.get_json()["items"]] == [sub_id]

        _post(client, headers, org.alice, sub_id, "decision", {"decision": "Approved"})
        assert client.get(f"{API}?queue=hod", headers=headers(org.alice)).get_json()["total"] == 0
        assert client.get(f"{API}?queue=apa", headers=headers(org.apa)).get_json()["total"] == 1
        assert client.get(f"{API}?queue=am", headers=headers(org.am)).get_json()["total"] == 0


# ═══════════════════════════════════════════════════════════════════════════
#  2. VALIDATION, AUTHORIZATION, ERROR MAPPING
# ═══════════════════════════════════════════════════════════════════════════


class TestErrors:
    def test_department_without_hod(self, client, org, headers):
        res = _submit(client, headers, org.dan, department="Sales")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_RULE"
        assert "HOD for department Sales not found." in body["error"]
        assert Subscription.query.count() == 0

    def test_missing_identity(self, client, org):
        res = client.get(API)
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_unknown_user_header(self, client, org):
        res = client.get(API, headers={"X-User-Id": "nobody"})
        assert res.status_code == 401

    def test_non_hod_cannot_decide(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.carol, sub_id, "decision", {"decision": "Approved"})
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_am_cannot_pay(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.am, sub_id, "payment", {"amount_paid": 1, "transaction_id": "X"})
        assert res.status_code == 403

    def test_unknown_subscription(self, client, org, headers):
        res = client.get(f"{API}/missing", headers=headers(org.admin))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_other_department_cannot_view(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        assert client.get(f"{API}/{sub_id}", headers=headers(org.dan)).status_code == 403
        assert client.get(API, headers=headers(org.dan)).get_json()["total"] == 0
        assert client.get(API, headers=headers(org.apa)).get_json()["total"] == 1

    def test_unknown_queue(self, client, org, headers):
        res = client.get(f"{API}?queue=nope", headers=headers(org.admin))
        assert res.status_code == 422

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
#  3. STATE RULES
# ═══════════════════════════════════════════════════════════════════════════


class TestStateRules:
    def test_declined_is_absorbing(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.alice, sub_id, "decision", {"decision": "Declined", "reason": "no budget"})
        sub = res.get_json()["subscription"]
        assert sub["declined_by_role"] == "hod"
        assert sub["decline_reason"] == "no budget"

        res = _post(client, headers, org.apa, sub_id, "forward-to-am")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"
        assert res.get_json()["details"]["status"] == "Declined"

    def test_finance_decline(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        _post(client, headers, org.alice, sub_id, "decision", {"decision": "Approved"})
        res = _post(client, headers, org.apa, sub_id, "decision", {"decision": "Declined", "reason": "duplicate"})
        assert res.status_code == 200
        assert res.get_json()["subscription"]["declined_by_role"] == "apa"
        assert _messages(org.bob)[-1] == "Your request for Figma has been declined. Reason: duplicate"

    def test_payment_from_wrong_status(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        _post(client, headers, org.alice, sub_id, "decision", {"decision": "Approved"})
        res = _post(client, headers, org.apa, sub_id, "payment", {"amount_paid": 120, "transaction_id": "TX1"})
        assert res.status_code == 409
        assert db.session.get(Subscription, sub_id).status == "Approved"

    def test_renew_clears_previous_cycle(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        res = _post(client, headers, org.bob, sub["id"], "renew",
                    {"duration": 12, "cost": 1200, "remarks": "annual", "alert_days": 15})
        assert res.status_code == 200
        renewed = res.get_json()["subscription"]
        assert renewed["status"] == "Pending"
        for field in ("approved_by", "approval_date", "paid_by", "payment_date", "finance", "expiry_date"):
            assert renewed[field] is None, field
        assert renewed["duration"] == 12
        assert renewed["renewed_on"] is not None
        assert renewed["hod_id"] == org.alice.id

    def test_renew_requires_duration(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.bob, sub_id, "renew", {"cost": 10})
        assert res.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
#  4. OPTIMISTIC CONCURRENCY
# ═══════════════════════════════════════════════════════════════════════════


class TestConcurrency:
    def test_stale_version_rejected(self, client, org, headers):
        sub = _submit(client, headers, org.bob).get_json()["subscription"]
        res = _post(client, headers, org.alice, sub["id"], "decision",
                    {"decision": "Approved", "expected_version": sub["version"] + 1})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_VERSION"
        assert db.session.get(Subscription, sub["id"]).status == "Pending"

    def test_version_increments(self, client, org, headers):
        sub = _submit(client, headers, org.bob).get_json()["subscription"]
        res = _post(client, headers, org.alice, sub["id"], "decision",
                    {"decision": "Approved", "expected_version": sub["version"]})
        assert res.status_code == 200
        assert res.get_json()["subscription"]["version"] == sub["version"] + 1


# ═══════════════════════════════════════════════════════════════════════════
#  5. ALERTS & CONTINUATION
# ═══════════════════════════════════════════════════════════════════════════


class TestAlertsAndContinuation:
    def test_renewal_alert_once_per_day(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        as_of = (datetime.fromisoformat(sub["expiry_date"]).date() - timedelta(days=3)).isoformat()

        first = _post(client, headers, org.bob, sub["id"], "renewal-alert", {"as_of": as_of})
        second = _post(client, headers, org.bob, sub["id"], "renewal-alert", {"as_of": as_of})
        assert first.get_json()["triggered"] is True
        assert second.get_json()["triggered"] is False
        assert first.get_json()["subscription"]["last_alert_triggered"] == \
            second.get_json()["subscription"]["last_alert_triggered"]
        assert AuditLog.query.filter_by(entity_id=sub["id"], action="subscription.renewal_alert").count() == 1

        due = client.get(f"{API}/renewal-alerts?as_of={as_of}", headers=headers(org.bob)).get_json()
        assert [s["id"] for s in due["items"]] == [sub["id"]]

    def test_renewal_alert_without_expiry(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = _post(client, headers, org.bob, sub_id, "renewal-alert")
        assert res.status_code == 422

    def _activate(self, sub_id):
        sub = db.session.get(Subscription, sub_id)
        sub.status = "Active"
        sub.request_date = datetime(2025, 1, 20, 9, 0, tzinfo=timezone.utc)
        db.session.commit()

    def test_continue_creates_monthly_request(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        self._activate(sub["id"])

        due = client.get(f"{API}/continuations-due?as_of=2025-03-12", headers=headers(org.bob)).get_json()
        assert due["total"] == 1

        res = _post(client, headers, org.bob, sub["id"], "continuation",
                    {"decision": "continue", "as_of": "2025-03-12"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["subscription"]["monthly_continuation"] == {"2025-03": "continued"}
        new_request = body["new_request"]
        assert new_request["status"] == "Pending"
        assert new_request["duration"] == 1
        assert new_request["purpose"] == "Monthly continuation for Figma."

        again = _post(client, headers, org.bob, sub["id"], "continuation",
                      {"decision": "decline", "as_of": "2025-03-14"})
        assert again.status_code == 409

    def test_continuation_outside_window(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        self._activate(sub["id"])
        res = _post(client, headers, org.bob, sub["id"], "continuation",
                    {"decision": "decline", "as_of": "2025-03-25"})
        assert res.status_code == 409

    def test_refused_continue_leaves_month_open(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        self._activate(sub["id"])
        moved = client.patch(f"/api/v1/users/{org.bob.id}", json={"role": "finance", "sub_role": "apa"},
                             headers=headers(org.admin))
        assert moved.status_code == 200

        res = _post(client, headers, org.bob, sub["id"], "continuation",
                    {"decision": "continue", "as_of": "2025-03-15"})
        assert res.status_code == 403
        db.session.expire_all()
        assert db.session.get(Subscription, sub["id"]).monthly_continuation == {}
        assert Subscription.query.count() == 1

# ═══════════════════════════════════════════════════════════════════════════
#  6. PERSISTENCE ROUND-TRIP
# ═══════════════════════════════════════════════════════════════════════════


class TestRoundTrip:
    def test_finance_record_survives_reload(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        _post(client, headers, org.alice, sub_id, "decision", {"decision": "Approved"})
        _post(client, headers, org.apa, sub_id, "forward-to-am")
        _post(client, headers, org.am, sub_id, "am-log", {
            "planned_amount": 120, "planned_currency": "USD", "planned_date": "2025-02-01",
            "verification_note": "vendor ok", "recommended_payment_type": "Card",
            "attachments": ["https://files.example.com/quote.pdf"],
        })
        paid = _post(client, headers, org.apa, sub_id, "payment", {
            "amount_paid": 119.5, "transaction_id": "TX1", "receipt_url": "https://files.example.com/r.pdf",
            "invoice_number": "INV-7", "notes": "paid by card",
        }).get_json()["subscription"]

        db.session.expire_all()
        reloaded = db.session.get(Subscription, sub_id)
        assert reloaded.finance == paid["finance"]
        am_log = reloaded.finance["am_log"]
        assert am_log["attachments"] == ["https://files.example.com/quote.pdf"]
        assert am_log["planned_date"].startswith("2025-02-01")
        execution = reloaded.finance["apa_execution"]
        assert execution["invoice_number"] == "INV-7"
        assert execution["payment_type"] == "Card"
        assert reloaded.invoice_number == "INV-7"


# ═══════════════════════════════════════════════════════════════════════════
#  7. ADMIN
# ═══════════════════════════════════════════════════════════════════════════


class TestAdmin:
    def test_patch_details(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.patch(f"{API}/{sub_id}", json={"vendor_name": "Figma Inc"}, headers=headers(org.admin))
        assert res.status_code == 200
        assert res.get_json()["subscription"]["vendor_name"] == "Figma Inc"

    def test_patch_requires_admin(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.patch(f"{API}/{sub_id}", json={"vendor_name": "x"}, headers=headers(org.alice))
        assert res.status_code == 403

    def test_patch_cannot_change_status(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.patch(f"{API}/{sub_id}", json={"status": "Active"}, headers=headers(org.admin))
        assert res.status_code == 422
        assert res.get_json()["details"] == {"status": "not editable"}

    def test_delete_archives(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.delete(f"{API}/{sub_id}", json={"justification": "duplicate request"},
                            headers=headers(org.admin))
        assert res.status_code == 200
        assert res.get_json()["deleted"]["subscription"]["tool_name"] == "Figma"

        assert client.get(f"{API}/{sub_id}", headers=headers(org.admin)).status_code == 404
        archive = client.get("/api/v1/deleted-subscriptions", headers=headers(org.admin)).get_json()
        assert archive["total"] == 1
        assert archive["items"][0]["justification"] == "duplicate request"
        assert archive["items"][0]["deleted_by"] == org.admin.id

    def test_delete_requires_justification(self, client, org, headers):
        sub_id = _submit(client, headers, org.bob).get_json()["subscription"]["id"]
        res = client.delete(f"{API}/{sub_id}", json={}, headers=headers(org.admin))
        assert res.status_code == 422
        assert db.session.get(Subscription, sub_id) is not None

    def test_audit_trail(self, client, org, headers):
        sub = _create_paid(client, headers, org)
        res = client.get(f"{API}/{sub['id']}/audit", headers=headers(org.bob))
        actions = [entry["action"] for entry in res.get_json()["items"]]
        assert actions == [
            "subscription.submit",
            "subscription.approve",
            "subscription.forward_to_am",
            "subscription.submit_am_log",
            "subscription.mark_as_paid",
        ]
        paid = res.get_json()["items"][-1]
        assert (paid["from_status"], paid["to_status"]) == ("VerifiedByAM", "PaymentCompleted")
        assert paid["actor"] == org.apa.id
        assert paid["changes"]["status"]["new"] == "PaymentCompleted"

    def test_tool_history(self, client, org, headers):
        _create_paid(client, headers, org)
        _submit(client, headers, org.bob, tool_name="Miro")
        res = client.get(f"{API}?queue=history&tool_name=Figma", headers=headers(org.bob))
        assert res.get_json()["total"] == 1
