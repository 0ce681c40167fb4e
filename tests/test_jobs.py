"""
Tests for the scheduled jobs (lifecycle sweep, renewal alerts), the job
runner and the ``flask run-job`` command.
"""

from datetime import datetime, timedelta, timezone

from autotrack.models import db
from autotrack.models.audit import AuditLog
from autotrack.models.subscription import Subscription
from autotrack.services import scheduler_service
from autotrack.services.scheduler_service import SchedulerService
from autotrack.services.subscription_workflow import get_workflow


def _paid(org, tool_name="Figma", **overrides):
    """Walk a request through to PaymentCompleted, then apply *overrides* directly."""
    wf = get_workflow()
    sub_id = wf.submit_request(org.bob, {
        "tool_name": tool_name, "department": "Engineering", "cost": 100, "duration": 1,
    }).id
    wf.decide(org.alice, sub_id, "Approved")
    wf.forward_to_am(org.apa, sub_id)
    wf.submit_am_log(org.am, sub_id, {"planned_amount": 100, "planned_currency": "INR"})
    wf.mark_as_paid(org.apa, sub_id, {"transaction_id": "TX-1", "amount_paid": 100})

    sub = db.session.get(Subscription, sub_id)
    for field, value in overrides.items():
        setattr(sub, field, value)
    db.session.commit()
    return sub_id


def _now():
    return datetime.now(timezone.utc)


class TestLifecycleSweep:
    def test_activates_and_expires(self, org):
        paid_id = _paid(org)
        overdue_id = _paid(org, "Miro", status="Active", expiry_date=_now() - timedelta(days=2))

        outcome = SchedulerService.run_job("lifecycle_sweep")

        assert outcome["status"] == "success"
        assert outcome["result"] == {"activated": 1, "expired": 1, "errors": 0}
        db.session.expire_all()
        assert db.session.get(Subscription, paid_id).status == "Active"
        assert db.session.get(Subscription, overdue_id).status == "Expired"

    def test_unexpired_active_untouched(self, org):
        sub_id = _paid(org, status="Active", expiry_date=_now() + timedelta(days=5))
        outcome = SchedulerService.run_job("lifecycle_sweep")
        assert outcome["result"] == {"activated": 0, "expired": 0, "errors": 0}
        assert db.session.get(Subscription, sub_id).status == "Active"

    def test_transitions_are_audited(self, org):
        sub_id = _paid(org)
        SchedulerService.run_job("lifecycle_sweep")
        entry = AuditLog.query.filter_by(entity_id=sub_id, action="subscription.activate").one()
        assert entry.actor == "system"


class TestRenewalAlertsJob:
    def test_triggers_once_per_day(self, org):
        due_id = _paid(org, expiry_date=_now() + timedelta(days=3))
        _paid(org, "Miro", expiry_date=_now() + timedelta(days=40))

        first = SchedulerService.run_job("renewal_alerts")
        second = SchedulerService.run_job("renewal_alerts")

        assert first["result"] == {"eligible": 1, "triggered": 1, "already_triggered": 0, "errors": 0}
        assert second["result"] == {"eligible": 1, "triggered": 0, "already_triggered": 1, "errors": 0}
        db.session.expire_all()
        assert db.session.get(Subscription, due_id).last_alert_triggered is not None

    def test_respects_alert_days(self, org):
        _paid(org, expiry_date=_now() + timedelta(days=20), alert_days=30)
        assert SchedulerService.run_job("renewal_alerts")["result"]["triggered"] == 1


class TestJobRunner:
    def test_unknown_job(self):
        outcome = SchedulerService.run_job("nope")
        assert outcome["status"] == "error"
        assert outcome["error"] == "Unknown job: nope"

    def test_failure_is_reported(self, monkeypatch):
        def boom(app):
            raise RuntimeError("kaboom")

        monkeypatch.setitem(scheduler_service._job_registry, "boom", boom)
        outcome = SchedulerService.run_job("boom")
        assert outcome["status"] == "failed"
        assert outcome["error"] == "kaboom"
        assert outcome["result"] is None

    def test_run_job_command(self, app, org):
        _paid(org)
        result = app.test_cli_runner().invoke(args=["run-job", "lifecycle_sweep"])
        assert result.exit_code == 0
        assert "lifecycle_sweep: success" in result.output

    def test_run_job_command_unknown(self, app):
        result = app.test_cli_runner().invoke(args=["run-job", "nope"])
        assert result.exit_code == 1

    def test_unknown_job_not_recorded(self):
        SchedulerService.run_job("nope")
        assert "nope" not in scheduler_service.get_last_outcomes()
