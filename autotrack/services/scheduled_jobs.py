"""
AutoTrack — Subscription Request & Approval Service
Scheduled Jobs.

Jobs:
    - lifecycle_sweep: PaymentCompleted → Active, and Active → Expired once
      the expiry date has passed
    - renewal_alerts: stamps the renewal alert on every paid-for
      subscription inside its alert window (once per day)

A failure on one subscription is logged and counted; the sweep carries on
with the rest.
"""

from __future__ import annotations

import logging
from typing import Any

from autotrack.core.exceptions import ConflictError, TransitionError, ValidationError
from autotrack.models.subscription import PAID_STATUSES
from autotrack.services import pricing
from autotrack.services.scheduler_service import register_job
from autotrack.services.subscription_workflow import get_workflow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Lifecycle Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("lifecycle_sweep")
def lifecycle_sweep(app) -> dict[str, Any]:
    """Activate paid subscriptions and expire overdue ones."""
    wf = get_workflow()
    today = wf.now().date()
    results = {"activated": 0, "expired": 0, "errors": 0}

    for sub_id in [s.id for s in wf.store.list_by_status(["PaymentCompleted"])]:
        try:
            wf.activate(sub_id)
            results["activated"] += 1
        except (TransitionError, ConflictError) as exc:
            results["errors"] += 1
            logger.warning("Activation skipped: %s", exc, extra={"subscription_id": sub_id, "job": "lifecycle_sweep"})

    overdue = [
        s.id for s in wf.store.list_by_status(["Active"])
        if s.expiry_date is not None and pricing.days_until(s.expiry_date, today) < 0
    ]
    for sub_id in overdue:
        try:
            wf.expire(sub_id, today)
            results["expired"] += 1
        except (TransitionError, ConflictError) as exc:
            results["errors"] += 1
            logger.warning("Expiry skipped: %s", exc, extra={"subscription_id": sub_id, "job": "lifecycle_sweep"})

    logger.info(
        "Lifecycle sweep: %d activated, %d expired, %d errors",
        results["activated"], results["expired"], results["errors"],
        extra={"job": "lifecycle_sweep"},
    )
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Renewal Alerts
# ═══════════════════════════════════════════════════════════════════════════

@register_job("renewal_alerts")
def renewal_alerts(app) -> dict[str, Any]:
    """Trigger renewal alerts for subscriptions inside their alert window."""
    wf = get_workflow()
    today = wf.now().date()
    results = {"eligible": 0, "triggered": 0, "already_triggered": 0, "errors": 0}

    eligible = [
        s.id for s in wf.store.list_by_status(sorted(PAID_STATUSES))
        if pricing.is_alert_eligible(s.expiry_date, s.alert_days, today)
    ]
    results["eligible"] = len(eligible)

    for sub_id in eligible:
        try:
            _, triggered = wf.trigger_renewal_alert(sub_id, today)
        except (ValidationError, ConflictError) as exc:
            results["errors"] += 1
            logger.warning("Renewal alert skipped: %s", exc, extra={"subscription_id": sub_id, "job": "renewal_alerts"})
            continue
        if triggered:
            results["triggered"] += 1
        else:
            results["already_triggered"] += 1

    logger.info(
        "Renewal alerts: %d triggered of %d eligible", results["triggered"], results["eligible"],
        extra={"job": "renewal_alerts"},
    )
    return results
