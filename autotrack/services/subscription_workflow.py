"""
Subscription Workflow Engine.

Owns the subscription lifecycle:

    Pending → Approved → ForwardedToAM → VerifiedByAM → PaymentCompleted
            → Active → Expired
    Declined from Pending (assigned HOD) or Approved (finance APA).
    renew resets any status to Pending.

Each operation follows the same order:
  1. load + optimistic version check
  2. role / sub-role guard        (AccessDeniedError)
  3. status guard                 (TransitionError, SUBSCRIPTION_TRANSITIONS)
  4. input validation / lookups   (ValidationError)
  5. mutate, persist via the store (commit + audit row, rollback on failure)
  6. notify after commit          (fire-and-forget, failures logged)

Nothing is mutated before steps 1–4 pass.

Collaborators are injected so the engine runs against SQL adapters in the
app and against in-memory fakes in unit tests:

    directory  — get_user, resolve_hod, list_by_role, department_exists
    store      — get, add, save, delete (+ query helpers for listings)
    notifier   — notify(user_id, message, subscription_id),
                 notify_many(user_ids, message, subscription_id)

Usage:
    from autotrack.services.subscription_workflow import get_workflow

    wf = get_workflow()
    sub = wf.submit_request(actor, {"tool_name": "Figma", "department": "Engineering",
                                    "cost": 120, "duration": 1})
    wf.decide(hod, sub.id, "Approved", "approved for Q1 budget")
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from flask import current_app

from autotrack.core.exceptions import (
    AccessDeniedError,
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from autotrack.models.directory import REQUESTER_ROLES
from autotrack.models.subscription import (
    FREQUENCIES,
    PAID_STATUSES,
    PAYMENT_CURRENCIES,
    SUBSCRIPTION_TRANSITIONS,
    DeletedSubscription,
    Subscription,
)
from autotrack.services import pricing

logger = logging.getLogger(__name__)

# Fields tracked in the audit diff of each transition
_WORKFLOW_FIELDS = (
    "status", "hod_id", "approved_by", "approval_date", "remarks",
    "decline_reason", "declined_by_role", "apa_approver_id", "paid_by",
    "payment_date", "expiry_date",
)
_RENEW_FIELDS = _WORKFLOW_FIELDS + (
    "duration", "cost", "original_amount", "original_currency", "exchange_rate",
    "alert_days", "request_date", "renewed_on", "location", "frequency",
    "currency", "request_type",
)

# Admin-editable fields (update_details); workflow fields are never editable
_EDITABLE_FIELDS = {
    "tool_name", "vendor_name", "purpose", "location", "frequency",
    "request_type", "cost", "currency", "duration", "alert_days",
    "base_monthly_cost",
}

_DECISIONS = {
    "approved": "Approved", "approve": "Approved",
    "declined": "Declined", "decline": "Declined",
}
_CONTINUATION_INPUT = {
    "continue": "continued", "continued": "continued",
    "decline": "declined", "declined": "declined",
}


@dataclass(frozen=True)
class _Notice:
    """A message to deliver once the transition is committed."""

    user_ids: tuple
    message: str


def validate_transition(sub: Subscription, action: str) -> dict:
    """
    Validate whether an action is valid for the subscription's current status.

    Returns:
        {"valid": bool, "from": str, "to": str|None, "reason": str|None}
    """
    rule = SUBSCRIPTION_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": sub.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if sub.status not in rule["from"]:
        return {"valid": False, "from": sub.status, "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{sub.status}'"}

    return {"valid": True, "from": sub.status, "to": rule["to"], "reason": None}


# ── Input helpers ────────────────────────────────────────────────────────────


def _text(value) -> str:
    return str(value).strip() if value is not None else ""


def _optional_text(value) -> str | None:
    text = _text(value)
    return text or None


def _required_text(data: dict, field: str) -> str:
    text = _text(data.get(field))
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def _amount(value, field: str, *, required: bool = True) -> float | None:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", details={field: "required"})
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={field: value})
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={field: value}) from None
    if number < 0:
        raise ValidationError(f"{field} must not be negative", details={field: value})
    return number


def _parse_date(value, field: str) -> datetime | None:
    """ISO-8601 date / datetime (or a date object) → aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return pricing.as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date", details={field: value}) from None
    return pricing.as_utc(parsed)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _snapshot(sub: Subscription, fields) -> dict:
    return {f: getattr(sub, f) for f in fields}


def _changes(before: dict, sub: Subscription) -> dict:
    """{field: {"old", "new"}} for every field that changed."""
    diff = {}
    for field, old in before.items():
        new = getattr(sub, field)
        if old != new:
            diff[field] = {"old": old, "new": new}
    # JSON-safe round trip so datetimes are stored as strings
    return json.loads(json.dumps(diff, default=str))


class SubscriptionWorkflow:
    """Subscription state machine with injected directory, store and notifier."""

    def __init__(self, directory, store, notifier, *, base_currency="INR",
                 rates=None, clock=None):
        self.directory = directory
        self.store = store
        self.notifier = notifier
        self.base_currency = base_currency.upper()
        self.rates = {k.upper(): float(v) for k, v in (rates or {}).items()}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # ═════════════════════════════════════════════════════════════════════
    # Guards & helpers
    # ═════════════════════════════════════════════════════════════════════

    def _get(self, sub_id: str) -> Subscription:
        sub = self.store.get(sub_id)
        if sub is None:
            raise NotFoundError(resource="Subscription", resource_id=sub_id)
        return sub

    @staticmethod
    def _check_version(sub: Subscription, expected_version) -> None:
        if expected_version is None:
            return
        try:
            expected = int(expected_version)
        except (TypeError, ValueError):
            raise ValidationError(
                "expected_version must be an integer", details={"expected_version": expected_version},
            ) from None
        if sub.version != expected:
            raise ConflictError(
                resource="Subscription", field="version", value=sub.version,
                message=(f"Subscription {sub.id} is at version {sub.version}, "
                         f"expected {expected}; reload and retry"),
            )

    @staticmethod
    def _require_transition(sub: Subscription, action: str) -> str:
        validation = validate_transition(sub, action)
        if not validation["valid"]:
            raise TransitionError(sub.id, action, sub.status, validation["reason"])
        return validation["to"]

    @staticmethod
    def _require_finance(actor, sub_role: str, action: str) -> None:
        if actor is None or not actor.is_finance(sub_role):
            raise AccessDeniedError(
                getattr(actor, "id", None), action, f"requires finance/{sub_role}",
            )

    @staticmethod
    def _require_department_member(actor, sub: Subscription, action: str) -> None:
        """Requester, a requester-role member of the department, or an admin."""
        if actor is None:
            raise AccessDeniedError(None, action, "no caller")
        if actor.is_admin or actor.id == sub.requested_by:
            return
        if actor.role in REQUESTER_ROLES and actor.department == sub.department:
            return
        raise AccessDeniedError(actor.id, action, f"not a member of {sub.department}")

    def _resolve_hod(self, department: str):
        if not self.directory.department_exists(department):
            raise ValidationError(f"Unknown department: {department}", details={"department": department})
        hod = self.directory.resolve_hod(department)
        if hod is None:
            raise ValidationError(
                f"HOD for department {department} not found.", details={"department": department},
            )
        return hod

    def _convert(self, amount, currency) -> pricing.ConvertedAmount:
        _amount(amount, "cost")
        try:
            return pricing.convert_to_base(amount, currency, self.rates, self.base_currency)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"cost": amount, "currency": currency}) from None

    @staticmethod
    def _frequency(value) -> str | None:
        frequency = _optional_text(value)
        if frequency is not None and frequency not in FREQUENCIES:
            raise ValidationError(
                f"frequency must be one of: {', '.join(FREQUENCIES)}", details={"frequency": frequency},
            )
        return frequency

    @staticmethod
    def _duration(value) -> int:
        try:
            return pricing.validate_duration(value)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"duration": value}) from None

    @staticmethod
    def _alert_days(value) -> int:
        try:
            return pricing.validate_alert_days(value)
        except ValueError as exc:
            raise ValidationError(str(exc), details={"alert_days": value}) from None

    def _request_duration(self, details: dict, frequency: str | None) -> int:
        """Explicit duration, else start/end dates, else frequency, else one month."""
        if details.get("duration") not in (None, ""):
            return self._duration(details["duration"])
        start = _parse_date(details.get("start_date"), "start_date")
        end = _parse_date(details.get("end_date"), "end_date")
        if start and end:
            try:
                return pricing.duration_from_dates(start, end)
            except ValueError as exc:
                raise ValidationError(str(exc), details={"end_date": details.get("end_date")}) from None
        if frequency:
            return pricing.duration_from_frequency(frequency)
        return 1

    def _apply_cost(self, sub: Subscription, converted: pricing.ConvertedAmount) -> None:
        sub.cost = converted.amount
        sub.original_amount = converted.original_amount
        sub.original_currency = converted.original_currency
        sub.exchange_rate = converted.rate

    def _persist(self, sub: Subscription, action: str, actor_id: str | None, diff: dict,
                 *, new: bool = False) -> Subscription:
        audit_action = f"subscription.{action}"
        if new:
            self.store.add(sub, action=audit_action, actor=actor_id, diff=diff)
        else:
            self.store.save(sub, action=audit_action, actor=actor_id, diff=diff)
        logger.info(
            "Subscription %s: %s by %s (status=%s)", sub.id, action, actor_id or "system", sub.status,
            extra={"subscription_id": sub.id, "action": action, "actor_id": actor_id},
        )
        return sub

    def _dispatch(self, sub_id: str, notices: list[_Notice]) -> None:
        """Deliver notices after commit. Failures are logged, never raised."""
        for notice in notices:
            user_ids = [uid for uid in notice.user_ids if uid]
            if not user_ids:
                continue
            try:
                if len(user_ids) == 1:
                    self.notifier.notify(user_ids[0], notice.message, sub_id)
                else:
                    self.notifier.notify_many(user_ids, notice.message, sub_id)
            except Exception:
                logger.exception(
                    "Notification dispatch failed", extra={"subscription_id": sub_id},
                )

    def _finance_ids(self, sub_role: str) -> tuple:
        return tuple(u.id for u in self.directory.list_by_role("finance", sub_role))

    # ═════════════════════════════════════════════════════════════════════
    # Request & renewal
    # ═════════════════════════════════════════════════════════════════════

    def submit_request(self, actor, details: dict) -> Subscription:
        """Create a Pending subscription routed to the department's HOD."""
        sub, hod = self._build_request(actor, details)
        return self._submit(actor, sub, hod)

    def _build_request(self, actor, details: dict):
        """Run every submit check and return an unsaved ``(subscription, hod)``."""
        if actor is None:
            raise AccessDeniedError(None, "submit_request", "no caller")
        if actor.role not in REQUESTER_ROLES:
            raise AccessDeniedError(actor.id, "submit_request", f"role {actor.role} cannot request")

        tool_name = _required_text(details, "tool_name")
        department = _text(details.get("department")) or actor.department
        hod = self._resolve_hod(department)

        frequency = self._frequency(details.get("frequency"))
        duration = self._request_duration(details, frequency)
        alert_days = self._alert_days(details.get("alert_days"))
        converted = self._convert(details.get("cost"), details.get("currency"))
        base_monthly_cost = _amount(details.get("base_monthly_cost"), "base_monthly_cost", required=False)

        now = self.now()
        sub = Subscription(
            id=uuid.uuid4().hex,
            tool_name=tool_name,
            vendor_name=_optional_text(details.get("vendor_name")),
            department=department,
            purpose=_text(details.get("purpose")),
            location=_optional_text(details.get("location")),
            frequency=frequency,
            request_type=_optional_text(details.get("request_type")),
            currency=converted.original_currency,
            duration=duration,
            base_monthly_cost=base_monthly_cost,
            status="Pending",
            requested_by=actor.id,
            hod_id=hod.id,
            request_date=now,
            alert_days=alert_days,
            monthly_continuation={},
        )
        self._apply_cost(sub, converted)
        return sub, hod

    def _submit(self, actor, sub: Subscription, hod) -> Subscription:
        self._persist(sub, "submit", actor.id, {
            "status": {"old": None, "new": "Pending"},
            "hod_id": {"old": None, "new": hod.id},
            "cost": {"old": None, "new": sub.cost},
        }, new=True)

        self._dispatch(sub.id, [
            _Notice((actor.id,), f"Your request for {sub.tool_name} has been submitted."),
            _Notice((hod.id,), f"New subscription request for {sub.tool_name} from {actor.name}."),
        ])
        return sub

    def renew(self, actor, sub_id: str, *, duration, cost, remarks=None, alert_days=None,
              currency=None, location=None, frequency=None, request_type=None,
              expected_version=None) -> Subscription:
        """Restart the cycle at Pending with fresh terms; clears approval/finance state."""
        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        self._require_department_member(actor, sub, "renew")

        hod = self._resolve_hod(sub.department)
        months = self._duration(duration)
        days = self._alert_days(alert_days if alert_days is not None else sub.alert_days)
        converted = self._convert(cost, currency or sub.original_currency or self.base_currency)
        new_frequency = self._frequency(frequency) if frequency is not None else sub.frequency

        before = _snapshot(sub, _RENEW_FIELDS)
        now = self.now()

        sub.status = "Pending"
        sub.duration = months
        self._apply_cost(sub, converted)
        sub.currency = converted.original_currency
        sub.remarks = _optional_text(remarks)
        sub.alert_days = days
        sub.frequency = new_frequency
        if location is not None:
            sub.location = _optional_text(location)
        if request_type is not None:
            sub.request_type = _optional_text(request_type)
        sub.request_date = now
        sub.renewed_on = now
        sub.hod_id = hod.id

        # New cycle: nothing from the previous approval or payment carries over
        sub.approved_by = None
        sub.approval_date = None
        sub.decline_reason = None
        sub.declined_by_role = None
        sub.apa_approver_id = None
        sub.paid_by = None
        sub.payment_date = None
        sub.expiry_date = None
        sub.last_alert_triggered = None
        sub.finance = None
        sub.payment_mode = None
        sub.transaction_id = None
        sub.invoice_number = None

        self._persist(sub, "renew", actor.id, _changes(before, sub))

        self._dispatch(sub.id, [
            _Notice((hod.id,), f"A renewal request for {sub.tool_name} from {actor.name} is pending approval."),
            _Notice((actor.id,), f"Your renewal request for {sub.tool_name} has been submitted."),
        ])
        return sub

    # ═════════════════════════════════════════════════════════════════════
    # Approval chain
    # ═════════════════════════════════════════════════════════════════════

    def decide(self, actor, sub_id: str, decision: str, reason: str | None = None,
               *, expected_version=None) -> Subscription:
        """HOD approve/decline of a Pending request, or APA decline of an Approved one."""
        outcome = _DECISIONS.get(_text(decision).lower())
        if outcome is None:
            raise ValidationError("decision must be 'Approved' or 'Declined'", details={"decision": decision})

        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        if actor is None:
            raise AccessDeniedError(None, "decide", "no caller")

        if actor.id == sub.hod_id:
            declined_by = "hod"
            action = "approve" if outcome == "Approved" else "hod_decline"
        elif actor.is_finance("apa"):
            if outcome == "Approved":
                raise AccessDeniedError(actor.id, "approve", "only the assigned HOD can approve")
            declined_by = "apa"
            action = "finance_decline"
        else:
            raise AccessDeniedError(actor.id, "decide", "not the assigned HOD for this request")

        target = self._require_transition(sub, action)
        reason = _text(reason)
        if outcome == "Declined" and not reason:
            raise ValidationError("A reason is required to decline", details={"reason": "required"})

        before = _snapshot(sub, _WORKFLOW_FIELDS)
        now = self.now()
        sub.status = target
        sub.approved_by = actor.id
        sub.approval_date = now

        if outcome == "Approved":
            if reason:
                sub.remarks = f"HOD Note: {reason}"
            notices = [
                _Notice((sub.requested_by,), f"Your request for {sub.tool_name} has been approved by HOD."),
                _Notice(self._finance_ids("apa"),
                        f"Subscription for {sub.tool_name} is approved and awaiting APA verification."),
            ]
        else:
            sub.remarks = reason
            sub.decline_reason = reason
            sub.declined_by_role = declined_by
            notices = [
                _Notice((sub.requested_by,),
                        f"Your request for {sub.tool_name} has been declined. Reason: {reason}"),
            ]

        self._persist(sub, action, actor.id, _changes(before, sub))
        self._dispatch(sub.id, notices)
        return sub

    def forward_to_am(self, actor, sub_id: str, *, expected_version=None) -> Subscription:
        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        self._require_finance(actor, "apa", "forward_to_am")
        target = self._require_transition(sub, "forward_to_am")

        before = _snapshot(sub, _WORKFLOW_FIELDS)
        now = self.now()
        sub.status = target
        sub.apa_approver_id = actor.id
        sub.finance = {**(sub.finance or {}), "apa_queue_added_at": _iso(now)}

        self._persist(sub, "forward_to_am", actor.id, _changes(before, sub))
        self._dispatch(sub.id, [
            _Notice(self._finance_ids("am"),
                    f"Request for {sub.tool_name} has been forwarded to you for payment verification."),
        ])
        return sub

    def submit_am_log(self, actor, sub_id: str, log: dict, *, expected_version=None) -> Subscription:
        """AM verification: planned amount/currency/date and a recommendation."""
        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        self._require_finance(actor, "am", "submit_am_log")
        target = self._require_transition(sub, "submit_am_log")

        log = log or {}
        planned_amount = _amount(log.get("planned_amount"), "planned_amount")
        planned_currency = _text(log.get("planned_currency")).upper()
        if planned_currency not in PAYMENT_CURRENCIES:
            raise ValidationError(
                f"planned_currency must be one of: {', '.join(sorted(PAYMENT_CURRENCIES))}",
                details={"planned_currency": log.get("planned_currency")},
            )
        now = self.now()
        planned_date = _parse_date(log.get("planned_date"), "planned_date") or now
        attachments = log.get("attachments") or []
        if not isinstance(attachments, list):
            raise ValidationError("attachments must be a list of URLs", details={"attachments": attachments})

        am_log = {
            "verification_note": _text(log.get("verification_note")),
            "recommended_payment_type": _text(log.get("recommended_payment_type")),
            "suggested_payment_account": _optional_text(log.get("suggested_payment_account")),
            "planned_amount": planned_amount,
            "planned_currency": planned_currency,
            "planned_date": _iso(planned_date),
            "attachments": [str(a) for a in attachments],
            "by": actor.id,
            "at": _iso(now),
        }

        before = _snapshot(sub, _WORKFLOW_FIELDS)
        sub.status = target
        sub.finance = {**(sub.finance or {}), "am_log": am_log}

        self._persist(sub, "submit_am_log", actor.id, _changes(before, sub))
        self._dispatch(sub.id, [
            _Notice(self._finance_ids("apa"),
                    f"{actor.name} has submitted payment verification for {sub.tool_name}. "
                    f"It is now pending your execution."),
        ])
        return sub

    def mark_as_paid(self, actor, sub_id: str, execution: dict, *, expected_version=None) -> Subscription:
        """APA payment execution; persists the expiry date."""
        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        self._require_finance(actor, "apa", "mark_as_paid")
        target = self._require_transition(sub, "mark_as_paid")

        execution = execution or {}
        am_log = (sub.finance or {}).get("am_log") or {}
        transaction_id = _required_text(execution, "transaction_id")
        amount_paid = _amount(execution.get("amount_paid"), "amount_paid")

        currency = _text(execution.get("currency") or am_log.get("planned_currency") or self.base_currency).upper()
        accepted = PAYMENT_CURRENCIES | {self.base_currency} | set(self.rates)
        if currency not in accepted:
            raise ValidationError(
                f"Unsupported currency: {currency}", details={"currency": execution.get("currency")},
            )
        exchange_rate = _amount(execution.get("exchange_rate"), "exchange_rate", required=False)
        if exchange_rate is None and currency != self.base_currency:
            exchange_rate = self.rates.get(currency)

        now = self.now()
        payment_date = _parse_date(execution.get("payment_date"), "payment_date") or now
        payment_type = _text(execution.get("payment_type")) or am_log.get("recommended_payment_type") or ""
        invoice_number = _optional_text(execution.get("invoice_number"))

        apa_execution = {
            "payment_type": payment_type,
            "payment_date": _iso(payment_date),
            "transaction_id": transaction_id,
            "amount_paid": amount_paid,
            "currency": currency,
            "exchange_rate": exchange_rate,
            "receipt_url": _optional_text(execution.get("receipt_url")),
            "notes": _optional_text(execution.get("notes")),
            "invoice_number": invoice_number,
            "by": actor.id,
            "at": _iso(now),
        }

        before = _snapshot(sub, _WORKFLOW_FIELDS)
        sub.status = target
        sub.paid_by = actor.id
        sub.payment_date = payment_date
        sub.expiry_date = pricing.compute_expiry(sub.request_date, sub.duration or 1)
        sub.finance = {**(sub.finance or {}), "apa_execution": apa_execution}
        # Legacy mirrors for history views
        sub.payment_mode = payment_type or None
        sub.transaction_id = transaction_id
        sub.invoice_number = invoice_number

        self._persist(sub, "mark_as_paid", actor.id, _changes(before, sub))
        self._dispatch(sub.id, [
            _Notice((sub.requested_by,),
                    f"Payment for {sub.tool_name} has been completed. Your subscription is now active."),
            _Notice((sub.hod_id,),
                    f"Subscription for {sub.tool_name} in your department has been paid and is now active."),
        ])
        return sub

    # ═════════════════════════════════════════════════════════════════════
    # Lifecycle (scheduler)
    # ═════════════════════════════════════════════════════════════════════

    def activate(self, sub_id: str) -> Subscription:
        sub = self._get(sub_id)
        target = self._require_transition(sub, "activate")
        before = _snapshot(sub, ("status",))
        sub.status = target
        return self._persist(sub, "activate", None, _changes(before, sub))

    def expire(self, sub_id: str, today: date | None = None) -> Subscription:
        sub = self._get(sub_id)
        target = self._require_transition(sub, "expire")
        today = today or self.now().date()
        if sub.expiry_date is None or pricing.days_until(sub.expiry_date, today) >= 0:
            raise TransitionError(sub.id, "expire", sub.status, "expiry date has not passed")
        before = _snapshot(sub, ("status",))
        sub.status = target
        return self._persist(sub, "expire", None, _changes(before, sub))

    def trigger_renewal_alert(self, sub_id: str, today: date | None = None,
                              actor=None) -> tuple[Subscription, bool]:
        """
        Stamp ``last_alert_triggered`` once per calendar day.

        Returns (subscription, triggered); ``triggered`` is False when an
        alert was already recorded for *today*.
        """
        sub = self._get(sub_id)
        if sub.expiry_date is None:
            raise ValidationError(
                f"Subscription {sub.id} has no expiry date yet", details={"expiry_date": None},
            )
        now = self.now()
        today = today or now.date()
        if not pricing.is_alert_eligible(sub.expiry_date, sub.alert_days, today):
            raise ValidationError(
                f"Subscription {sub.id} is not within its {sub.alert_days}-day alert window",
                details={"days_until_expiry": pricing.days_until(sub.expiry_date, today)},
            )

        last = pricing.as_utc(sub.last_alert_triggered)
        if last is not None and last.date() == today:
            return sub, False

        before = _snapshot(sub, ("last_alert_triggered",))
        sub.last_alert_triggered = datetime.combine(today, now.timetz())
        self._persist(sub, "renewal_alert", getattr(actor, "id", None), _changes(before, sub))
        return sub, True

    # ═════════════════════════════════════════════════════════════════════
    # Monthly continuation
    # ═════════════════════════════════════════════════════════════════════

    def update_continuation(self, actor, sub_id: str, decision: str, today: date | None = None,
                            *, expected_version=None) -> tuple[Subscription, Subscription | None]:
        """
        Record this month's continue/decline decision for an Active subscription.

        On "continue" a one-month request at the monthly-equivalent cost is
        submitted for HOD approval. Returns (subscription, new_request|None).
        """
        value = _CONTINUATION_INPUT.get(_text(decision).lower())
        if value is None:
            raise ValidationError("decision must be 'continue' or 'decline'", details={"decision": decision})

        sub = self._get(sub_id)
        self._check_version(sub, expected_version)
        self._require_department_member(actor, sub, "update_continuation")
        if sub.status != "Active":
            raise TransitionError(sub.id, "update_continuation", sub.status, "only Active subscriptions")

        today = today or self.now().date()
        if not pricing.in_continuation_window(sub.request_date, today):
            raise TransitionError(
                sub.id, "update_continuation", sub.status, "outside the monthly continuation window",
            )
        key = pricing.continuation_key(sub.request_date, today)
        decided = dict(sub.monthly_continuation or {})
        if key in decided:
            raise TransitionError(
                sub.id, "update_continuation", sub.status, f"already {decided[key]} for {key}",
            )
        # The follow-up request is fully checked before the decision is recorded
        follow_up = None
        if value == "continued":
            follow_up = self._build_request(actor, {
                "tool_name": sub.tool_name,
                "vendor_name": sub.vendor_name,
                "department": sub.department,
                "purpose": f"Monthly continuation for {sub.tool_name}.",
                "location": sub.location,
                "frequency": "Monthly",
                "request_type": sub.request_type,
                "duration": 1,
                "cost": pricing.monthly_equivalent(sub.cost, sub.duration),
                "currency": self.base_currency,
                "alert_days": sub.alert_days or pricing.DEFAULT_ALERT_DAYS,
            })

        before = {"monthly_continuation": dict(decided)}
        decided[key] = value
        sub.monthly_continuation = decided
        self._persist(sub, "continuation", actor.id, {
            "monthly_continuation": {"old": before["monthly_continuation"], "new": decided},
        })

        new_request = self._submit(actor, *follow_up) if follow_up else None
        return sub, new_request

    # ═════════════════════════════════════════════════════════════════════
    # Admin
    # ═════════════════════════════════════════════════════════════════════

    def update_details(self, actor, sub_id: str, changes: dict, *, expected_version=None) -> Subscription:
        """Admin correction of descriptive / financial fields. Status is never editable here."""
        if actor is None or not actor.is_admin:
            raise AccessDeniedError(getattr(actor, "id", None), "update_details", "admin only")
        sub = self._get(sub_id)
        self._check_version(sub, expected_version)

        changes = {k: v for k, v in (changes or {}).items() if k != "expected_version"}
        if not changes:
            raise ValidationError("No changes supplied")
        locked = sorted(set(changes) - _EDITABLE_FIELDS)
        if locked:
            raise ValidationError(
                "Field(s) cannot be edited directly", details={f: "not editable" for f in locked},
            )

        updates = {}
        if "tool_name" in changes:
            updates["tool_name"] = _required_text(changes, "tool_name")
        for field in ("vendor_name", "location", "request_type"):
            if field in changes:
                updates[field] = _optional_text(changes[field])
        if "purpose" in changes:
            updates["purpose"] = _text(changes["purpose"])
        if "frequency" in changes:
            updates["frequency"] = self._frequency(changes["frequency"])
        if "duration" in changes:
            updates["duration"] = self._duration(changes["duration"])
        if "alert_days" in changes:
            updates["alert_days"] = self._alert_days(changes["alert_days"])
        if "base_monthly_cost" in changes:
            updates["base_monthly_cost"] = _amount(changes["base_monthly_cost"], "base_monthly_cost", required=False)
        converted = None
        if "cost" in changes or "currency" in changes:
            amount = changes.get("cost", sub.original_amount if sub.original_amount is not None else sub.cost)
            currency = changes.get("currency") or sub.original_currency or self.base_currency
            converted = self._convert(amount, currency)

        before = _snapshot(sub, tuple(updates) + (
            ("cost", "original_amount", "original_currency", "exchange_rate", "currency") if converted else ()
        ))
        for field, value in updates.items():
            setattr(sub, field, value)
        if converted:
            self._apply_cost(sub, converted)
            sub.currency = converted.original_currency

        return self._persist(sub, "update", actor.id, _changes(before, sub))

    def admin_delete(self, actor, sub_id: str, justification: str) -> DeletedSubscription:
        """Archive the full subscription with a justification, then remove it."""
        if actor is None or not actor.is_admin:
            raise AccessDeniedError(getattr(actor, "id", None), "admin_delete", "admin only")
        justification = _text(justification)
        if not justification:
            raise ValidationError("A justification is required", details={"justification": "required"})
        sub = self._get(sub_id)

        archive = DeletedSubscription(
            id=uuid.uuid4().hex,
            subscription_id=sub.id,
            subscription=sub.to_dict(),
            justification=justification,
            deleted_by=actor.id,
            deleted_at=self.now(),
        )
        self.store.delete(sub, archive, actor=actor.id)
        logger.info(
            "Subscription %s deleted by %s", sub_id, actor.id,
            extra={"subscription_id": sub_id, "action": "delete", "actor_id": actor.id},
        )
        return archive

    # ═════════════════════════════════════════════════════════════════════
    # Queries
    # ═════════════════════════════════════════════════════════════════════

    @staticmethod
    def _scoped_department(actor) -> str | None:
        """Department filter forced on non-finance, non-admin callers."""
        if actor.is_admin or actor.role == "finance":
            return None
        return actor.department

    def get_visible(self, actor, sub_id: str) -> Subscription:
        sub = self._get(sub_id)
        scope = self._scoped_department(actor)
        if scope is not None and sub.department != scope and sub.requested_by != actor.id:
            raise AccessDeniedError(actor.id, "view", f"subscription belongs to {sub.department}")
        return sub

    def search(self, actor, *, status=None, department=None, requested_by=None,
               tool_name=None, queue=None):
        """
        Role-scoped listing query.

        ``queue`` selects a work queue: ``hod`` (Pending for me), ``apa``
        (Approved + VerifiedByAM), ``am`` (ForwardedToAM), ``history``
        (paid-for statuses).
        """
        hod_id = None
        if queue == "hod":
            status, hod_id = "Pending", actor.id
        elif queue == "apa":
            status = ["Approved", "VerifiedByAM"]
        elif queue == "am":
            status = "ForwardedToAM"
        elif queue == "history":
            status = sorted(PAID_STATUSES)
        elif queue:
            raise ValidationError(f"Unknown queue: {queue}", details={"queue": queue})

        department = self._scoped_department(actor) or department
        return self.store.query(
            status=status, department=department, requested_by=requested_by,
            hod_id=hod_id, tool_name=tool_name,
        )

    def renewal_alerts_due(self, actor, today: date | None = None) -> list[Subscription]:
        """Paid-for subscriptions inside their alert window (or already expired)."""
        today = today or self.now().date()
        scope = self._scoped_department(actor)
        return [
            s for s in self.store.list_by_status(sorted(PAID_STATUSES))
            if (scope is None or s.department == scope)
            and pricing.is_alert_eligible(s.expiry_date, s.alert_days, today)
        ]

    def continuations_due(self, actor, today: date | None = None) -> list[Subscription]:
        """Active subscriptions awaiting this month's continue/decline decision."""
        today = today or self.now().date()
        scope = self._scoped_department(actor)
        return [
            s for s in self.store.list_by_status(["Active"])
            if (scope is None or s.department == scope)
            and pricing.in_continuation_window(s.request_date, today)
            and pricing.continuation_key(s.request_date, today) not in (s.monthly_continuation or {})
        ]


def get_workflow() -> SubscriptionWorkflow:
    """Engine wired to the SQL adapters and the app's currency settings."""
    from autotrack.services.directory import SqlDirectory
    from autotrack.services.notification import SqlNotificationSink
    from autotrack.services.subscription_store import SqlSubscriptionStore

    return SubscriptionWorkflow(
        SqlDirectory(),
        SqlSubscriptionStore(),
        SqlNotificationSink(),
        base_currency=current_app.config.get("BASE_CURRENCY", "INR"),
        rates=current_app.config.get("CURRENCY_RATES", {}),
    )
