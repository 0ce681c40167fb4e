"""
AutoTrack — Subscription Request & Approval Service
Subscription domain models.

Models:
    - Subscription: one software subscription and its approval/payment state.
    - DeletedSubscription: immutable archive written by the admin delete.

Lifecycle:
    Pending → Approved → ForwardedToAM → VerifiedByAM → PaymentCompleted
            → Active → Expired
    Declined is reachable from Pending (HOD) and Approved (finance APA).
    Renewal resets any status back to Pending with approval and finance
    data cleared.
"""

import uuid
from datetime import datetime, timezone

from autotrack.models import db
from autotrack.services import pricing


# ── Constants ────────────────────────────────────────────────────────────────

SUBSCRIPTION_STATUSES = (
    "Pending",
    "Approved",
    "ForwardedToAM",
    "VerifiedByAM",
    "PaymentCompleted",
    "Active",
    "Expired",
    "Declined",
)

# Action → allowed source statuses and target status.
# "renew" is deliberately absent: it is valid from every status.
SUBSCRIPTION_TRANSITIONS = {
    "approve": {"from": ["Pending"], "to": "Approved"},
    "hod_decline": {"from": ["Pending"], "to": "Declined"},
    "finance_decline": {"from": ["Approved"], "to": "Declined"},
    "forward_to_am": {"from": ["Approved"], "to": "ForwardedToAM"},
    "submit_am_log": {"from": ["ForwardedToAM"], "to": "VerifiedByAM"},
    "mark_as_paid": {"from": ["VerifiedByAM"], "to": "PaymentCompleted"},
    "activate": {"from": ["PaymentCompleted"], "to": "Active"},
    "expire": {"from": ["Active"], "to": "Expired"},
}

DECLINED_BY_ROLES = {"hod", "apa"}
CONTINUATION_DECISIONS = {"continued", "declined"}
FREQUENCIES = tuple(pricing.FREQUENCY_MONTHS)
PAYMENT_CURRENCIES = {"USD", "INR"}

# Statuses that count as paid-for usage in history views
PAID_STATUSES = {"PaymentCompleted", "Active", "Expired"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    value = pricing.as_utc(value)
    return value.isoformat() if value else None


class Subscription(db.Model):
    """
    Subscription request and its lifecycle state.

    ``finance`` is a document-style JSON column holding the two-person
    finance record (``apa_queue_added_at``, ``am_log``, ``apa_execution``).
    JSON columns are reassigned, never mutated in place, so SQLAlchemy sees
    every change.

    ``version`` is the optimistic-concurrency token: SQLAlchemy increments it
    on every UPDATE and raises StaleDataError when the row changed underneath.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_status", "status"),
        db.Index("ix_subscriptions_department", "department"),
        db.Index("ix_subscriptions_requested_by", "requested_by"),
        db.Index("ix_subscriptions_hod_id", "hod_id"),
    )

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    version = db.Column(db.Integer, nullable=False)

    # Descriptive
    tool_name = db.Column(db.String(300), nullable=False)
    vendor_name = db.Column(db.String(200), nullable=True)
    department = db.Column(db.String(120), nullable=False)
    purpose = db.Column(db.Text, default="")
    location = db.Column(db.String(120), nullable=True)
    frequency = db.Column(db.String(20), nullable=True, comment="Monthly | Quarterly | Yearly | One-time")
    request_type = db.Column(db.String(50), nullable=True)
    currency = db.Column(db.String(3), nullable=True, comment="Display currency chosen by the requester")

    # Financial (cost is in the base currency)
    cost = db.Column(db.Float, nullable=False, default=0.0)
    duration = db.Column(db.Integer, nullable=False, default=1, comment="Months")
    base_monthly_cost = db.Column(db.Float, nullable=True)
    original_amount = db.Column(db.Float, nullable=True)
    original_currency = db.Column(db.String(3), nullable=True)
    exchange_rate = db.Column(db.Float, nullable=True, comment="Base units per original unit")

    # Workflow
    status = db.Column(db.String(20), nullable=False, default="Pending")
    requested_by = db.Column(db.String(32), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    hod_id = db.Column(db.String(32), db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by = db.Column(db.String(32), nullable=True)
    approval_date = db.Column(db.DateTime(timezone=True), nullable=True)
    remarks = db.Column(db.Text, nullable=True)
    decline_reason = db.Column(db.Text, nullable=True)
    declined_by_role = db.Column(db.String(10), nullable=True, comment="hod | apa")
    apa_approver_id = db.Column(db.String(32), nullable=True)
    paid_by = db.Column(db.String(32), nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=True)
    finance = db.Column(db.JSON, nullable=True)

    # Legacy payment mirrors for history views
    payment_mode = db.Column(db.String(50), nullable=True)
    transaction_id = db.Column(db.String(120), nullable=True)
    invoice_number = db.Column(db.String(120), nullable=True)

    # Temporal
    request_date = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    renewed_on = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    alert_days = db.Column(db.Integer, nullable=False, default=pricing.DEFAULT_ALERT_DAYS)
    last_alert_triggered = db.Column(db.DateTime(timezone=True), nullable=True)
    monthly_continuation = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def monthly_equivalent_cost(self) -> float:
        return pricing.monthly_equivalent(self.cost, self.duration)

    @property
    def expected_expiry(self) -> datetime | None:
        """Persisted expiry once paid; otherwise a projection from the request date."""
        if self.expiry_date is not None:
            return pricing.as_utc(self.expiry_date)
        if self.request_date is None:
            return None
        return pricing.compute_expiry(self.request_date, self.duration or 1)

    def to_dict(self):
        return {
            "id": self.id,
            "version": self.version,
            "tool_name": self.tool_name,
            "vendor_name": self.vendor_name,
            "department": self.department,
            "purpose": self.purpose,
            "location": self.location,
            "frequency": self.frequency,
            "request_type": self.request_type,
            "currency": self.currency,
            "cost": self.cost,
            "duration": self.duration,
            "base_monthly_cost": self.base_monthly_cost,
            "monthly_equivalent_cost": self.monthly_equivalent_cost,
            "original_amount": self.original_amount,
            "original_currency": self.original_currency,
            "exchange_rate": self.exchange_rate,
            "status": self.status,
            "requested_by": self.requested_by,
            "hod_id": self.hod_id,
            "approved_by": self.approved_by,
            "approval_date": _iso(self.approval_date),
            "remarks": self.remarks,
            "decline_reason": self.decline_reason,
            "declined_by_role": self.declined_by_role,
            "apa_approver_id": self.apa_approver_id,
            "paid_by": self.paid_by,
            "payment_date": _iso(self.payment_date),
            "finance": self.finance,
            "payment_mode": self.payment_mode,
            "transaction_id": self.transaction_id,
            "invoice_number": self.invoice_number,
            "request_date": _iso(self.request_date),
            "renewed_on": _iso(self.renewed_on),
            "expiry_date": _iso(self.expiry_date),
            "expected_expiry": _iso(self.expected_expiry),
            "alert_days": self.alert_days,
            "last_alert_triggered": _iso(self.last_alert_triggered),
            "monthly_continuation": self.monthly_continuation or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Subscription {self.id}: {self.tool_name} [{self.status}]>"


class DeletedSubscription(db.Model):
    """Archive of an admin-deleted subscription. Written once, never updated."""

    __tablename__ = "deleted_subscriptions"

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    subscription_id = db.Column(db.String(32), nullable=False, index=True)
    subscription = db.Column(db.JSON, nullable=False, comment="Snapshot of Subscription.to_dict()")
    justification = db.Column(db.Text, nullable=False)
    deleted_by = db.Column(db.String(32), nullable=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "subscription": self.subscription,
            "justification": self.justification,
            "deleted_by": self.deleted_by,
            "deleted_at": _iso(self.deleted_at),
        }

    def __repr__(self):
        return f"<DeletedSubscription {self.subscription_id}>"
