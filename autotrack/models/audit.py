"""
Subscription audit trail.

One ``AuditLog`` row per committed workflow transition, added by the store
in the same transaction as the change itself. ``changes`` maps each touched
field to ``{"old": ..., "new": ...}``; a status move is also copied into
``from_status`` / ``to_status`` so the history can be filtered without
parsing JSON.
"""

from datetime import datetime, timezone

from autotrack.models import db

AUDIT_ACTIONS = frozenset({
    "subscription.submit",
    "subscription.renew",
    "subscription.approve",
    "subscription.hod_decline",
    "subscription.finance_decline",
    "subscription.forward_to_am",
    "subscription.submit_am_log",
    "subscription.mark_as_paid",
    "subscription.activate",
    "subscription.expire",
    "subscription.renewal_alert",
    "subscription.continuation",
    "subscription.update",
    "subscription.delete",
})

SYSTEM_ACTOR = "system"


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False, default="subscription")
    # No FK: rows outlive deleted subscriptions
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(64), nullable=False, default=SYSTEM_ACTOR)
    from_status = db.Column(db.String(30))
    to_status = db.Column(db.String(30))
    changes = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        created = self.created_at
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changes": self.changes or {},
            "timestamp": created.isoformat() if created else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.action} {self.entity_type}:{self.entity_id} by {self.actor}>"


def write_audit(*, entity_id, action, actor=None, diff=None, entity_type="subscription"):
    """Stage an audit row and flush it; the caller commits or rolls back."""
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    changes = diff or {}
    status = changes.get("status") or {}
    entry = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or SYSTEM_ACTOR,
        from_status=status.get("old"),
        to_status=status.get("new"),
        changes=changes,
    )
    db.session.add(entry)
    db.session.flush()
    return entry
