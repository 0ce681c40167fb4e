"""
AutoTrack — Subscription Request & Approval Service
Notification domain model.

Models:
    - AppNotification: in-app notification record with read tracking
"""

import uuid
from datetime import datetime, timezone

from autotrack.models import db


class AppNotification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. Only the read flag ever changes.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_user_read", "user_id", "is_read"),
    )

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = db.Column(
        db.String(32), db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    message = db.Column(db.Text, nullable=False)

    # Link to source subscription (kept as a plain id so archives survive deletes)
    subscription_id = db.Column(db.String(32), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "message": self.message,
            "subscription_id": self.subscription_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<AppNotification {self.id}: {self.message[:40]}>"
