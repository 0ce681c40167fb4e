"""
AutoTrack — Subscription Request & Approval Service
Notification Service.

Central service for creating and querying in-app notifications.

Workflow transitions deliver through ``SqlNotificationSink``: each
``notify`` call commits on its own, after the transition it describes has
already been committed. A failed insert is logged and dropped; it never
undoes the transition.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from autotrack.core.exceptions import NotFoundError
from autotrack.models import db
from autotrack.models.notification import AppNotification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, message, subscription_id=None):
        """
        Create a single notification record.

        Returns:
            The created AppNotification instance (already committed).
        """
        notif = AppNotification(
            user_id=user_id,
            message=message,
            subscription_id=subscription_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, user_ids, message, subscription_id=None):
        """
        Send the same message to several users in one commit.

        Returns:
            List of created AppNotification instances.
        """
        notifications = []
        for uid in dict.fromkeys(user_ids):
            notif = AppNotification(user_id=uid, message=message, subscription_id=subscription_id)
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a user, newest first.
        """
        q = AppNotification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(AppNotification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(user_id):
        return AppNotification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(user_id, notification_id):
        """Mark one of the user's notifications as read.

        Another user's notification is reported as missing.
        """
        notif = db.session.get(AppNotification, notification_id)
        if notif is None or notif.user_id != user_id:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(user_id):
        """Mark all of a user's notifications as read. Returns the count changed."""
        unread = AppNotification.query.filter_by(user_id=user_id, is_read=False).all()
        for n in unread:
            n.mark_read()
        db.session.commit()
        return len(unread)


class SqlNotificationSink:
    """Fire-and-forget delivery used by the workflow engine."""

    def notify(self, user_id: str, message: str, subscription_id: str | None = None) -> None:
        try:
            NotificationService.create(user_id=user_id, message=message, subscription_id=subscription_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Notification delivery failed for user %s", user_id,
                extra={"subscription_id": subscription_id, "user_id": user_id},
            )

    def notify_many(self, user_ids: list[str], message: str, subscription_id: str | None = None) -> None:
        if not user_ids:
            return
        try:
            NotificationService.broadcast(user_ids=user_ids, message=message, subscription_id=subscription_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Notification fan-out to %d users failed", len(user_ids),
                extra={"subscription_id": subscription_id},
            )
