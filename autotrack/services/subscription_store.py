"""
Subscription Store — durable persistence for the workflow engine.

Every write goes through one of ``add`` / ``save`` / ``delete`` which:
  1. stages the change (plus its AuditLog row) in the session,
  2. commits,
  3. on failure rolls back and re-raises, so a transition is never
     reported as applied unless it is durable.

A concurrent write to the same row (SQLAlchemy ``version_id_col``)
surfaces as ``ConflictError`` instead of silently overwriting.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from autotrack.core.exceptions import ConflictError
from autotrack.models import db
from autotrack.models.audit import write_audit
from autotrack.models.subscription import DeletedSubscription, Subscription

logger = logging.getLogger(__name__)


class SqlSubscriptionStore:
    """Subscription persistence backed by Flask-SQLAlchemy."""

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, sub_id: str | None) -> Subscription | None:
        if not sub_id:
            return None
        return db.session.get(Subscription, sub_id)

    def query(self, *, status=None, department=None, requested_by=None,
              hod_id=None, tool_name=None):
        """Filtered query, newest request first. The caller paginates."""
        q = Subscription.query
        if status:
            statuses = [status] if isinstance(status, str) else list(status)
            q = q.filter(Subscription.status.in_(statuses))
        if department:
            q = q.filter_by(department=department)
        if requested_by:
            q = q.filter_by(requested_by=requested_by)
        if hod_id:
            q = q.filter_by(hod_id=hod_id)
        if tool_name:
            q = q.filter_by(tool_name=tool_name)
        return q.order_by(Subscription.request_date.desc())

    def list_by_status(self, statuses) -> list[Subscription]:
        return self.query(status=statuses).all()

    def deleted_query(self):
        return DeletedSubscription.query.order_by(DeletedSubscription.deleted_at.desc())

    # ── Writes ───────────────────────────────────────────────────────────

    def add(self, sub: Subscription, *, action: str, actor: str | None, diff: dict) -> Subscription:
        db.session.add(sub)
        return self._commit(sub, action=action, actor=actor, diff=diff)

    def save(self, sub: Subscription, *, action: str, actor: str | None, diff: dict) -> Subscription:
        return self._commit(sub, action=action, actor=actor, diff=diff)

    def delete(self, sub: Subscription, archive: DeletedSubscription, *, actor: str | None) -> DeletedSubscription:
        """Archive then remove, in one transaction."""
        sub_id = sub.id
        db.session.add(archive)
        db.session.delete(sub)
        try:
            write_audit(
                entity_id=sub_id,
                action="subscription.delete",
                actor=actor,
                diff={"justification": archive.justification},
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to delete subscription %s", sub_id, extra={"subscription_id": sub_id})
            raise
        return archive

    def _commit(self, sub: Subscription, *, action: str, actor: str | None, diff: dict) -> Subscription:
        sub_id = sub.id
        try:
            db.session.flush()
            write_audit(entity_id=sub_id, action=action, actor=actor, diff=diff)
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.warning(
                "Concurrent modification on %s", action,
                extra={"subscription_id": sub_id, "action": action},
            )
            raise ConflictError(
                resource="Subscription", field="version", value=sub_id,
                message=f"Subscription {sub_id} was modified concurrently; reload and retry",
            ) from None
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Persistence failure on %s", action, extra={"subscription_id": sub_id})
            raise
        return sub
