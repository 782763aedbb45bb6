"""
Translation KPI Platform
Notification Service.

In-app notification sink for lifecycle and KPI events.  Delivery is
fire-and-forget: ``notify_users`` writes inside a SAVEPOINT and logs any
failure instead of raising, so a broken notification never blocks the
operation that triggered it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify_users(recipient_ids, *, notif_type, message, project_id=None, link=None, exclude=None):
        """
        Create one notification per distinct recipient.

        Runs in a nested transaction on the caller's session; the caller
        commits.  Returns the number of notifications written (0 on failure).
        """
        targets = {rid for rid in recipient_ids if rid is not None}
        if exclude is not None:
            targets.discard(exclude)
        if not targets:
            return 0
        try:
            with db.session.begin_nested():
                for rid in sorted(targets):
                    db.session.add(Notification(
                        recipient_id=rid,
                        type=notif_type,
                        message=message,
                        project_id=project_id,
                        link=link,
                    ))
        except Exception:
            logger.warning("Notification delivery failed (type=%s project=%s) — main flow unaffected",
                           notif_type, project_id, exc_info=True)
            return 0
        return len(targets)

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        stmt = select(Notification).where(Notification.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        total = db.session.execute(
            select(db.func.count()).select_from(stmt.subquery())
        ).scalar_one()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(recipient_id):
        return db.session.execute(
            select(db.func.count(Notification.id)).where(
                Notification.recipient_id == recipient_id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark a single notification as read.  Returns None if not the recipient's."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id):
        now = datetime.now(timezone.utc)
        count = Notification.query.filter_by(recipient_id=recipient_id, is_read=False).update(
            {"is_read": True, "read_at": now}, synchronize_session="fetch",
        )
        db.session.commit()
        return count
