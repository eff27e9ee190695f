"""
Notification Service.

Notification delivery is a best-effort side channel. Callers commit their
state transition first and then notify; a delivery failure is rolled back in
isolation, logged and reported as zero deliveries, never raised.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from compliance.models import db
from compliance.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def notify(user_id, *, type="system", title, message="", link_to=None):
        """Notify a single user. Returns True when the record was stored."""
        return NotificationService.notify_users(
            [user_id], type=type, title=title, message=message, link_to=link_to,
        ) == 1

    @staticmethod
    def notify_users(user_ids, *, type="system", title, message="", link_to=None):
        """
        Send one notification per recipient.

        Duplicate and empty ids are dropped. Returns the number of
        notifications stored (0 on failure).
        """
        targets = []
        for uid in user_ids:
            if uid is not None and uid not in targets:
                targets.append(uid)
        if not targets:
            return 0

        try:
            for uid in targets:
                db.session.add(Notification(
                    user_id=uid,
                    type=type,
                    title=title,
                    message=message,
                    link_to=link_to,
                ))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("Notification delivery failed type=%s users=%s: %s",
                           type, targets, exc)
            return 0
        return len(targets)

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, user_id):
        """Mark a user's notification as read. Returns None if not theirs."""
        notif = db.session.get(Notification, notification_id)
        if not notif or notif.user_id != user_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif
