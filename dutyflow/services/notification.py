"""
Notification Dispatcher.

The engine depends only on the ``NotificationDispatcher`` interface.  The
default implementation, ``InAppNotificationDispatcher``, stores one
Notification row per recipient; deployments can plug their own sink in
``app.extensions["duty_notifier"]``.

Delivery is best effort.  ``dispatch()`` runs after the primary operation
has committed; any failure is logged as NotificationDeliveryFailed, rolled
back, and reported in the operation's ``warnings``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from flask import current_app

from dutyflow.models import db
from dutyflow.models.notification import Notification
from dutyflow.utils.errors import E

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def notify(self, user_id: str, title: str, body: str = "", category: str = "duty",
               link: str | None = None, group_id: str | None = None) -> None:
        ...


class InAppNotificationDispatcher:
    """Stores notifications in the ``notifications`` table."""

    # ── Create ────────────────────────────────────────────────────────────

    def notify(self, user_id, title, body="", category="duty", link=None, group_id=None):
        notif = Notification(
            recipient_id=user_id,
            group_id=group_id,
            title=title,
            body=body,
            category=category,
            link=link,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient_id, group_id=None, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(recipient_id=recipient_id)
        if group_id:
            q = q.filter_by(group_id=group_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient_id, group_id=None):
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        if group_id:
            q = q.filter_by(group_id=group_id)
        return q.count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id, recipient_id):
        """Mark one of *recipient_id*'s notifications as read; None if not theirs."""
        notif = db.session.get(Notification, notification_id)
        if notif is None or notif.recipient_id != recipient_id:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient_id, group_id=None):
        q = Notification.query.filter_by(recipient_id=recipient_id, is_read=False)
        if group_id:
            q = q.filter_by(group_id=group_id)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count


def get_dispatcher() -> NotificationDispatcher:
    """Return the dispatcher registered on the current app."""
    dispatcher = current_app.extensions.get("duty_notifier")
    if dispatcher is None:
        dispatcher = InAppNotificationDispatcher()
        current_app.extensions["duty_notifier"] = dispatcher
    return dispatcher


def dispatch(user_id, title, body="", *, category="duty", link=None, group_id=None,
             duty_id=None, warnings=None) -> bool:
    """Best-effort delivery of one notification.

    Returns:
        True when the dispatcher accepted it.  On failure the session is
        rolled back, a warning is logged and ``NotificationDeliveryFailed``
        is appended to *warnings*.
    """
    try:
        get_dispatcher().notify(
            user_id, title, body=body, category=category, link=link, group_id=group_id,
        )
        return True
    except Exception as exc:
        db.session.rollback()
        logger.warning(
            "NotificationDeliveryFailed: %s to %s: %s", title, user_id, exc,
            exc_info=True,
            extra={
                "duty_id": duty_id,
                "actor_id": user_id,
                "error_code": E.NOTIFICATION_DELIVERY_FAILED,
            },
        )
        if warnings is not None and E.NOTIFICATION_DELIVERY_FAILED not in warnings:
            warnings.append(E.NOTIFICATION_DELIVERY_FAILED)
        return False
