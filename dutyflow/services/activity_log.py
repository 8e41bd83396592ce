"""
Activity Log Writer.

One append-only ActivityLogEntry per mutating duty operation, written after
the primary commit in its own commit.  A failed write never undoes the
operation it describes: it is rolled back, logged, and surfaced as
``ActivityLogWriteFailed`` in the result's ``warnings``.
"""

import logging

from dutyflow.models import db
from dutyflow.models.activity import ACTIVITY_ACTIONS, ActivityLogEntry
from dutyflow.utils.errors import E

logger = logging.getLogger(__name__)


def record(duty_id, actor_id, action_type, details="", metadata=None, warnings=None):
    """Append an activity entry and commit it.

    Returns:
        The committed ActivityLogEntry, or None if the write failed.
    """
    if action_type not in ACTIVITY_ACTIONS:
        raise ValueError(f"Unknown activity action {action_type!r}")

    try:
        entry = ActivityLogEntry(
            duty_id=duty_id,
            actor_id=actor_id or "system",
            action_type=action_type,
            details=details or "",
            meta=metadata or {},
        )
        db.session.add(entry)
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        logger.warning(
            "ActivityLogWriteFailed: %s on duty %s: %s", action_type, duty_id, exc,
            exc_info=True,
            extra={
                "duty_id": duty_id,
                "actor_id": actor_id,
                "event_type": action_type,
                "error_code": E.ACTIVITY_LOG_WRITE_FAILED,
            },
        )
        if warnings is not None and E.ACTIVITY_LOG_WRITE_FAILED not in warnings:
            warnings.append(E.ACTIVITY_LOG_WRITE_FAILED)
        return None
    return entry


def history(duty_id, limit=50, action_type=None):
    """Newest-first activity for a duty."""
    q = ActivityLogEntry.query.filter_by(duty_id=duty_id)
    if action_type:
        q = q.filter_by(action_type=action_type)
    return (
        q.order_by(ActivityLogEntry.created_at.desc(), ActivityLogEntry.id.desc())
        .limit(limit)
        .all()
    )
