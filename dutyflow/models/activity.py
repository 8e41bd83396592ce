"""
Duty activity log model.

Models:
    - ActivityLogEntry: immutable, append-only audit trail, one row per
      mutating duty operation (create, assign, claim, vote, quorum_reached,
      verify, reject, ...).

``duty_id`` is deliberately not a foreign key: history must survive the
deletion of the duty it describes.
"""

from sqlalchemy import event

from dutyflow.models import _iso, _utcnow, _uuid, db
from dutyflow.models.settlement import ImmutableRecordError

# ── Constants ────────────────────────────────────────────────────────────────

ACTIVITY_ACTIONS = {
    "create",
    "assign",
    "unassign",
    "respond",
    "claim",
    "vote",
    "quorum_reached",
    "verify",
    "compensate",
    "reject",
    "delete",
}


class ActivityLogEntry(db.Model):
    """Append-only audit row consumed by duty history views."""

    __tablename__ = "duty_activity_log"
    __table_args__ = (
        db.Index("idx_activity_duty_ts", "duty_id", "created_at"),
        db.Index("idx_activity_action", "action_type"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    duty_id = db.Column(db.String(36), nullable=False)
    actor_id = db.Column(db.String(64), nullable=False, default="system")
    action_type = db.Column(db.String(40), nullable=False)
    details = db.Column(db.Text, default="")
    # "metadata" is reserved on declarative classes, hence the attribute name
    meta = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "duty_id": self.duty_id,
            "actor_id": self.actor_id,
            "action_type": self.action_type,
            "details": self.details,
            "metadata": self.meta or {},
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ActivityLogEntry {self.action_type} on {self.duty_id[:8]} by {self.actor_id}>"


@event.listens_for(ActivityLogEntry, "before_update")
def _block_activity_update(mapper, connection, target):
    raise ImmutableRecordError("Activity log entries are append-only")


@event.listens_for(ActivityLogEntry, "before_delete")
def _block_activity_delete(mapper, connection, target):
    raise ImmutableRecordError("Activity log entries are append-only")
