"""
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking, the sink
      used by the default notification dispatcher.
"""

from dutyflow.models import _iso, _utcnow, db

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"duty", "finance", "system"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.String(64), nullable=False, index=True)
    group_id = db.Column(db.String(64), nullable=True, index=True)
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="duty")
    link = db.Column(db.String(500), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "group_id": self.group_id,
            "title": self.title,
            "body": self.body,
            "category": self.category,
            "link": self.link,
            "is_read": self.is_read,
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
