"""
Duty domain models.

Models:
    - Duty: a unit of work owned by a group, optionally carrying an expense.
    - DutyAssignment: (duty, user) membership with an acceptance flag.

``Duty.status`` is the single piece of shared mutable state in the engine.
It is only ever written through ``duty_state_machine.transition`` (a
compare-and-swap on the current status that bumps ``version``) or by the
settlement calculator inside the same CAS.
"""

from dutyflow.models import _iso, _money, _utcnow, _uuid, db

# ── Constants ────────────────────────────────────────────────────────────────

DUTY_STATUSES = (
    "pending",
    "in_progress",
    "pending_receipt",
    "voting",
    "completed_pending_verification",
    "admin_review",
    "approved",
    "paid",
    "rejected",
)

EXPENSE_TYPES = {"none", "reimbursable", "advance"}
DUTY_PRIORITIES = {"low", "medium", "high", "critical"}

# Statuses that require Duty.final_amount to be set (and only these).
SETTLED_STATUSES = frozenset({"approved", "paid"})

# Statuses from which an assignee may submit a claim or receipt.
CLAIMABLE_STATUSES = frozenset({"pending", "in_progress", "pending_receipt"})

# Statuses in which peer votes are accepted.
VOTING_STATUSES = frozenset({"completed_pending_verification", "voting"})


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

DUTY_TRANSITIONS = {
    "pending":                        ["in_progress", "completed_pending_verification", "voting"],
    "in_progress":                    ["completed_pending_verification", "voting", "pending"],
    "pending_receipt":                ["completed_pending_verification", "voting"],
    "completed_pending_verification": ["admin_review"],
    "voting":                         ["admin_review"],
    "admin_review":                   ["approved", "paid", "rejected"],
    "rejected":                       ["pending", "pending_receipt"],
    "approved":                       [],
    "paid":                           [],
}


def validate_duty_transition(old_status, new_status):
    """Return True if Duty status transition is valid."""
    return new_status in DUTY_TRANSITIONS.get(old_status, [])


def settled_status_for(expense_type: str) -> str:
    """Terminal status reached by an admin settlement.

    Duties with no expense stop at ``approved``; anything carrying money
    goes straight to ``paid`` once the settlement record exists.
    """
    return "approved" if expense_type == "none" else "paid"


class Duty(db.Model):
    """
    Trackable task owned by a group.

    Business rules:
    - final_amount is set iff status in SETTLED_STATUSES.
    - version increments on every status write (CAS token).
    - Cannot be deleted while a pending claim exists.
    """

    __tablename__ = "duties"
    __table_args__ = (
        db.Index("idx_duty_group_status", "group_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    group_id = db.Column(db.String(64), nullable=False, index=True,
                         comment="Owning group/event (farewell) identifier")
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), default="general")
    expense_type = db.Column(db.String(20), nullable=False, default="reimbursable",
                             comment="none | reimbursable | advance")
    expected_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    final_amount = db.Column(db.Numeric(12, 2), nullable=True,
                             comment="Set only by the settlement calculator")
    deadline = db.Column(db.Date, nullable=True)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(40), nullable=False, default="pending", index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    assignments = db.relationship(
        "DutyAssignment", backref="duty", lazy="select",
        cascade="all, delete-orphan", order_by="DutyAssignment.assigned_at",
    )

    @property
    def assignee_ids(self) -> list[str]:
        return [a.user_id for a in self.assignments]

    def to_dict(self, include_assignments=False):
        d = {
            "id": self.id,
            "group_id": self.group_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "expense_type": self.expense_type,
            "expected_amount": _money(self.expected_amount),
            "final_amount": _money(self.final_amount),
            "deadline": _iso(self.deadline),
            "priority": self.priority,
            "status": self.status,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_assignments:
            d["assignments"] = [a.to_dict() for a in self.assignments]
        return d

    def __repr__(self):
        return f"<Duty {self.id[:8]}: {self.title[:40]} [{self.status}]>"


class DutyAssignment(db.Model):
    """(duty, member) pair.  ``accepted`` stays NULL until the member responds."""

    __tablename__ = "duty_assignments"
    __table_args__ = (
        db.UniqueConstraint("duty_id", "user_id", name="uq_duty_assignment"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    duty_id = db.Column(
        db.String(36), db.ForeignKey("duties.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    accepted = db.Column(db.Boolean, nullable=True)
    assigned_by = db.Column(db.String(64), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "duty_id": self.duty_id,
            "user_id": self.user_id,
            "accepted": self.accepted,
            "assigned_by": self.assigned_by,
            "assigned_at": _iso(self.assigned_at),
            "responded_at": _iso(self.responded_at),
        }

    def __repr__(self):
        return f"<DutyAssignment {self.duty_id[:8]}/{self.user_id}>"
