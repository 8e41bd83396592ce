"""
Claim & vote models.

Models:
    - Claim: a claimant's assertion of completed work and amount owed.
      Receipts (the legacy upload shape) are stored as claims with
      ``source="receipt"``; there is no separate receipt table.
    - Vote: one effective peer vote per (claim, voter).

Claims are append-only from the claimant's side: a resubmission after
rejection is a new row.  Only the settlement calculator and the admin
reject path change ``Claim.status``.
"""

from dutyflow.models import _iso, _money, _utcnow, _uuid, db

# ── Constants ────────────────────────────────────────────────────────────────

CLAIM_STATUSES = {"pending", "partially_approved", "approved", "rejected"}
CLAIM_SOURCES = {"claim", "receipt"}
VOTE_OUTCOMES = {"approve", "reject"}
PAYMENT_MODES = {"online", "offline"}


class Claim(db.Model):
    """Expense/work claim submitted by an assignee of a duty."""

    __tablename__ = "duty_claims"
    __table_args__ = (
        db.Index("idx_claim_duty_claimant", "duty_id", "claimant_id"),
        db.Index("idx_claim_duty_status", "duty_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    duty_id = db.Column(
        db.String(36), db.ForeignKey("duties.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    claimant_id = db.Column(db.String(64), nullable=False)
    claimed_amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.Text, default="")
    proof_reference = db.Column(db.String(500), nullable=True,
                                comment="Opaque URL/storage key; storage is external")
    source = db.Column(db.String(20), nullable=False, default="claim",
                       comment="claim | receipt")
    status = db.Column(db.String(30), nullable=False, default="pending")

    # Admin decision trail (rejections; settlements live in SettlementRecord)
    rejection_reason = db.Column(db.Text, nullable=True)
    decided_by = db.Column(db.String(64), nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    duty = db.relationship("Duty", backref=db.backref("claims", lazy="dynamic", passive_deletes=True))
    votes = db.relationship(
        "Vote", backref="claim", lazy="select",
        cascade="all, delete-orphan", order_by="Vote.created_at",
    )

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def to_dict(self, include_votes=False):
        d = {
            "id": self.id,
            "duty_id": self.duty_id,
            "claimant_id": self.claimant_id,
            "claimed_amount": _money(self.claimed_amount),
            "description": self.description,
            "proof_reference": self.proof_reference,
            "source": self.source,
            "status": self.status,
            "rejection_reason": self.rejection_reason,
            "decided_by": self.decided_by,
            "decided_at": _iso(self.decided_at),
            "created_at": _iso(self.created_at),
        }
        if include_votes:
            d["votes"] = [v.to_dict() for v in self.votes]
        return d

    def __repr__(self):
        return f"<Claim {self.id[:8]} duty={self.duty_id[:8]} {self.status}>"


class Vote(db.Model):
    """
    Peer vote on a claim.

    The (claim_id, voter_id) unique constraint is the authoritative guard;
    the vote aggregator upserts so a resubmission overwrites the outcome and
    refreshes ``updated_at``.
    """

    __tablename__ = "duty_votes"
    __table_args__ = (
        db.UniqueConstraint("claim_id", "voter_id", name="uq_vote_claim_voter"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    claim_id = db.Column(
        db.String(36), db.ForeignKey("duty_claims.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    duty_id = db.Column(db.String(36), nullable=False, index=True)
    voter_id = db.Column(db.String(64), nullable=False)
    outcome = db.Column(db.String(10), nullable=False, comment="approve | reject")
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "claim_id": self.claim_id,
            "duty_id": self.duty_id,
            "voter_id": self.voter_id,
            "outcome": self.outcome,
            "note": self.note,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Vote {self.voter_id} {self.outcome} on {self.claim_id[:8]}>"
