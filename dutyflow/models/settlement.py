"""
Settlement domain model.

Models:
    - SettlementRecord: the admin's immutable financial decision on a claim.

Records are never mutated or deleted.  A correction appends a compensating
record whose ``supersedes_id`` points at the record it replaces; the latest
record for a claim carries the effective approved amount.

The partial unique index ``uq_settlement_primary_claim`` allows exactly one
primary (non-compensating) record per claim, which backs up the duty-status
CAS when two admins settle the same claim at once.
"""

from sqlalchemy import event, text

from dutyflow.models import _iso, _money, _utcnow, _uuid, db


class ImmutableRecordError(RuntimeError):
    """Raised when code attempts to UPDATE or DELETE an append-only row."""


class SettlementRecord(db.Model):
    """
    Immutable settlement of a claim.

    Business rules:
    - claimed_amount == approved_amount + deducted_amount, deducted_amount >= 0.
    - Created exclusively by the settlement calculator.
    - FK targets use RESTRICT: a settled claim/duty cannot disappear underneath
      its settlement.
    """

    __tablename__ = "settlement_records"
    __table_args__ = (
        db.Index("idx_settlement_duty", "duty_id", "created_at"),
        db.Index(
            "uq_settlement_primary_claim", "claim_id",
            unique=True,
            sqlite_where=text("supersedes_id IS NULL"),
            postgresql_where=text("supersedes_id IS NULL"),
        ),
        # A record can be superseded once; corrections form a chain.
        db.Index("uq_settlement_supersedes", "supersedes_id", unique=True),
        db.CheckConstraint("deducted_amount >= 0", name="ck_settlement_deduction_non_negative"),
        db.CheckConstraint("approved_amount >= 0", name="ck_settlement_approved_non_negative"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    claim_id = db.Column(
        db.String(36), db.ForeignKey("duty_claims.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    duty_id = db.Column(
        db.String(36), db.ForeignKey("duties.id", ondelete="RESTRICT"),
        nullable=False,
    )
    claimant_id = db.Column(db.String(64), nullable=False)

    claimed_amount = db.Column(db.Numeric(12, 2), nullable=False)
    approved_amount = db.Column(db.Numeric(12, 2), nullable=False)
    deducted_amount = db.Column(db.Numeric(12, 2), nullable=False)
    deduction_reason = db.Column(db.Text, nullable=True)

    payment_mode = db.Column(db.String(10), nullable=False, comment="online | offline")
    decided_by = db.Column(db.String(64), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    supersedes_id = db.Column(
        db.String(36), db.ForeignKey("settlement_records.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Set on compensating records; points at the superseded record",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_compensation(self) -> bool:
        return self.supersedes_id is not None

    def to_dict(self):
        return {
            "id": self.id,
            "claim_id": self.claim_id,
            "duty_id": self.duty_id,
            "claimant_id": self.claimant_id,
            "claimed_amount": _money(self.claimed_amount),
            "approved_amount": _money(self.approved_amount),
            "deducted_amount": _money(self.deducted_amount),
            "deduction_reason": self.deduction_reason,
            "payment_mode": self.payment_mode,
            "decided_by": self.decided_by,
            "notes": self.notes,
            "supersedes_id": self.supersedes_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return (
            f"<SettlementRecord {self.id[:8]} claim={self.claim_id[:8]} "
            f"approved={self.approved_amount}>"
        )


@event.listens_for(SettlementRecord, "before_update")
def _block_settlement_update(mapper, connection, target):
    raise ImmutableRecordError(f"SettlementRecord {target.id} is immutable; append a compensating record")


@event.listens_for(SettlementRecord, "before_delete")
def _block_settlement_delete(mapper, connection, target):
    raise ImmutableRecordError(f"SettlementRecord {target.id} cannot be deleted")
