"""
Settlement Calculator.

Turns an admin decision on a pending claim into an immutable
SettlementRecord, moves the duty to its terminal status and stamps
``Duty.final_amount``.  This module is the only writer of
``final_amount``.

Business rules:
    - 0 <= approved_amount <= claimed_amount, never clamped.
    - deducted_amount = claimed - approved; the deduction reason is
      optional.
    - Claim ends ``approved`` when nothing was deducted, otherwise
      ``partially_approved``.  A zero approval still produces a record.
    - The duty-status CAS (admin_review -> paid/approved) runs inside the
      caller's transaction.  The loser of a race gets AlreadySettled and the
      partial unique index on primary records is the second line of defence.
    - Corrections append a compensating record (``supersedes_id``); the
      original row is never touched.

Nothing here commits.  The duty service owns the transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from dutyflow.core.exceptions import (
    AlreadySettled,
    ClaimNotFound,
    DutyNotInExpectedState,
    InvalidApprovedAmount,
    InvalidField,
    MissingRequiredField,
    SettlementNotFound,
    SettlementSuperseded,
)
from dutyflow.models import _utcnow, db
from dutyflow.models.claim import PAYMENT_MODES, Claim
from dutyflow.models.duty import SETTLED_STATUSES, Duty, settled_status_for
from dutyflow.models.settlement import SettlementRecord
from dutyflow.services import duty_state_machine as dsm

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def to_amount(value, field_name: str) -> Decimal:
    """Coerce *value* to a 2-place Decimal or raise InvalidField."""
    if value is None or value == "":
        raise MissingRequiredField(field_name)
    if isinstance(value, bool):
        raise InvalidField(field_name, "must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidField(field_name, "must be a number")
    if not amount.is_finite():
        raise InvalidField(field_name, "must be a finite number")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def compute_deduction(claimed: Decimal, approved: Decimal) -> Decimal:
    """Return ``claimed - approved``; raise if *approved* is out of range."""
    claimed = Decimal(claimed).quantize(CENTS)
    if approved < 0 or approved > claimed:
        raise InvalidApprovedAmount(approved, claimed)
    return claimed - approved


def claim_status_for(deducted: Decimal) -> str:
    return "approved" if deducted == 0 else "partially_approved"


@dataclass(frozen=True)
class SettlementDecision:
    """Validated admin decision on a claim."""

    approved_amount: Decimal
    payment_mode: str
    decided_by: str
    deduction_reason: str | None = None
    notes: str | None = None

    @classmethod
    def build(cls, approved_amount, payment_mode, decided_by,
              deduction_reason=None, notes=None) -> "SettlementDecision":
        approved = to_amount(approved_amount, "approved_amount")
        if not payment_mode:
            raise MissingRequiredField("payment_mode")
        if payment_mode not in PAYMENT_MODES:
            raise InvalidField("payment_mode", f"must be one of {sorted(PAYMENT_MODES)}")
        reason = (deduction_reason or "").strip() or None
        return cls(
            approved_amount=approved,
            payment_mode=payment_mode,
            decided_by=decided_by,
            deduction_reason=reason,
            notes=notes,
        )

    def deduction_for(self, claimed: Decimal) -> Decimal:
        """Amount withheld from *claimed*; the reason stays optional."""
        return compute_deduction(claimed, self.approved_amount)


def settle(
    claim_id: str,
    approved_amount,
    deduction_reason: str | None,
    payment_mode: str,
    decided_by: str,
    notes: str | None = None,
) -> SettlementRecord:
    """Settle a pending claim whose duty is in ``admin_review``.

    Returns:
        The flushed (uncommitted) SettlementRecord.

    Raises:
        ClaimNotFound, AlreadySettled, DutyNotInExpectedState,
        InvalidApprovedAmount, InvalidField, MissingRequiredField.
    """
    claim = db.session.get(Claim, claim_id)
    if claim is None:
        raise ClaimNotFound(claim_id)
    if not claim.is_pending:
        raise AlreadySettled(claim.id, claim.status)

    duty = claim.duty
    if duty.status in SETTLED_STATUSES:
        raise AlreadySettled(claim.id, duty.status)
    dsm.require_status(duty, "admin_review")

    decision = SettlementDecision.build(
        approved_amount, payment_mode, decided_by, deduction_reason, notes,
    )
    claimed = Decimal(claim.claimed_amount).quantize(CENTS)
    deducted = decision.deduction_for(claimed)

    to_status = settled_status_for(duty.expense_type)
    if not dsm.transition(duty.id, ["admin_review"], to_status,
                          final_amount=decision.approved_amount):
        raise AlreadySettled(claim.id, dsm.current_status(duty.id))

    record = SettlementRecord(
        claim_id=claim.id,
        duty_id=claim.duty_id,
        claimant_id=claim.claimant_id,
        claimed_amount=claimed,
        approved_amount=decision.approved_amount,
        deducted_amount=deducted,
        deduction_reason=decision.deduction_reason,
        payment_mode=decision.payment_mode,
        decided_by=decision.decided_by,
        notes=decision.notes,
    )
    db.session.add(record)
    claim.status = claim_status_for(deducted)
    claim.decided_by = decided_by
    claim.decided_at = _utcnow()

    try:
        db.session.flush()
    except IntegrityError as exc:
        raise AlreadySettled(claim.id) from exc

    logger.info(
        "Claim %s settled: claimed=%s approved=%s deducted=%s (%s)",
        claim.id, claimed, decision.approved_amount, deducted, decision.payment_mode,
        extra={
            "claim_id": claim.id,
            "duty_id": claim.duty_id,
            "settlement_id": record.id,
            "actor_id": decided_by,
            "to_status": to_status,
            "event_type": "claim_settled",
        },
    )
    return record


def latest_for_claim(claim_id: str) -> SettlementRecord | None:
    """The effective record for a claim: the one nothing supersedes."""
    superseded = select(SettlementRecord.supersedes_id).where(
        SettlementRecord.claim_id == claim_id,
        SettlementRecord.supersedes_id.is_not(None),
    )
    return (
        SettlementRecord.query
        .filter(SettlementRecord.claim_id == claim_id)
        .filter(SettlementRecord.id.not_in(superseded))
        .first()
    )


def compensate(
    settlement_id: str,
    approved_amount,
    reason: str,
    decided_by: str,
    notes: str | None = None,
) -> SettlementRecord:
    """Append a record superseding *settlement_id* with a new approved amount.

    The duty's ``final_amount`` and the claim's terminal status follow the
    new record.  Only the latest record of a claim can be superseded.
    """
    original = db.session.get(SettlementRecord, settlement_id)
    if original is None:
        raise SettlementNotFound(settlement_id)

    reason = (reason or "").strip()
    if not reason:
        raise MissingRequiredField("reason")

    latest = latest_for_claim(original.claim_id)
    if latest is None or latest.id != original.id:
        raise SettlementSuperseded(original.id, latest.id if latest else None)

    approved = to_amount(approved_amount, "approved_amount")
    claimed = Decimal(original.claimed_amount).quantize(CENTS)
    deducted = compute_deduction(claimed, approved)

    if not dsm.write_if_status(original.duty_id, SETTLED_STATUSES, final_amount=approved):
        duty = db.session.get(Duty, original.duty_id)
        raise DutyNotInExpectedState(original.duty_id, duty.status if duty else "missing", SETTLED_STATUSES)

    record = SettlementRecord(
        claim_id=original.claim_id,
        duty_id=original.duty_id,
        claimant_id=original.claimant_id,
        claimed_amount=claimed,
        approved_amount=approved,
        deducted_amount=deducted,
        deduction_reason=reason,
        payment_mode=original.payment_mode,
        decided_by=decided_by,
        notes=notes,
        supersedes_id=original.id,
    )
    db.session.add(record)

    claim = db.session.get(Claim, original.claim_id)
    claim.status = claim_status_for(deducted)
    claim.decided_by = decided_by
    claim.decided_at = _utcnow()

    try:
        db.session.flush()
    except IntegrityError as exc:
        raise SettlementSuperseded(original.id) from exc

    logger.info(
        "Settlement %s superseded by %s: approved %s -> %s",
        original.id, record.id, original.approved_amount, approved,
        extra={
            "settlement_id": record.id,
            "claim_id": original.claim_id,
            "duty_id": original.duty_id,
            "actor_id": decided_by,
            "event_type": "settlement_compensated",
        },
    )
    return record


def find_invariant_violations() -> list[dict]:
    """Scan for duties whose money state disagrees with their settlements.

    Checks:
        - approved/paid duty without final_amount, or without a settlement
        - final_amount != approved_amount of the latest settlement
        - final_amount present on a duty that is not settled
        - a record where claimed != approved + deducted
    """
    violations = []

    for duty in Duty.query.filter(Duty.status.in_(SETTLED_STATUSES)).all():
        records = SettlementRecord.query.filter_by(duty_id=duty.id).all()
        superseded = {r.supersedes_id for r in records if r.supersedes_id}
        heads = [r for r in records if r.id not in superseded]

        if duty.final_amount is None:
            violations.append({"duty_id": duty.id, "status": duty.status,
                               "problem": "missing_final_amount"})
            continue
        if not heads:
            violations.append({"duty_id": duty.id, "status": duty.status,
                               "problem": "missing_settlement"})
            continue
        latest = max(heads, key=lambda r: r.created_at)
        if Decimal(duty.final_amount).quantize(CENTS) != Decimal(latest.approved_amount).quantize(CENTS):
            violations.append({
                "duty_id": duty.id,
                "status": duty.status,
                "problem": "final_amount_mismatch",
                "final_amount": f"{duty.final_amount:.2f}",
                "settled_amount": f"{latest.approved_amount:.2f}",
            })

    unsettled_with_amount = Duty.query.filter(
        Duty.status.not_in(SETTLED_STATUSES),
        Duty.final_amount.is_not(None),
    ).all()
    for duty in unsettled_with_amount:
        violations.append({"duty_id": duty.id, "status": duty.status,
                           "problem": "unexpected_final_amount"})

    for record in SettlementRecord.query.all():
        if record.claimed_amount != record.approved_amount + record.deducted_amount:
            violations.append({
                "duty_id": record.duty_id,
                "settlement_id": record.id,
                "problem": "deduction_mismatch",
            })

    if violations:
        logger.warning("%d settlement invariant violation(s) found", len(violations),
                       extra={"event_type": "settlement_invariant_violation"})
    return violations
