"""
Duty Service: public operation layer of the verification & settlement engine.

Every operation takes a ``Caller`` and returns a discriminated result:

    (payload_dict, None)                    on success
    (None, {"error", "code", "status", ...}) on an expected failure

Layer contract:
    - Guards (role, assignee, field validation) run before any write.
    - The primary write, including the duty-status CAS, is one transaction;
      any failure rolls the whole unit back.
    - Activity log and notifications run after the commit.  Their failures
      are downgraded to codes in ``payload["warnings"]``.
    - Unexpected SQLAlchemyError is rolled back, logged with traceback and
      reported as ERR_DATABASE (500).

Usage:
    from dutyflow.services import duty_service
    from dutyflow.services.identity import Caller

    result, err = duty_service.cast_vote(Caller("u2"), claim_id, "approve")
    if err:
        return api_error(err["code"], err["error"], status=err["status"])
"""

from __future__ import annotations

import functools
import logging
from datetime import date

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from dutyflow.core.exceptions import (
    AlreadySettled,
    AssignmentNotFound,
    ClaimAlreadyPending,
    ClaimNotFound,
    DutyHasActiveClaims,
    DutyNotFound,
    DutyNotInExpectedState,
    InvalidClaimAmount,
    InvalidField,
    MissingRequiredField,
    SelfVoteForbidden,
    ServiceError,
)
from dutyflow.models import _utcnow, db
from dutyflow.models.claim import CLAIM_SOURCES, VOTE_OUTCOMES, Claim
from dutyflow.models.duty import (
    CLAIMABLE_STATUSES,
    DUTY_PRIORITIES,
    DUTY_STATUSES,
    EXPENSE_TYPES,
    SETTLED_STATUSES,
    VOTING_STATUSES,
    Duty,
    DutyAssignment,
)
from dutyflow.models.settlement import SettlementRecord
from dutyflow.services import activity_log
from dutyflow.services import duty_state_machine as dsm
from dutyflow.services import settlement_calculator, vote_aggregator
from dutyflow.services.identity import Caller, require_admin, require_assignee
from dutyflow.services.notification import dispatch
from dutyflow.utils.errors import E

logger = logging.getLogger(__name__)

# Duties that can still gain or lose members.
_STAFFABLE_STATUSES = frozenset({"pending", "in_progress"})

# Votes keep being recorded after quorum until the admin decides.
_VOTABLE_STATUSES = VOTING_STATUSES | {"admin_review"}


def _service_boundary(fn):
    """Convert raised ServiceErrors / SQLAlchemyErrors into error results."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs), None
        except ServiceError as exc:
            db.session.rollback()
            logger.info(
                "%s rejected: %s", fn.__name__, exc,
                extra={"error_code": exc.code, "event_type": fn.__name__},
            )
            return None, exc.to_error()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "%s failed with a database error", fn.__name__,
                extra={"error_code": E.DATABASE, "event_type": fn.__name__},
            )
            return None, {"error": "Database error", "code": E.DATABASE, "status": 500}

    return wrapper


# ── Private helpers ──────────────────────────────────────────────────────────


def _get_duty(duty_id) -> Duty:
    duty = db.session.get(Duty, duty_id) if duty_id else None
    if duty is None:
        raise DutyNotFound(duty_id)
    return duty


def _get_claim(claim_id) -> Claim:
    claim = db.session.get(Claim, claim_id) if claim_id else None
    if claim is None:
        raise ClaimNotFound(claim_id)
    return claim


def _required_text(value, field_name: str) -> str:
    text = (value or "").strip() if isinstance(value, str) else value
    if not text:
        raise MissingRequiredField(field_name)
    if not isinstance(text, str):
        raise InvalidField(field_name, "must be a string")
    return text


def _parse_deadline(value):
    if value is None or value == "" or isinstance(value, date):
        return value or None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise InvalidField("deadline", "must be an ISO date (YYYY-MM-DD)")


def _parse_claim_amount(value):
    if value is None or value == "":
        raise MissingRequiredField("claimed_amount")
    try:
        amount = settlement_calculator.to_amount(value, "claimed_amount")
    except InvalidField:
        raise InvalidClaimAmount(value)
    if amount < 0:
        raise InvalidClaimAmount(value)
    return amount


def _pending_claims(duty_id, claimant_id=None) -> list[Claim]:
    q = Claim.query.filter_by(duty_id=duty_id, status="pending")
    if claimant_id is not None:
        q = q.filter_by(claimant_id=claimant_id)
    return q.all()


def _conflict_for(duty_id, expected) -> ServiceError:
    """Build the conflict to raise after a lost CAS."""
    status = dsm.current_status(duty_id)
    if status is None:
        return DutyNotFound(duty_id)
    return DutyNotInExpectedState(duty_id, status, expected)


def _duty_link(duty_id) -> str:
    return f"/duties/{duty_id}"


# ── Duty lifecycle ───────────────────────────────────────────────────────────


@_service_boundary
def create_duty(
    caller: Caller,
    group_id,
    title,
    description="",
    expense_type="reimbursable",
    expected_amount=0,
    deadline=None,
    category=None,
    priority=None,
) -> dict:
    """Create a duty in ``pending``.  Admin only."""
    require_admin(caller, "create_duty")
    group_id = _required_text(group_id, "group_id")
    title = _required_text(title, "title")
    if len(title) > 200:
        raise InvalidField("title", "must be at most 200 characters")

    expense_type = expense_type or "reimbursable"
    if expense_type not in EXPENSE_TYPES:
        raise InvalidField("expense_type", f"must be one of {sorted(EXPENSE_TYPES)}")
    priority = priority or "medium"
    if priority not in DUTY_PRIORITIES:
        raise InvalidField("priority", f"must be one of {sorted(DUTY_PRIORITIES)}")

    amount = settlement_calculator.to_amount(
        expected_amount if expected_amount not in (None, "") else 0, "expected_amount",
    )
    if amount < 0:
        raise InvalidField("expected_amount", "must be >= 0")

    duty = Duty(
        group_id=group_id,
        title=title,
        description=description or "",
        category=category or "general",
        expense_type=expense_type,
        expected_amount=amount,
        deadline=_parse_deadline(deadline),
        priority=priority,
        status="pending",
        created_by=caller.user_id,
    )
    db.session.add(duty)
    db.session.commit()

    payload = {"duty": duty.to_dict(include_assignments=True), "warnings": []}
    activity_log.record(
        duty.id, caller.user_id, "create",
        details=f"Duty '{duty.title}' created",
        metadata={"expense_type": expense_type, "expected_amount": f"{amount:.2f}"},
        warnings=payload["warnings"],
    )
    return payload


@_service_boundary
def assign_members(caller: Caller, duty_id, user_ids) -> dict:
    """Bulk-assign members; the first assignment moves pending -> in_progress."""
    require_admin(caller, "assign_members")
    if not user_ids:
        raise MissingRequiredField("user_ids")
    if isinstance(user_ids, str) or not all(isinstance(u, str) and u.strip() for u in user_ids):
        raise InvalidField("user_ids", "must be a list of user ids")

    duty = _get_duty(duty_id)
    dsm.require_status(duty, _STAFFABLE_STATUSES)

    existing = set(duty.assignee_ids)
    new_ids = []
    for uid in (u.strip() for u in user_ids):
        if uid not in existing and uid not in new_ids:
            new_ids.append(uid)

    if not new_ids:
        return {"duty": duty.to_dict(include_assignments=True), "assigned": [], "warnings": []}

    for uid in new_ids:
        duty.assignments.append(DutyAssignment(user_id=uid, assigned_by=caller.user_id))
    db.session.flush()

    if duty.status == "pending" and not dsm.transition(duty.id, ["pending"], "in_progress"):
        if dsm.current_status(duty.id) != "in_progress":
            raise _conflict_for(duty.id, _STAFFABLE_STATUSES)
    db.session.commit()

    payload = {
        "duty": duty.to_dict(include_assignments=True),
        "assigned": new_ids,
        "warnings": [],
    }
    warnings = payload["warnings"]
    group_id, title = duty.group_id, duty.title

    activity_log.record(
        duty.id, caller.user_id, "assign",
        details=f"Assigned {', '.join(new_ids)}",
        metadata={"user_ids": new_ids},
        warnings=warnings,
    )
    for uid in new_ids:
        dispatch(
            uid, f"You have been assigned: {title}",
            body="Open the duty to accept it and submit your claim when done.",
            link=_duty_link(duty_id), group_id=group_id, duty_id=duty_id,
            warnings=warnings,
        )
    return payload


@_service_boundary
def respond_to_assignment(caller: Caller, duty_id, accept) -> dict:
    """Assignee accepts or declines their assignment."""
    if not isinstance(accept, bool):
        raise InvalidField("accept", "must be true or false")

    duty = _get_duty(duty_id)
    if duty.status in SETTLED_STATUSES:
        raise DutyNotInExpectedState(duty.id, duty.status, set(DUTY_STATUSES) - SETTLED_STATUSES)

    assignment = DutyAssignment.query.filter_by(duty_id=duty.id, user_id=caller.user_id).first()
    if assignment is None:
        raise AssignmentNotFound(duty.id, caller.user_id)

    assignment.accepted = accept
    assignment.responded_at = _utcnow()
    db.session.commit()

    payload = {"assignment": assignment.to_dict(), "warnings": []}
    activity_log.record(
        duty_id, caller.user_id, "respond",
        details="accepted" if accept else "declined",
        metadata={"accepted": accept},
        warnings=payload["warnings"],
    )
    return payload


@_service_boundary
def unassign_member(caller: Caller, duty_id, user_id) -> dict:
    """Remove a member; a duty left without assignees returns to ``pending``."""
    require_admin(caller, "unassign_member")
    duty = _get_duty(duty_id)

    assignment = DutyAssignment.query.filter_by(duty_id=duty.id, user_id=user_id).first()
    if assignment is None:
        raise AssignmentNotFound(duty.id, user_id)

    pending = _pending_claims(duty.id, user_id)
    if pending:
        raise DutyHasActiveClaims(duty.id, [c.id for c in pending])
    dsm.require_status(duty, _STAFFABLE_STATUSES | {"pending_receipt"})

    duty.assignments.remove(assignment)
    db.session.flush()

    if not duty.assignments and duty.status == "in_progress":
        if not dsm.transition(duty.id, ["in_progress"], "pending"):
            raise _conflict_for(duty.id, ["in_progress"])
    db.session.commit()

    payload = {"duty": duty.to_dict(include_assignments=True), "removed": user_id, "warnings": []}
    activity_log.record(
        duty_id, caller.user_id, "unassign",
        details=f"Unassigned {user_id}",
        metadata={"user_id": user_id},
        warnings=payload["warnings"],
    )
    return payload


@_service_boundary
def delete_duty(caller: Caller, duty_id) -> dict:
    """Hard-delete a duty that has no pending claims and was never settled."""
    require_admin(caller, "delete_duty")
    duty = _get_duty(duty_id)

    pending = _pending_claims(duty.id)
    if pending:
        raise DutyHasActiveClaims(duty.id, [c.id for c in pending])
    if duty.status in SETTLED_STATUSES:
        raise DutyNotInExpectedState(duty.id, duty.status, set(DUTY_STATUSES) - SETTLED_STATUSES)

    title, group_id = duty.title, duty.group_id
    db.session.delete(duty)
    db.session.commit()

    payload = {"deleted": duty_id, "warnings": []}
    activity_log.record(
        duty_id, caller.user_id, "delete",
        details=f"Duty '{title}' deleted",
        metadata={"group_id": group_id},
        warnings=payload["warnings"],
    )
    return payload


# ── Claims ───────────────────────────────────────────────────────────────────


@_service_boundary
def submit_claim(
    caller: Caller,
    duty_id,
    claimed_amount,
    description="",
    proof_reference=None,
    source="claim",
) -> dict:
    """Assignee submits a claim; the duty moves to verification.

    ``source="claim"`` lands in ``completed_pending_verification``;
    ``source="receipt"`` follows the legacy path into ``voting``.
    """
    return _submit_claim(caller, duty_id, claimed_amount, description, proof_reference, source)


def _submit_claim(caller, duty_id, claimed_amount, description, proof_reference, source) -> dict:
    if source not in CLAIM_SOURCES:
        raise InvalidField("source", f"must be one of {sorted(CLAIM_SOURCES)}")

    duty = _get_duty(duty_id)
    require_assignee(caller, duty)
    amount = _parse_claim_amount(claimed_amount)

    pending = _pending_claims(duty.id, caller.user_id)
    if pending:
        raise ClaimAlreadyPending(duty.id, pending[0].id)
    dsm.require_status(duty, CLAIMABLE_STATUSES)

    to_status = "voting" if source == "receipt" else "completed_pending_verification"
    claim = Claim(
        duty_id=duty.id,
        claimant_id=caller.user_id,
        claimed_amount=amount,
        description=description or "",
        proof_reference=proof_reference,
        source=source,
        status="pending",
    )
    db.session.add(claim)
    db.session.flush()

    if not dsm.transition(duty.id, CLAIMABLE_STATUSES, to_status):
        raise _conflict_for(duty.id, CLAIMABLE_STATUSES)
    db.session.commit()

    payload = {"claim": claim.to_dict(), "duty": duty.to_dict(), "warnings": []}
    activity_log.record(
        duty_id, caller.user_id, "claim",
        details=f"{source.capitalize()} submitted for {amount:.2f}",
        metadata={"claim_id": claim.id, "claimed_amount": f"{amount:.2f}", "source": source},
        warnings=payload["warnings"],
    )
    return payload


def submit_receipt(caller: Caller, duty_id, amount, description="", proof_reference=None):
    """Legacy receipt upload: a claim with ``source="receipt"``."""
    return submit_claim(
        caller, duty_id, amount,
        description=description, proof_reference=proof_reference, source="receipt",
    )


# ── Voting ───────────────────────────────────────────────────────────────────


@_service_boundary
def cast_vote(caller: Caller, claim_id, outcome, note=None, eligible_voters=None) -> dict:
    """Record a peer vote and escalate to ``admin_review`` once quorum is met.

    The vote upsert and the quorum CAS share one transaction.  A CAS that
    matches no row (another vote already escalated) is a silent no-op.
    """
    if outcome not in VOTE_OUTCOMES:
        raise InvalidField("outcome", f"must be one of {sorted(VOTE_OUTCOMES)}")

    claim = _get_claim(claim_id)
    if claim.claimant_id == caller.user_id:
        raise SelfVoteForbidden(caller.user_id, claim.id)
    if not claim.is_pending:
        raise AlreadySettled(claim.id, claim.status)
    duty = claim.duty
    dsm.require_status(duty, _VOTABLE_STATUSES)

    result = vote_aggregator.cast_vote(
        claim.id, caller.user_id, outcome, note=note, eligible_voters=eligible_voters,
    )
    escalated = False
    if result.quorum_reached:
        escalated = dsm.transition(duty.id, VOTING_STATUSES, "admin_review")
    db.session.commit()

    payload = result.to_dict()
    payload.update({
        "duty_id": duty.id,
        "duty_status": duty.status,
        "escalated": escalated,
        "warnings": [],
    })
    warnings = payload["warnings"]

    activity_log.record(
        duty.id, caller.user_id, "vote",
        details=f"Voted {outcome} on claim {claim.id}",
        metadata={"claim_id": claim.id, "outcome": outcome, "updated": result.updated},
        warnings=warnings,
    )
    if escalated:
        activity_log.record(
            duty.id, caller.user_id, "quorum_reached",
            details=f"{result.approve_count} approval(s) reached quorum of {result.threshold}",
            metadata={
                "claim_id": claim.id,
                "approve_count": result.approve_count,
                "reject_count": result.reject_count,
                "threshold": result.threshold,
            },
            warnings=warnings,
        )
    return payload


# ── Admin decisions ──────────────────────────────────────────────────────────


@_service_boundary
def admin_settle(
    caller: Caller,
    claim_id,
    approved_amount,
    payment_mode,
    deduction_reason=None,
    notes=None,
) -> dict:
    """Admin override: settle a claim with an optional deduction."""
    return _admin_settle(caller, claim_id, approved_amount, payment_mode, deduction_reason, notes)


def _admin_settle(caller, claim_id, approved_amount, payment_mode, deduction_reason, notes) -> dict:
    require_admin(caller, "admin_settle")
    record = settlement_calculator.settle(
        claim_id, approved_amount, deduction_reason, payment_mode,
        decided_by=caller.user_id, notes=notes,
    )
    db.session.commit()

    claim = db.session.get(Claim, record.claim_id)
    duty = db.session.get(Duty, record.duty_id)
    payload = {
        "settlement": record.to_dict(),
        "claim": claim.to_dict(),
        "duty": duty.to_dict(),
        "warnings": [],
    }
    warnings = payload["warnings"]

    settlement = payload["settlement"]
    activity_log.record(
        duty.id, caller.user_id, "verify",
        details=f"Claim settled: {settlement['approved_amount']} of {settlement['claimed_amount']}",
        metadata={
            "claim_id": claim.id,
            "settlement_id": settlement["id"],
            "approved_amount": settlement["approved_amount"],
            "deducted_amount": settlement["deducted_amount"],
            "payment_mode": settlement["payment_mode"],
        },
        warnings=warnings,
    )
    body = f"Approved {settlement['approved_amount']} of {settlement['claimed_amount']} ({settlement['payment_mode']})."
    if settlement["deduction_reason"]:
        body += f" Deduction: {settlement['deduction_reason']}"
    dispatch(
        settlement["claimant_id"], f"Your claim for '{payload['duty']['title']}' was settled",
        body=body, category="finance", link=_duty_link(duty.id),
        group_id=payload["duty"]["group_id"], duty_id=duty.id, warnings=warnings,
    )
    return payload


@_service_boundary
def admin_reject(caller: Caller, claim_id, reason) -> dict:
    """Reject a claim under admin review.

    The duty goes ``admin_review -> rejected -> pending`` in one transaction
    (``pending_receipt`` for receipt claims when DUTY_REJECT_TO_PENDING_RECEIPT
    is set) so the assignee can resubmit.
    """
    require_admin(caller, "admin_reject")
    reason = _required_text(reason, "reason")

    claim = _get_claim(claim_id)
    if not claim.is_pending:
        raise AlreadySettled(claim.id, claim.status)
    duty = claim.duty
    if duty.status in SETTLED_STATUSES:
        raise AlreadySettled(claim.id, duty.status)
    dsm.require_status(duty, "admin_review")

    rest_status = "pending"
    if claim.source == "receipt" and current_app.config.get("DUTY_REJECT_TO_PENDING_RECEIPT"):
        rest_status = "pending_receipt"

    if not dsm.transition(duty.id, ["admin_review"], "rejected"):
        status = dsm.current_status(duty.id)
        if status in SETTLED_STATUSES:
            raise AlreadySettled(claim.id, status)
        raise _conflict_for(duty.id, ["admin_review"])
    if not dsm.transition(duty.id, ["rejected"], rest_status):
        raise _conflict_for(duty.id, ["rejected"])

    claim.status = "rejected"
    claim.rejection_reason = reason
    claim.decided_by = caller.user_id
    claim.decided_at = _utcnow()
    db.session.commit()

    payload = {"claim": claim.to_dict(), "duty": duty.to_dict(), "warnings": []}
    warnings = payload["warnings"]
    activity_log.record(
        duty.id, caller.user_id, "reject",
        details=f"Claim rejected: {reason}",
        metadata={"claim_id": claim.id, "reason": reason, "returned_to": rest_status},
        warnings=warnings,
    )
    dispatch(
        payload["claim"]["claimant_id"],
        f"Your claim for '{payload['duty']['title']}' was rejected",
        body=reason, category="finance", link=_duty_link(duty.id),
        group_id=payload["duty"]["group_id"], duty_id=duty.id, warnings=warnings,
    )
    return payload


@_service_boundary
def compensate_settlement(caller: Caller, settlement_id, approved_amount, reason, notes=None) -> dict:
    """Correct a settlement by appending a superseding record."""
    require_admin(caller, "compensate_settlement")
    record = settlement_calculator.compensate(
        settlement_id, approved_amount, reason, decided_by=caller.user_id, notes=notes,
    )
    db.session.commit()

    duty = db.session.get(Duty, record.duty_id)
    payload = {"settlement": record.to_dict(), "duty": duty.to_dict(), "warnings": []}
    warnings = payload["warnings"]
    settlement = payload["settlement"]

    activity_log.record(
        duty.id, caller.user_id, "compensate",
        details=f"Settlement corrected to {settlement['approved_amount']}: {settlement['deduction_reason']}",
        metadata={
            "settlement_id": settlement["id"],
            "supersedes_id": settlement["supersedes_id"],
            "approved_amount": settlement["approved_amount"],
        },
        warnings=warnings,
    )
    dispatch(
        settlement["claimant_id"],
        f"Settlement for '{payload['duty']['title']}' was corrected",
        body=f"New approved amount: {settlement['approved_amount']}. {settlement['deduction_reason']}",
        category="finance", link=_duty_link(duty.id),
        group_id=payload["duty"]["group_id"], duty_id=duty.id, warnings=warnings,
    )
    return payload


# ── Completion without expenses ──────────────────────────────────────────────


def _require_no_expense(duty: Duty) -> None:
    if duty.expense_type != "none":
        raise InvalidField("expense_type", "duty carries an expense; submit a claim instead")


@_service_boundary
def request_completion(caller: Caller, duty_id, description="") -> dict:
    """Assignee reports a no-expense duty as done: a zero-amount claim.

    The claim goes through peer voting like any other; the duty creator is
    told a completion is waiting.
    """
    duty = _get_duty(duty_id)
    _require_no_expense(duty)
    creator = duty.created_by

    payload = _submit_claim(
        caller, duty_id, 0, description or "Completion requested", None, "claim",
    )
    if creator:
        dispatch(
            creator, f"Completion requested: {payload['duty']['title']}",
            body=f"{caller.user_id} reports this duty as finished.",
            link=_duty_link(duty_id), group_id=payload["duty"]["group_id"],
            duty_id=duty_id, warnings=payload["warnings"],
        )
    return payload


@_service_boundary
def approve_completion(caller: Caller, claim_id, notes=None) -> dict:
    """Admin closes a no-expense duty in full; the duty ends in ``approved``."""
    require_admin(caller, "approve_completion")
    claim = _get_claim(claim_id)
    _require_no_expense(claim.duty)
    return _admin_settle(caller, claim_id, claim.claimed_amount, "offline", None, notes)


# ── Read helpers ─────────────────────────────────────────────────────────────


@_service_boundary
def get_duty(caller: Caller, duty_id) -> dict:
    duty = _get_duty(duty_id)
    claims = duty.claims.order_by(Claim.created_at.asc()).all()
    return {
        "duty": duty.to_dict(include_assignments=True),
        "claims": [c.to_dict() for c in claims],
        "available_transitions": dsm.available_transitions(duty.status),
    }


@_service_boundary
def list_duties(caller: Caller, group_id, status=None) -> dict:
    group_id = _required_text(group_id, "group_id")
    q = Duty.query.filter_by(group_id=group_id)
    if status:
        if status not in DUTY_STATUSES:
            raise InvalidField("status", f"must be one of {list(DUTY_STATUSES)}")
        q = q.filter_by(status=status)
    items = q.order_by(Duty.created_at.desc()).all()
    return {"items": [d.to_dict() for d in items], "total": len(items)}


@_service_boundary
def list_votes(caller: Caller, claim_id) -> dict:
    claim = _get_claim(claim_id)
    return vote_aggregator.tally(claim.id).to_dict()


@_service_boundary
def list_settlements(caller: Caller, duty_id) -> dict:
    _get_duty(duty_id)
    records = (
        SettlementRecord.query.filter_by(duty_id=duty_id)
        .order_by(SettlementRecord.created_at.asc())
        .all()
    )
    return {"items": [r.to_dict() for r in records], "total": len(records)}


@_service_boundary
def get_activity(caller: Caller, duty_id, limit=50) -> dict:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        raise InvalidField("limit", "must be an integer")
    limit = max(1, min(limit, 500))
    entries = activity_log.history(duty_id, limit=limit)
    return {"items": [e.to_dict() for e in entries], "total": len(entries)}
