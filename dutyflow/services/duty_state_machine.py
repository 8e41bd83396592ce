"""
Duty State Machine.

Owns the valid ``Duty.status`` transitions and writes them with a
compare-and-swap so concurrent callers can never double-apply one:

    UPDATE duties
       SET status = :to, version = version + 1, ...
     WHERE id = :id AND status IN (:from...)

Zero affected rows means the precondition no longer holds.  Interpreting
that (silent no-op, AlreadySettled, DutyNotInExpectedState) is the
caller's decision.  Nothing here commits; the CAS joins the caller's
transaction so it rolls back together with the rest of the unit of work.

Usage:
    from dutyflow.models.duty import VOTING_STATUSES
    from dutyflow.services import duty_state_machine as dsm

    if not dsm.transition(duty.id, VOTING_STATUSES, "admin_review"):
        ...  # someone else already moved it
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm.util import identity_key

from dutyflow.core.exceptions import DutyNotInExpectedState
from dutyflow.models import _utcnow, db
from dutyflow.models.duty import DUTY_TRANSITIONS, Duty, validate_duty_transition

logger = logging.getLogger(__name__)


def validate_transition(status: str, to: str) -> bool:
    """Return True if ``status -> to`` is an edge of the lifecycle graph."""
    return validate_duty_transition(status, to)


def available_transitions(status: str) -> list[str]:
    return list(DUTY_TRANSITIONS.get(status, []))


def is_terminal(status: str) -> bool:
    return not DUTY_TRANSITIONS.get(status)


def require_status(duty: Duty, allowed) -> None:
    """Raise DutyNotInExpectedState unless ``duty.status`` is in *allowed*."""
    allowed = {allowed} if isinstance(allowed, str) else set(allowed)
    if duty.status not in allowed:
        raise DutyNotInExpectedState(duty.id, duty.status, allowed)


def write_if_status(duty_id: str, from_statuses, **values) -> bool:
    """Guarded write of arbitrary duty columns; bumps ``version``.

    Returns True when exactly one row matched.  The in-session Duty
    instance (if loaded) is expired so the next attribute access sees the
    committed values.
    """
    from_statuses = [from_statuses] if isinstance(from_statuses, str) else list(from_statuses)
    stmt = (
        update(Duty)
        .where(Duty.id == duty_id, Duty.status.in_(from_statuses))
        .values(version=Duty.version + 1, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    _expire_loaded_duty(duty_id)
    return result.rowcount == 1


def transition(duty_id: str, from_statuses, to: str, **values) -> bool:
    """Compare-and-swap ``Duty.status`` from any of *from_statuses* to *to*.

    Extra column *values* (e.g. ``final_amount``) are written in the same
    statement.  Passing an edge that is not in the lifecycle graph is a
    programming error and raises ``ValueError``.

    Returns:
        True if the duty moved, False if its status was no longer one of
        *from_statuses*.
    """
    from_statuses = [from_statuses] if isinstance(from_statuses, str) else list(from_statuses)
    illegal = [s for s in from_statuses if not validate_duty_transition(s, to)]
    if illegal:
        raise ValueError(f"Illegal duty transition(s) {illegal} -> {to}")

    moved = write_if_status(duty_id, from_statuses, status=to, **values)
    if moved:
        logger.info(
            "Duty %s -> %s", duty_id, to,
            extra={"duty_id": duty_id, "to_status": to, "event_type": "duty_transition"},
        )
    else:
        logger.info(
            "Duty %s CAS to %s lost (expected one of %s)", duty_id, to, from_statuses,
            extra={"duty_id": duty_id, "to_status": to, "event_type": "duty_transition_noop"},
        )
    return moved


def current_status(duty_id: str) -> str | None:
    """Read the status straight from the database (bypasses the identity map)."""
    return db.session.execute(
        select(Duty.status).where(Duty.id == duty_id)
    ).scalar_one_or_none()


def _expire_loaded_duty(duty_id: str) -> None:
    duty = db.session.identity_map.get(identity_key(Duty, duty_id))
    if duty is not None:
        db.session.expire(duty)
