"""
State-machine transition tests for Duty.status.

    pending                         -> in_progress | completed_pending_verification | voting
    in_progress                     -> completed_pending_verification | voting | pending
    pending_receipt                 -> completed_pending_verification | voting
    completed_pending_verification  -> admin_review
    voting                          -> admin_review
    admin_review                    -> approved | paid | rejected
    rejected                        -> pending | pending_receipt
    approved, paid                  -> (terminal)

Covers the transition table, the compare-and-swap writer (version bump,
lost CAS returns False) and the require_status guard.
"""

from decimal import Decimal

import pytest

from dutyflow.core.exceptions import DutyNotInExpectedState
from dutyflow.models import db
from dutyflow.models.duty import DUTY_STATUSES, DUTY_TRANSITIONS, Duty, settled_status_for
from dutyflow.services import duty_state_machine as dsm


def _duty(status: str = "pending", expense_type: str = "reimbursable") -> Duty:
    """Create a Duty at the given status (bypasses guards)."""
    d = Duty(group_id="g-1", title="SM duty", status=status, expense_type=expense_type)
    db.session.add(d)
    db.session.commit()
    return d


VALID_EDGES = [(src, dst) for src, targets in DUTY_TRANSITIONS.items() for dst in targets]
INVALID_EDGES = [
    (src, dst)
    for src in DUTY_STATUSES
    for dst in DUTY_STATUSES
    if dst not in DUTY_TRANSITIONS[src]
]


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(DUTY_TRANSITIONS) == set(DUTY_STATUSES)

    @pytest.mark.parametrize("src,dst", VALID_EDGES)
    def test_valid_edges(self, src, dst):
        assert dsm.validate_transition(src, dst) is True

    @pytest.mark.parametrize("src,dst", INVALID_EDGES)
    def test_invalid_edges(self, src, dst):
        assert dsm.validate_transition(src, dst) is False

    def test_unknown_status_has_no_transitions(self):
        assert dsm.available_transitions("archived") == []
        assert dsm.validate_transition("archived", "pending") is False

    def test_available_transitions_returns_copy(self):
        out = dsm.available_transitions("admin_review")
        out.append("pending")
        assert "pending" not in DUTY_TRANSITIONS["admin_review"]

    @pytest.mark.parametrize("status", ["approved", "paid"])
    def test_settled_statuses_are_terminal(self, status):
        assert dsm.is_terminal(status)

    def test_review_is_not_terminal(self):
        assert not dsm.is_terminal("admin_review")

    def test_settled_status_depends_on_expense_type(self):
        assert settled_status_for("none") == "approved"
        assert settled_status_for("reimbursable") == "paid"
        assert settled_status_for("advance") == "paid"


class TestCompareAndSwap:
    def test_transition_moves_status_and_bumps_version(self):
        d = _duty("pending")
        assert d.version == 1

        assert dsm.transition(d.id, ["pending"], "in_progress") is True
        db.session.commit()

        assert d.status == "in_progress"
        assert d.version == 2

    def test_transition_accepts_single_status_string(self):
        d = _duty("completed_pending_verification")
        assert dsm.transition(d.id, "completed_pending_verification", "admin_review") is True

    def test_lost_cas_returns_false_and_leaves_row(self):
        d = _duty("admin_review")
        assert dsm.transition(d.id, ["completed_pending_verification", "voting"], "admin_review") is False
        db.session.commit()
        assert d.status == "admin_review"
        assert d.version == 1

    def test_second_identical_transition_is_noop(self):
        d = _duty("voting")
        assert dsm.transition(d.id, ["voting"], "admin_review") is True
        assert dsm.transition(d.id, ["voting"], "admin_review") is False
        db.session.commit()
        assert d.version == 2

    def test_illegal_edge_raises_value_error(self):
        d = _duty("pending")
        with pytest.raises(ValueError):
            dsm.transition(d.id, ["pending"], "paid")

    def test_extra_values_written_in_same_statement(self):
        d = _duty("admin_review")
        assert dsm.transition(d.id, ["admin_review"], "paid", final_amount=Decimal("120.50")) is True
        db.session.commit()
        assert d.status == "paid"
        assert f"{d.final_amount:.2f}" == "120.50"

    def test_write_if_status_without_status_change(self):
        d = _duty("paid")
        assert dsm.write_if_status(d.id, ["approved", "paid"], final_amount=Decimal("10")) is True
        assert dsm.write_if_status(d.id, ["pending"], final_amount=Decimal("20")) is False
        db.session.commit()
        assert f"{d.final_amount:.2f}" == "10.00"
        assert d.version == 2

    def test_rollback_undoes_transition(self):
        d = _duty("pending")
        dsm.transition(d.id, ["pending"], "in_progress")
        db.session.rollback()
        assert dsm.current_status(d.id) == "pending"

    def test_current_status_unknown_duty(self):
        assert dsm.current_status("does-not-exist") is None


class TestRequireStatus:
    def test_allowed_status_passes(self):
        d = _duty("voting")
        dsm.require_status(d, {"voting", "completed_pending_verification"})

    def test_disallowed_status_raises_conflict(self):
        d = _duty("paid")
        with pytest.raises(DutyNotInExpectedState) as exc_info:
            dsm.require_status(d, "admin_review")
        err = exc_info.value.to_error()
        assert err["status"] == 409
        assert err["code"] == "DutyNotInExpectedState"
        assert err["details"]["current_status"] == "paid"
        assert err["details"]["expected"] == ["admin_review"]
