"""
Settlement Calculator unit tests.

Tests cover:
  - Amount parsing & deduction identity (claimed == approved + deducted)
  - Decision validation: range, payment mode, deduction reason
  - settle(): record, claim status, duty final_amount + terminal status
  - Double settlement → AlreadySettled, no second record
  - compensate(): append-only corrections
  - Immutability of SettlementRecord
  - find_invariant_violations()
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from dutyflow.core.exceptions import (
    AlreadySettled,
    DutyNotInExpectedState,
    InvalidApprovedAmount,
    InvalidField,
    MissingRequiredField,
    SettlementNotFound,
    SettlementSuperseded,
)
from dutyflow.models import db
from dutyflow.models.claim import Claim
from dutyflow.models.duty import Duty
from dutyflow.models.settlement import ImmutableRecordError, SettlementRecord
from dutyflow.services import settlement_calculator as calc


def _review_claim(claimed="800.00", expense_type="reimbursable"):
    """Duty in admin_review with one pending claim (bypasses the service)."""
    duty = Duty(group_id="g-1", title="Catering", status="admin_review", expense_type=expense_type)
    db.session.add(duty)
    db.session.flush()
    claim = Claim(duty_id=duty.id, claimant_id="alice", claimed_amount=Decimal(claimed))
    db.session.add(claim)
    db.session.commit()
    return duty, claim


class TestAmounts:
    @pytest.mark.parametrize("raw,expected", [
        ("800", Decimal("800.00")),
        (800, Decimal("800.00")),
        ("12.345", Decimal("12.35")),
        (0, Decimal("0.00")),
    ])
    def test_to_amount_quantises(self, raw, expected):
        assert calc.to_amount(raw, "approved_amount") == expected

    @pytest.mark.parametrize("raw", ["abc", "NaN", "Infinity", True])
    def test_to_amount_rejects_non_numbers(self, raw):
        with pytest.raises(InvalidField):
            calc.to_amount(raw, "approved_amount")

    def test_to_amount_missing(self):
        with pytest.raises(MissingRequiredField):
            calc.to_amount(None, "approved_amount")

    @pytest.mark.parametrize("claimed,approved,deducted", [
        ("800.00", "800.00", "0.00"),
        ("800.00", "600.00", "200.00"),
        ("800.00", "0.00", "800.00"),
        ("0.00", "0.00", "0.00"),
    ])
    def test_deduction_identity(self, claimed, approved, deducted):
        out = calc.compute_deduction(Decimal(claimed), Decimal(approved))
        assert out == Decimal(deducted)
        assert Decimal(approved) + out == Decimal(claimed)
        assert out >= 0

    @pytest.mark.parametrize("approved", ["900.00", "-1.00", "800.01"])
    def test_out_of_range_is_never_clamped(self, approved):
        with pytest.raises(InvalidApprovedAmount):
            calc.compute_deduction(Decimal("800.00"), Decimal(approved))

    def test_claim_status_for(self):
        assert calc.claim_status_for(Decimal("0")) == "approved"
        assert calc.claim_status_for(Decimal("0.01")) == "partially_approved"


class TestSettlementDecision:
    def test_deduction_without_reason_is_allowed(self):
        decision = calc.SettlementDecision.build("600", "online", "admin-1")
        assert decision.deduction_reason is None
        assert decision.deduction_for(Decimal("800.00")) == Decimal("200.00")

    def test_blank_reason_is_stored_as_null(self):
        decision = calc.SettlementDecision.build("600", "online", "admin-1", deduction_reason="   ")
        assert decision.deduction_reason is None
        assert decision.deduction_for(Decimal("800.00")) == Decimal("200.00")

    def test_full_approval_needs_no_reason(self):
        decision = calc.SettlementDecision.build("800", "offline", "admin-1")
        assert decision.deduction_for(Decimal("800.00")) == Decimal("0.00")

    @pytest.mark.parametrize("mode", ["cash", "ONLINE", "wire"])
    def test_payment_mode_must_be_known(self, mode):
        with pytest.raises(InvalidField):
            calc.SettlementDecision.build("800", mode, "admin-1")

    def test_payment_mode_required(self):
        with pytest.raises(MissingRequiredField):
            calc.SettlementDecision.build("800", None, "admin-1")


class TestSettle:
    def test_full_settlement(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()

        assert record.approved_amount == Decimal("800.00")
        assert record.deducted_amount == Decimal("0.00")
        assert record.supersedes_id is None
        assert claim.status == "approved"
        assert claim.decided_by == "admin-1"
        assert duty.status == "paid"
        assert duty.final_amount == Decimal("800.00")

    def test_partial_settlement(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "600.00", "Receipt shows 600", "offline", "admin-1")
        db.session.commit()

        assert record.deducted_amount == Decimal("200.00")
        assert record.deduction_reason == "Receipt shows 600"
        assert record.claimed_amount == record.approved_amount + record.deducted_amount
        assert claim.status == "partially_approved"
        assert duty.final_amount == Decimal("600.00")

    def test_partial_settlement_without_reason(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "500.00", None, "online", "admin-1")
        db.session.commit()

        assert record.deducted_amount == Decimal("300.00")
        assert record.deduction_reason is None
        assert claim.status == "partially_approved"
        assert duty.final_amount == Decimal("500.00")

    def test_stale_duty_loses_the_status_swap(self):
        duty, claim = _review_claim()
        assert duty.status == "admin_review"
        # Another admin settles between our read and our write.
        db.session.execute(
            update(Duty).where(Duty.id == duty.id)
            .values(status="paid", final_amount=Decimal("800.00"))
            .execution_options(synchronize_session=False)
        )
        assert duty.status == "admin_review"  # stale in-session view

        with pytest.raises(AlreadySettled) as exc_info:
            calc.settle(claim.id, "700.00", "late", "online", "admin-2")
        assert exc_info.value.details["current_status"] == "paid"
        db.session.rollback()
        assert SettlementRecord.query.count() == 0

    def test_zero_approval_still_produces_record(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "0", "No proof", "online", "admin-1")
        db.session.commit()
        assert record.approved_amount == Decimal("0.00")
        assert claim.status == "partially_approved"
        assert duty.final_amount == Decimal("0.00")

    def test_no_expense_duty_ends_approved(self):
        duty, claim = _review_claim(claimed="0.00", expense_type="none")
        calc.settle(claim.id, "0", None, "offline", "admin-1")
        db.session.commit()
        assert duty.status == "approved"

    def test_second_settlement_is_already_settled(self):
        duty, claim = _review_claim()
        calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()

        with pytest.raises(AlreadySettled):
            calc.settle(claim.id, "700.00", "late", "online", "admin-2")
        db.session.rollback()
        assert SettlementRecord.query.filter_by(claim_id=claim.id).count() == 1

    def test_settled_duty_is_already_settled(self):
        duty, claim = _review_claim()
        # Another admin's transaction already moved the duty out of review.
        db.session.execute(update(Duty).where(Duty.id == duty.id).values(status="paid", final_amount=1))
        db.session.commit()
        db.session.expire_all()
        with pytest.raises(AlreadySettled):
            calc.settle(claim.id, "800.00", None, "online", "admin-1")

    def test_out_of_range_writes_nothing(self):
        duty, claim = _review_claim()
        with pytest.raises(InvalidApprovedAmount):
            calc.settle(claim.id, "900.00", None, "online", "admin-1")
        db.session.rollback()
        assert SettlementRecord.query.count() == 0
        assert db.session.get(Duty, duty.id).status == "admin_review"

    def test_duty_must_be_in_review(self):
        duty, claim = _review_claim()
        db.session.execute(update(Duty).where(Duty.id == duty.id).values(status="voting"))
        db.session.commit()
        db.session.expire_all()
        with pytest.raises(DutyNotInExpectedState):
            calc.settle(claim.id, "800.00", None, "online", "admin-1")


class TestCompensate:
    def test_compensation_appends_and_updates_final_amount(self):
        duty, claim = _review_claim()
        original = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()
        original_id = original.id

        correction = calc.compensate(original_id, "750.00", "Returned 50 in change", "admin-2")
        db.session.commit()

        assert correction.supersedes_id == original_id
        assert correction.deducted_amount == Decimal("50.00")
        assert correction.payment_mode == "online"
        assert duty.final_amount == Decimal("750.00")
        assert claim.status == "partially_approved"

        untouched = db.session.get(SettlementRecord, original_id)
        assert untouched.approved_amount == Decimal("800.00")
        assert calc.latest_for_claim(claim.id).id == correction.id

    def test_only_latest_record_can_be_superseded(self):
        duty, claim = _review_claim()
        original = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()
        calc.compensate(original.id, "700.00", "first fix", "admin-1")
        db.session.commit()

        with pytest.raises(SettlementSuperseded):
            calc.compensate(original.id, "650.00", "second fix", "admin-1")

    def test_reason_required(self):
        duty, claim = _review_claim()
        original = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()
        with pytest.raises(MissingRequiredField):
            calc.compensate(original.id, "700.00", "  ", "admin-1")

    def test_range_checked_against_claimed_amount(self):
        duty, claim = _review_claim()
        original = calc.settle(claim.id, "600.00", "partial", "online", "admin-1")
        db.session.commit()
        with pytest.raises(InvalidApprovedAmount):
            calc.compensate(original.id, "801.00", "typo", "admin-1")

    def test_unknown_settlement(self):
        with pytest.raises(SettlementNotFound):
            calc.compensate("missing", "1", "x", "admin-1")


class TestImmutability:
    def test_update_raises(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()

        record.notes = "edited"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_delete_raises(self):
        duty, claim = _review_claim()
        record = calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()

        db.session.delete(record)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()


class TestInvariantScan:
    def test_clean_database(self):
        duty, claim = _review_claim()
        calc.settle(claim.id, "600.00", "partial", "online", "admin-1")
        db.session.commit()
        assert calc.find_invariant_violations() == []

    def test_detects_missing_final_amount_and_settlement(self):
        db.session.add(Duty(group_id="g-1", title="Broken", status="paid"))
        db.session.commit()
        problems = {v["problem"] for v in calc.find_invariant_violations()}
        assert problems == {"missing_final_amount"}

    def test_detects_settled_duty_without_record(self):
        db.session.add(Duty(group_id="g-1", title="Broken", status="approved", final_amount=Decimal("5")))
        db.session.commit()
        problems = [v["problem"] for v in calc.find_invariant_violations()]
        assert problems == ["missing_settlement"]

    def test_detects_mismatch(self):
        duty, claim = _review_claim()
        calc.settle(claim.id, "800.00", None, "online", "admin-1")
        db.session.commit()
        db.session.execute(update(Duty).where(Duty.id == duty.id).values(final_amount=Decimal("799.00")))
        db.session.commit()

        violations = calc.find_invariant_violations()
        assert len(violations) == 1
        assert violations[0]["problem"] == "final_amount_mismatch"
        assert violations[0]["settled_amount"] == "800.00"

    def test_detects_amount_on_unsettled_duty(self):
        db.session.add(Duty(group_id="g-1", title="Early", status="in_progress", final_amount=Decimal("5")))
        db.session.commit()
        problems = [v["problem"] for v in calc.find_invariant_violations()]
        assert problems == ["unexpected_final_amount"]
