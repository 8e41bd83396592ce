"""
Vote Aggregator unit tests.

Tests cover:
  - One effective vote per (claim, voter); resubmission overwrites
  - Quorum threshold from config, capped by eligible voters
  - Level-triggered quorum flag
  - DuplicateVoteConflict when upserts are disabled
  - Unique constraint as the authoritative guard
"""

import logging

import pytest
from sqlalchemy.exc import IntegrityError

from dutyflow.core.exceptions import ClaimNotFound, DuplicateVoteConflict
from dutyflow.models import db
from dutyflow.models.claim import Vote
from dutyflow.services import vote_aggregator


class TestCastVote:
    def test_first_vote_is_recorded_below_threshold(self, claim):
        result = vote_aggregator.cast_vote(claim["id"], "bob", "approve", note="looks right")
        db.session.commit()

        assert result.recorded is True
        assert result.updated is False
        assert result.quorum_reached is False
        assert (result.approve_count, result.reject_count) == (1, 0)
        assert result.threshold == 2
        assert result.vote.note == "looks right"

    def test_quorum_reached_at_threshold(self, claim):
        vote_aggregator.cast_vote(claim["id"], "bob", "approve")
        result = vote_aggregator.cast_vote(claim["id"], "carol", "approve")
        assert result.quorum_reached is True
        assert result.approve_count == 2

    def test_quorum_is_level_triggered(self, claim):
        vote_aggregator.cast_vote(claim["id"], "bob", "approve")
        vote_aggregator.cast_vote(claim["id"], "carol", "approve")
        result = vote_aggregator.cast_vote(claim["id"], "dave", "approve")
        assert result.quorum_reached is True
        assert result.approve_count == 3

    def test_reject_votes_do_not_count_toward_quorum(self, claim):
        vote_aggregator.cast_vote(claim["id"], "bob", "reject")
        result = vote_aggregator.cast_vote(claim["id"], "carol", "reject")
        assert result.quorum_reached is False
        assert (result.approve_count, result.reject_count) == (0, 2)

    def test_resubmission_overwrites_outcome(self, claim):
        first = vote_aggregator.cast_vote(claim["id"], "bob", "reject", note="no receipt")
        db.session.commit()
        first_updated_at = first.vote.updated_at

        second = vote_aggregator.cast_vote(claim["id"], "bob", "approve", note="receipt found")
        db.session.commit()

        assert second.updated is True
        assert (second.approve_count, second.reject_count) == (1, 0)
        assert Vote.query.filter_by(claim_id=claim["id"], voter_id="bob").count() == 1
        vote = Vote.query.filter_by(claim_id=claim["id"], voter_id="bob").one()
        assert vote.outcome == "approve"
        assert vote.note == "receipt found"
        assert vote.updated_at >= first_updated_at

    def test_duplicate_vote_conflict_when_upsert_disabled(self, app, claim, monkeypatch):
        monkeypatch.setitem(app.config, "DUTY_ALLOW_VOTE_UPSERT", False)
        vote_aggregator.cast_vote(claim["id"], "bob", "approve")
        with pytest.raises(DuplicateVoteConflict):
            vote_aggregator.cast_vote(claim["id"], "bob", "reject")

    def test_unknown_outcome_is_a_programming_error(self, claim):
        with pytest.raises(ValueError):
            vote_aggregator.cast_vote(claim["id"], "bob", "abstain")

    def test_unknown_claim(self):
        with pytest.raises(ClaimNotFound):
            vote_aggregator.cast_vote("missing", "bob", "approve")

    def test_unique_constraint_rejects_raw_duplicate(self, claim):
        db.session.add(Vote(claim_id=claim["id"], duty_id=claim["duty_id"], voter_id="bob", outcome="approve"))
        db.session.commit()
        db.session.add(Vote(claim_id=claim["id"], duty_id=claim["duty_id"], voter_id="bob", outcome="reject"))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


class TestQuorumThreshold:
    def test_configured_threshold(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "DUTY_QUORUM_THRESHOLD", 3)
        assert vote_aggregator.quorum_threshold() == 3

    def test_threshold_capped_by_eligible_voters(self, app, monkeypatch, caplog):
        monkeypatch.setitem(app.config, "DUTY_QUORUM_THRESHOLD", 5)
        with caplog.at_level(logging.WARNING, logger="dutyflow.services.vote_aggregator"):
            threshold = vote_aggregator.quorum_threshold(["alice", "bob", "carol"], claimant_id="alice")
        assert threshold == 2
        assert "QuorumUnreachable" in caplog.text

    def test_cap_never_drops_below_one(self):
        assert vote_aggregator.quorum_threshold(["alice"], claimant_id="alice") == 1

    def test_enough_eligible_voters_keeps_threshold(self):
        assert vote_aggregator.quorum_threshold(["bob", "carol", "dave"], claimant_id="alice") == 2

    def test_small_group_reaches_capped_quorum(self, claim):
        result = vote_aggregator.cast_vote(
            claim["id"], "bob", "approve", eligible_voters=["alice", "bob"],
        )
        assert result.threshold == 1
        assert result.quorum_reached is True


class TestTally:
    def test_tally_counts_and_lists_votes(self, claim):
        vote_aggregator.cast_vote(claim["id"], "bob", "approve")
        vote_aggregator.cast_vote(claim["id"], "carol", "reject", note="too expensive")
        db.session.commit()

        tally = vote_aggregator.tally(claim["id"])
        assert (tally.approve_count, tally.reject_count) == (1, 1)
        data = tally.to_dict()
        assert [v["voter_id"] for v in data["votes"]] == ["bob", "carol"]

    def test_count_votes_empty(self, claim):
        assert vote_aggregator.count_votes(claim["id"]) == (0, 0)
