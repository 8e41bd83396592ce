"""
Vote Aggregator.

Records one effective peer vote per (claim, voter) and decides whether the
approve count has reached the quorum threshold.

Design decisions:
    - Upsert: a second vote by the same member overwrites outcome/note and
      refreshes ``updated_at``.  When ``DUTY_ALLOW_VOTE_UPSERT`` is off the
      resubmission is a DuplicateVoteConflict instead.
    - The (claim_id, voter_id) unique constraint is authoritative.  A
      concurrent first insert by the same voter is caught inside a SAVEPOINT
      and retried as an update, so the outer transaction stays usable.
    - ``quorum_reached`` is level-triggered: it is True on every vote once
      the threshold is met.  The duty-status CAS decides whether anything
      actually moves.
    - Votes never create settlements; this module does not commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from dutyflow.core.exceptions import ClaimNotFound, DuplicateVoteConflict
from dutyflow.models import _utcnow, db
from dutyflow.models.claim import VOTE_OUTCOMES, Claim, Vote

logger = logging.getLogger(__name__)


@dataclass
class VoteResult:
    recorded: bool
    quorum_reached: bool
    approve_count: int
    reject_count: int
    vote: Vote | None = None
    threshold: int = 0
    updated: bool = False

    def to_dict(self) -> dict:
        return {
            "recorded": self.recorded,
            "quorum_reached": self.quorum_reached,
            "approve_count": self.approve_count,
            "reject_count": self.reject_count,
            "threshold": self.threshold,
            "updated": self.updated,
            "vote": self.vote.to_dict() if self.vote is not None else None,
        }


@dataclass
class Tally:
    claim_id: str
    approve_count: int = 0
    reject_count: int = 0
    votes: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claim_id": self.claim_id,
            "approve_count": self.approve_count,
            "reject_count": self.reject_count,
            "votes": [v.to_dict() for v in self.votes],
        }


def quorum_threshold(eligible_voters=None, claimant_id: str | None = None) -> int:
    """Effective approve-count threshold for a claim.

    The configured ``DUTY_QUORUM_THRESHOLD`` is capped at the number of
    members able to vote (the claimant excluded) when that number is known
    and smaller, never below 1.
    """
    threshold = current_app.config["DUTY_QUORUM_THRESHOLD"]
    if eligible_voters is None:
        return threshold

    eligible = {str(v) for v in eligible_voters if v}
    eligible.discard(claimant_id)
    if len(eligible) < threshold:
        capped = max(1, len(eligible))
        logger.warning(
            "QuorumUnreachable: %d eligible voter(s) < threshold %d, capping at %d",
            len(eligible), threshold, capped,
            extra={"event_type": "quorum_unreachable"},
        )
        return capped
    return threshold


def count_votes(claim_id: str) -> tuple[int, int]:
    """Return ``(approve_count, reject_count)`` straight from the vote table."""
    rows = db.session.execute(
        select(Vote.outcome, func.count(Vote.id))
        .where(Vote.claim_id == claim_id)
        .group_by(Vote.outcome)
    ).all()
    counts = {outcome: n for outcome, n in rows}
    return counts.get("approve", 0), counts.get("reject", 0)


def tally(claim_id: str) -> Tally:
    votes = (
        Vote.query.filter_by(claim_id=claim_id)
        .order_by(Vote.created_at.asc())
        .all()
    )
    result = Tally(claim_id=claim_id, votes=votes)
    for v in votes:
        if v.outcome == "approve":
            result.approve_count += 1
        elif v.outcome == "reject":
            result.reject_count += 1
    return result


def _apply(vote: Vote, outcome: str, note: str | None) -> None:
    vote.outcome = outcome
    vote.note = note
    vote.updated_at = _utcnow()


def cast_vote(
    claim_id: str,
    voter_id: str,
    outcome: str,
    note: str | None = None,
    eligible_voters=None,
) -> VoteResult:
    """Record *voter_id*'s vote on a claim and re-evaluate the quorum.

    Raises:
        ValueError: unknown *outcome* (callers validate user input first).
        ClaimNotFound: no such claim.
        DuplicateVoteConflict: resubmission while upserts are disabled.
    """
    if outcome not in VOTE_OUTCOMES:
        raise ValueError(f"Unknown vote outcome {outcome!r}; expected one of {sorted(VOTE_OUTCOMES)}")

    claim = db.session.get(Claim, claim_id)
    if claim is None:
        raise ClaimNotFound(claim_id)

    allow_upsert = current_app.config.get("DUTY_ALLOW_VOTE_UPSERT", True)
    existing = Vote.query.filter_by(claim_id=claim_id, voter_id=voter_id).first()
    updated = existing is not None

    if existing is not None:
        if not allow_upsert:
            raise DuplicateVoteConflict(claim_id, voter_id)
        _apply(existing, outcome, note)
        vote = existing
    else:
        vote = Vote(
            claim_id=claim_id,
            duty_id=claim.duty_id,
            voter_id=voter_id,
            outcome=outcome,
            note=note,
        )
        try:
            with db.session.begin_nested():
                db.session.add(vote)
        except IntegrityError:
            # Lost the insert race against the same voter; their row wins.
            logger.info(
                "Concurrent vote insert for claim %s by %s, retrying as update",
                claim_id, voter_id,
                extra={"claim_id": claim_id, "actor_id": voter_id},
            )
            if not allow_upsert:
                raise DuplicateVoteConflict(claim_id, voter_id)
            vote = Vote.query.filter_by(claim_id=claim_id, voter_id=voter_id).one()
            _apply(vote, outcome, note)
            updated = True

    db.session.flush()

    approve_count, reject_count = count_votes(claim_id)
    threshold = quorum_threshold(eligible_voters, claim.claimant_id)
    reached = approve_count >= threshold

    logger.info(
        "Vote %s on claim %s by %s (approve=%d reject=%d threshold=%d)",
        outcome, claim_id, voter_id, approve_count, reject_count, threshold,
        extra={
            "claim_id": claim_id,
            "duty_id": claim.duty_id,
            "actor_id": voter_id,
            "event_type": "vote_recorded",
        },
    )
    return VoteResult(
        recorded=True,
        quorum_reached=reached,
        approve_count=approve_count,
        reject_count=reject_count,
        vote=vote,
        threshold=threshold,
        updated=updated,
    )
