"""
Duty engine exception hierarchy.

Services raise these types; the duty service boundary converts them into
``(None, error_dict)`` results and the blueprint turns those into JSON
responses.  Every exception carries a taxonomy ``code`` (see
``dutyflow.utils.errors.E``) so callers can branch without string matching.

Families:
    ForbiddenError   caller lacks the role/relationship      (never retried)
    ValidationError  caller-correctable input                (names the field)
    ConflictError    stale view of duty state                (refresh, retry once)
    NotFoundError    missing duty/claim/settlement           (terminal)

Usage:
    from dutyflow.core.exceptions import DutyNotFound, InvalidApprovedAmount

    raise DutyNotFound(duty_id)
    raise InvalidApprovedAmount(approved, claimed)
"""

from __future__ import annotations

from dutyflow.utils.errors import E, status_for


class ServiceError(Exception):
    """Base class for all expected duty-engine failures."""

    code = E.INTERNAL

    def __init__(self, message: str, details: dict | None = None, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    @property
    def status(self) -> int:
        return status_for(self.code)

    def to_error(self) -> dict:
        """Serialise into the discriminated error shape returned by services."""
        err = {"error": str(self), "code": self.code, "status": self.status}
        if self.details:
            err["details"] = self.details
        return err


# ── Not found ────────────────────────────────────────────────────────────────


class NotFoundError(ServiceError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Duty", "Claim").
        resource_id: The PK that was looked up.
    """

    code = E.NOT_FOUND

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class DutyNotFound(NotFoundError):
    code = E.DUTY_NOT_FOUND

    def __init__(self, duty_id: str | None = None) -> None:
        super().__init__("Duty", duty_id)


class ClaimNotFound(NotFoundError):
    code = E.CLAIM_NOT_FOUND

    def __init__(self, claim_id: str | None = None) -> None:
        super().__init__("Claim", claim_id)


class SettlementNotFound(NotFoundError):
    code = E.SETTLEMENT_NOT_FOUND

    def __init__(self, settlement_id: str | None = None) -> None:
        super().__init__("SettlementRecord", settlement_id)


class AssignmentNotFound(NotFoundError):
    code = E.ASSIGNMENT_NOT_FOUND

    def __init__(self, duty_id: str, user_id: str) -> None:
        super().__init__("Assignment", f"{duty_id}/{user_id}")
        self.details = {"duty_id": duty_id, "user_id": user_id}


# ── Authorization ────────────────────────────────────────────────────────────


class ForbiddenError(ServiceError):
    """Caller lacks the role or relationship the operation requires."""

    code = E.UNAUTHORIZED


class Unauthorized(ForbiddenError):
    code = E.UNAUTHORIZED

    def __init__(self, user_id: str | None, action: str) -> None:
        super().__init__(
            f"User {user_id} is not permitted to '{action}': admin role required",
            details={"action": action},
        )
        self.user_id = user_id
        self.action = action


class NotAssignee(ForbiddenError):
    code = E.NOT_ASSIGNEE

    def __init__(self, user_id: str, duty_id: str) -> None:
        super().__init__(
            f"User {user_id} is not assigned to duty {duty_id}",
            details={"duty_id": duty_id},
        )


class SelfVoteForbidden(ForbiddenError):
    code = E.SELF_VOTE_FORBIDDEN

    def __init__(self, user_id: str, claim_id: str) -> None:
        super().__init__(
            f"User {user_id} cannot vote on their own claim {claim_id}",
            details={"claim_id": claim_id},
        )


# ── Validation ───────────────────────────────────────────────────────────────


class ValidationError(ServiceError):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown; keys are field names.
    """

    code = E.INVALID_FIELD


class MissingRequiredField(ValidationError):
    code = E.MISSING_REQUIRED_FIELD

    def __init__(self, field: str) -> None:
        super().__init__(f"Field '{field}' is required", details={field: "required"})
        self.field = field


class InvalidField(ValidationError):
    code = E.INVALID_FIELD

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid '{field}': {reason}", details={field: reason})
        self.field = field


class InvalidClaimAmount(ValidationError):
    code = E.INVALID_CLAIM_AMOUNT

    def __init__(self, amount) -> None:
        super().__init__(
            f"claimed_amount must be a non-negative number, got {amount!r}",
            details={"claimed_amount": "must be >= 0"},
        )


class InvalidApprovedAmount(ValidationError):
    code = E.INVALID_APPROVED_AMOUNT

    def __init__(self, approved, claimed) -> None:
        super().__init__(
            f"approved_amount {approved} must be between 0 and the claimed amount {claimed}",
            details={"approved_amount": f"must be within [0, {claimed}]"},
        )


# ── Conflict ─────────────────────────────────────────────────────────────────


class ConflictError(ServiceError):
    """The caller acted on a stale view of duty/claim state."""

    code = E.DUTY_NOT_IN_EXPECTED_STATE


class DutyNotInExpectedState(ConflictError):
    code = E.DUTY_NOT_IN_EXPECTED_STATE

    def __init__(self, duty_id: str, current: str, expected) -> None:
        expected = sorted(expected) if not isinstance(expected, str) else [expected]
        super().__init__(
            f"Duty {duty_id} is '{current}', expected one of: {', '.join(expected)}",
            details={"current_status": current, "expected": expected},
        )
        self.current_status = current


class AlreadySettled(ConflictError):
    code = E.ALREADY_SETTLED

    def __init__(self, claim_id: str, current: str | None = None) -> None:
        details = {"claim_id": claim_id}
        if current:
            details["current_status"] = current
        super().__init__(f"Claim {claim_id} has already been decided", details=details)


class ClaimAlreadyPending(ConflictError):
    code = E.CLAIM_ALREADY_PENDING

    def __init__(self, duty_id: str, claim_id: str) -> None:
        super().__init__(
            f"A pending claim {claim_id} already exists for this claimant on duty {duty_id}",
            details={"claim_id": claim_id},
        )


class DuplicateVoteConflict(ConflictError):
    code = E.DUPLICATE_VOTE

    def __init__(self, claim_id: str, voter_id: str) -> None:
        super().__init__(
            f"User {voter_id} has already voted on claim {claim_id}",
            details={"claim_id": claim_id},
        )


class DutyHasActiveClaims(ConflictError):
    code = E.DUTY_HAS_ACTIVE_CLAIMS

    def __init__(self, duty_id: str, claim_ids: list[str]) -> None:
        super().__init__(
            f"Duty {duty_id} has {len(claim_ids)} pending claim(s)",
            details={"claim_ids": claim_ids},
        )


class SettlementSuperseded(ConflictError):
    code = E.SETTLEMENT_SUPERSEDED

    def __init__(self, settlement_id: str, latest_id: str | None = None) -> None:
        details = {"settlement_id": settlement_id}
        if latest_id:
            details["latest_settlement_id"] = latest_id
        super().__init__(
            f"SettlementRecord {settlement_id} has already been superseded",
            details=details,
        )


# ── Configuration ────────────────────────────────────────────────────────────


class ConfigurationError(Exception):
    """Raised at startup when engine settings are invalid.  Never converted."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Invalid configuration {key}: {reason}")
