"""Standardised error codes and API error responses.

Usage
-----
    from dutyflow.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Duty not found")
    return api_error(E.INVALID_APPROVED_AMOUNT, "approved_amount out of range",
                     details={"approved_amount": "must be <= 1000.00"})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_ prefix for transport / infrastructure errors
     • PascalCase names for duty-engine taxonomy codes
    """

    # Transport-level
    NOT_FOUND = "ERR_NOT_FOUND"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"
    AUTH_REQUIRED = "ERR_AUTH_REQUIRED"

    # Authorization
    UNAUTHORIZED = "Unauthorized"
    NOT_ASSIGNEE = "NotAssignee"
    SELF_VOTE_FORBIDDEN = "SelfVoteForbidden"

    # Validation
    INVALID_APPROVED_AMOUNT = "InvalidApprovedAmount"
    INVALID_CLAIM_AMOUNT = "InvalidClaimAmount"
    MISSING_REQUIRED_FIELD = "MissingRequiredField"
    INVALID_FIELD = "InvalidField"

    # Conflict
    ALREADY_SETTLED = "AlreadySettled"
    DUTY_NOT_IN_EXPECTED_STATE = "DutyNotInExpectedState"
    CLAIM_ALREADY_PENDING = "ClaimAlreadyPending"
    DUPLICATE_VOTE = "DuplicateVoteConflict"
    DUTY_HAS_ACTIVE_CLAIMS = "DutyHasActiveClaims"
    SETTLEMENT_SUPERSEDED = "SettlementSuperseded"

    # Dependency (downgraded to warnings)
    NOTIFICATION_DELIVERY_FAILED = "NotificationDeliveryFailed"
    ACTIVITY_LOG_WRITE_FAILED = "ActivityLogWriteFailed"

    # Not found
    DUTY_NOT_FOUND = "DutyNotFound"
    CLAIM_NOT_FOUND = "ClaimNotFound"
    SETTLEMENT_NOT_FOUND = "SettlementNotFound"
    ASSIGNMENT_NOT_FOUND = "AssignmentNotFound"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.NOT_FOUND: 404,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.UNAUTHORIZED: 403,
    E.NOT_ASSIGNEE: 403,
    E.SELF_VOTE_FORBIDDEN: 403,
    E.INVALID_APPROVED_AMOUNT: 422,
    E.INVALID_CLAIM_AMOUNT: 422,
    E.MISSING_REQUIRED_FIELD: 400,
    E.INVALID_FIELD: 400,
    E.ALREADY_SETTLED: 409,
    E.DUTY_NOT_IN_EXPECTED_STATE: 409,
    E.CLAIM_ALREADY_PENDING: 409,
    E.DUPLICATE_VOTE: 409,
    E.DUTY_HAS_ACTIVE_CLAIMS: 409,
    E.SETTLEMENT_SUPERSEDED: 409,
    E.AUTH_REQUIRED: 401,
    E.DUTY_NOT_FOUND: 404,
    E.CLAIM_NOT_FOUND: 404,
    E.SETTLEMENT_NOT_FOUND: 404,
    E.ASSIGNMENT_NOT_FOUND: 404,
}


def status_for(code: str) -> int:
    """Return the default HTTP status for an error code (400 if unknown)."""
    return _DEFAULT_STATUS.get(code, 400)


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (offending fields, current status, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or status_for(code)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
