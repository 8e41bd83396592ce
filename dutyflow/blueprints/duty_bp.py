"""
Duty Blueprint: HTTP surface of the verification & settlement engine.

All routes live under /api/v1/duties and require ``X-User-Id`` (see
``dutyflow.middleware.identity``).

Endpoints:
    POST   /api/v1/duties                                   create duty (admin)
    GET    /api/v1/duties?group_id=&status=                 list duties
    GET    /api/v1/duties/<duty_id>                         duty + assignments + claims
    DELETE /api/v1/duties/<duty_id>                         delete duty (admin)
    POST   /api/v1/duties/<duty_id>/assignments             bulk assign (admin)
    POST   /api/v1/duties/<duty_id>/assignments/respond     accept/decline
    DELETE /api/v1/duties/<duty_id>/assignments/<user_id>   unassign (admin)
    POST   /api/v1/duties/<duty_id>/claims                  submit claim
    POST   /api/v1/duties/<duty_id>/receipts                submit receipt (legacy)
    GET    /api/v1/duties/<duty_id>/settlements             settlement history
    GET    /api/v1/duties/<duty_id>/activity?limit=         activity log
    GET    /api/v1/duties/claims/<claim_id>/votes           vote tally
    POST   /api/v1/duties/claims/<claim_id>/votes           cast vote
    POST   /api/v1/duties/claims/<claim_id>/settle          admin settle
    POST   /api/v1/duties/claims/<claim_id>/reject          admin reject
    POST   /api/v1/duties/settlements/<sid>/compensate      corrective settlement (admin)
    POST   /api/v1/duties/<duty_id>/completion              completion request (no-expense duty)
    POST   /api/v1/duties/claims/<claim_id>/approve-completion  close no-expense duty (admin)

Layer contract:
    - Blueprint: read identity + JSON body, call duty_service, map the
      discriminated result onto a response.
    - NO db.session calls here; all guards and writes live in the service.
"""

import logging

from flask import Blueprint, g, jsonify, request

from dutyflow.services import duty_service
from dutyflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

duty_bp = Blueprint("duty", __name__, url_prefix="/api/v1/duties")


# ── Helpers ──────────────────────────────────────────────────────────────────


@duty_bp.before_request
def _require_caller():
    if getattr(g, "caller", None) is None:
        return api_error(E.AUTH_REQUIRED, "X-User-Id header is required")
    return None


def _respond(result, success_status=200):
    payload, err = result
    if err:
        return api_error(err["code"], err["error"], status=err["status"], details=err.get("details"))
    return jsonify(payload), success_status


def _body() -> dict:
    return request.get_json(silent=True) or {}


# ── Duties ───────────────────────────────────────────────────────────────────


@duty_bp.route("", methods=["POST"])
def create_duty():
    data = _body()
    return _respond(duty_service.create_duty(
        g.caller,
        group_id=data.get("group_id"),
        title=data.get("title"),
        description=data.get("description", ""),
        expense_type=data.get("expense_type", "reimbursable"),
        expected_amount=data.get("expected_amount", 0),
        deadline=data.get("deadline"),
        category=data.get("category"),
        priority=data.get("priority"),
    ), 201)


@duty_bp.route("", methods=["GET"])
def list_duties():
    return _respond(duty_service.list_duties(
        g.caller,
        request.args.get("group_id"),
        status=request.args.get("status") or None,
    ))


@duty_bp.route("/<duty_id>", methods=["GET"])
def get_duty(duty_id):
    return _respond(duty_service.get_duty(g.caller, duty_id))


@duty_bp.route("/<duty_id>", methods=["DELETE"])
def delete_duty(duty_id):
    return _respond(duty_service.delete_duty(g.caller, duty_id))


# ── Assignments ──────────────────────────────────────────────────────────────


@duty_bp.route("/<duty_id>/assignments", methods=["POST"])
def assign_members(duty_id):
    data = _body()
    return _respond(duty_service.assign_members(g.caller, duty_id, data.get("user_ids")), 201)


@duty_bp.route("/<duty_id>/assignments/respond", methods=["POST"])
def respond_to_assignment(duty_id):
    data = _body()
    return _respond(duty_service.respond_to_assignment(g.caller, duty_id, data.get("accept")))


@duty_bp.route("/<duty_id>/assignments/<user_id>", methods=["DELETE"])
def unassign_member(duty_id, user_id):
    return _respond(duty_service.unassign_member(g.caller, duty_id, user_id))


# ── Claims & receipts ────────────────────────────────────────────────────────


@duty_bp.route("/<duty_id>/claims", methods=["POST"])
def submit_claim(duty_id):
    data = _body()
    return _respond(duty_service.submit_claim(
        g.caller, duty_id,
        data.get("claimed_amount"),
        description=data.get("description", ""),
        proof_reference=data.get("proof_reference"),
        source=data.get("source", "claim"),
    ), 201)


@duty_bp.route("/<duty_id>/receipts", methods=["POST"])
def submit_receipt(duty_id):
    data = _body()
    return _respond(duty_service.submit_receipt(
        g.caller, duty_id,
        data.get("amount"),
        description=data.get("description", ""),
        proof_reference=data.get("proof_reference") or data.get("receipt_url"),
    ), 201)


# ── Votes ────────────────────────────────────────────────────────────────────


@duty_bp.route("/claims/<claim_id>/votes", methods=["GET"])
def list_votes(claim_id):
    return _respond(duty_service.list_votes(g.caller, claim_id))


@duty_bp.route("/claims/<claim_id>/votes", methods=["POST"])
def cast_vote(claim_id):
    data = _body()
    return _respond(duty_service.cast_vote(
        g.caller, claim_id,
        data.get("outcome"),
        note=data.get("note"),
        eligible_voters=data.get("eligible_voters"),
    ))


# ── Admin decisions ──────────────────────────────────────────────────────────


@duty_bp.route("/claims/<claim_id>/settle", methods=["POST"])
def admin_settle(claim_id):
    data = _body()
    return _respond(duty_service.admin_settle(
        g.caller, claim_id,
        data.get("approved_amount"),
        data.get("payment_mode"),
        deduction_reason=data.get("deduction_reason"),
        notes=data.get("notes"),
    ), 201)


@duty_bp.route("/claims/<claim_id>/reject", methods=["POST"])
def admin_reject(claim_id):
    data = _body()
    return _respond(duty_service.admin_reject(g.caller, claim_id, data.get("reason")))


@duty_bp.route("/settlements/<settlement_id>/compensate", methods=["POST"])
def compensate_settlement(settlement_id):
    data = _body()
    return _respond(duty_service.compensate_settlement(
        g.caller, settlement_id,
        data.get("approved_amount"),
        data.get("reason"),
        notes=data.get("notes"),
    ), 201)


@duty_bp.route("/<duty_id>/completion", methods=["POST"])
def request_completion(duty_id):
    data = _body()
    return _respond(duty_service.request_completion(
        g.caller, duty_id, description=data.get("description", ""),
    ), 201)


@duty_bp.route("/claims/<claim_id>/approve-completion", methods=["POST"])
def approve_completion(claim_id):
    data = _body()
    return _respond(duty_service.approve_completion(g.caller, claim_id, notes=data.get("notes")), 201)


# ── History ──────────────────────────────────────────────────────────────────


@duty_bp.route("/<duty_id>/settlements", methods=["GET"])
def list_settlements(duty_id):
    return _respond(duty_service.list_settlements(g.caller, duty_id))


@duty_bp.route("/<duty_id>/activity", methods=["GET"])
def get_activity(duty_id):
    return _respond(duty_service.get_activity(
        g.caller, duty_id, limit=request.args.get("limit", 50),
    ))
