"""
Caller Identity Middleware: builds ``g.caller`` from upstream auth headers.

Authentication is not this service's job.  The gateway in front of it
verifies the session and forwards:

    X-User-Id:    stable member id       (required for /api/v1/duties/*)
    X-User-Role:  member role            (admin roles per DUTY_ADMIN_ROLES)

Requests without ``X-User-Id`` get ``g.caller = None``; the blueprints
answer those with 401.
"""

import logging

from flask import g, request

from dutyflow.services.identity import Caller

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"

# Paths that never need a caller
IDENTITY_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_identity_middleware(app):
    """Register the identity hook as a before_request handler."""

    @app.before_request
    def _caller_identity():
        g.caller = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in IDENTITY_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        user_id = (request.headers.get(USER_HEADER) or "").strip()
        if not user_id:
            return None  # blueprint decides; reads may still 401

        role = (request.headers.get(ROLE_HEADER) or "").strip() or None
        g.caller = Caller(user_id=user_id, role=role)
        return None
