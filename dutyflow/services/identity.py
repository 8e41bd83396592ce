"""
Caller identity for the duty engine.

Authentication happens upstream; the engine only needs to know who is
calling and with which role.  Admin roles come from ``DUTY_ADMIN_ROLES``.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from dutyflow.core.exceptions import NotAssignee, Unauthorized


@dataclass(frozen=True)
class Caller:
    """Identity of the member invoking a duty operation."""

    user_id: str
    role: str | None = None

    @property
    def is_admin(self) -> bool:
        return is_admin_role(self.role)


def is_admin_role(role: str | None) -> bool:
    if not role:
        return False
    return role in current_app.config.get("DUTY_ADMIN_ROLES", ())


def require_admin(caller: Caller, action: str) -> None:
    """Raise Unauthorized unless *caller* holds one of the admin roles."""
    if not caller.is_admin:
        raise Unauthorized(caller.user_id, action)


def require_assignee(caller: Caller, duty) -> None:
    if caller.user_id not in duty.assignee_ids:
        raise NotAssignee(caller.user_id, duty.id)
