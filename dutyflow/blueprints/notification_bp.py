"""
Notification Blueprint: in-app inbox for the default dispatcher.

Endpoints (caller from X-User-Id):
    GET  /api/v1/notifications?group_id=&unread_only=&limit=&offset=
    GET  /api/v1/notifications/unread-count
    POST /api/v1/notifications/<id>/read
    POST /api/v1/notifications/read-all
"""

import logging

from flask import Blueprint, g, jsonify, request

from dutyflow.services.notification import InAppNotificationDispatcher
from dutyflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1/notifications")


@notification_bp.before_request
def _require_caller():
    if getattr(g, "caller", None) is None:
        return api_error(E.AUTH_REQUIRED, "X-User-Id header is required")
    return None


@notification_bp.route("", methods=["GET"])
def list_notifications():
    unread_only = request.args.get("unread_only", "").lower() in ("1", "true", "yes")
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)
    items, total = InAppNotificationDispatcher.list_for_recipient(
        g.caller.user_id,
        group_id=request.args.get("group_id"),
        unread_only=unread_only,
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    count = InAppNotificationDispatcher.unread_count(
        g.caller.user_id, group_id=request.args.get("group_id"),
    )
    return jsonify({"unread_count": count})


@notification_bp.route("/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    notif = InAppNotificationDispatcher.mark_read(nid, g.caller.user_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["POST"])
def mark_all_read():
    count = InAppNotificationDispatcher.mark_all_read(
        g.caller.user_id, group_id=(_body_group_id() or request.args.get("group_id")),
    )
    return jsonify({"marked_read": count})


def _body_group_id():
    data = request.get_json(silent=True) or {}
    return data.get("group_id")
