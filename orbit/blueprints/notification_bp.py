"""
Notification Blueprint: the caller's in-app notifications.

Routes:
  GET   /notifications                 – list (?unread_only=true&limit=&offset=)
  GET   /notifications/unread-count    – unread badge count
  POST  /notifications/<nid>/read      – mark one as read
  POST  /notifications/read-all        – mark all as read
"""

from flask import Blueprint, g, jsonify, request

from orbit.blueprints import pagination_args
from orbit.services.notification import NotificationService
from orbit.utils.errors import E, api_error

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    limit, offset = pagination_args()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    items, total = NotificationService.list_for_recipient(
        g.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(g.user_id),
    })


@notification_bp.route("/notifications/unread-count", methods=["GET"])
def unread_count():
    return jsonify({"unread_count": NotificationService.unread_count(g.user_id)})


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_read(nid):
    notif = NotificationService.mark_read(nid, g.user_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found", details={"kind": "not_found"})
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(g.user_id)
    return jsonify({"marked": count})
