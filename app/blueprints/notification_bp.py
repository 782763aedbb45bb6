"""
Translation KPI Platform
Notification Blueprint.

Provides the acting user's in-app inbox:
    GET  /api/v1/notifications                 — list (?unread_only, ?limit, ?offset)
    POST /api/v1/notifications/<id>/read       — mark one read
    POST /api/v1/notifications/read-all        — mark all read
"""

import logging

from flask import Blueprint, jsonify

from app.auth import current_actor, require_actor
from app.blueprints import page_args, query_flag
from app.services.notification import NotificationService
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
@require_actor
def list_notifications():
    """List the actor's notifications, newest first."""
    actor = current_actor()
    limit, offset = page_args()
    items, total = NotificationService.list_for_recipient(actor.user_id, query_flag("unread_only"), limit, offset)
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(actor.user_id),
    })


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
@require_actor
def mark_read(nid):
    notif = NotificationService.mark_read(nid, current_actor().user_id)
    if notif is None:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
@require_actor
def mark_all_read():
    count = NotificationService.mark_all_read(current_actor().user_id)
    return jsonify({"marked_read": count})
