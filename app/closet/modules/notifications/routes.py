from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.closet.rbac import current_principal, require_login
from app.closet.services import get_services
from app.closet.utils import normalize_paging

bp = Blueprint("notifications", __name__)


@bp.get("/")
@require_login
def list_notifications():
    page, limit = normalize_paging(request.args.get("page"), request.args.get("limit"))
    unread_only = (request.args.get("unread_only") or request.args.get("unreadOnly") or "").lower() in ("1", "true", "yes")
    result = get_services().notifications.list_notifications(
        current_principal(), page=page, limit=limit, unread_only=unread_only
    )
    return jsonify(
        {
            "notifications": result.items,
            "unreadCount": result.extra.get("unreadCount", 0),
            "pagination": result.pagination(),
        }
    )


@bp.get("/unread-count")
@require_login
def unread_count():
    return jsonify({"unreadCount": get_services().notifications.unread_count(current_principal())})


@bp.post("/<int:notification_id>/read")
@require_login
def mark_read(notification_id: int):
    get_services().notifications.mark_read(current_principal(), notification_id)
    return jsonify({"message": "Notification marked as read."})


@bp.post("/mark-all-read")
@require_login
def mark_all_read():
    count = get_services().notifications.mark_all_read(current_principal())
    return jsonify({"message": "All notifications marked as read.", "updatedCount": count})
