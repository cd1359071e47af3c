from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.closet.rbac import current_principal, require_login
from app.closet.services import get_services
from app.closet.utils import normalize_paging

bp = Blueprint("social", __name__)


@bp.post("/users/<int:user_id>/follow")
@require_login
def follow(user_id: int):
    result = get_services().social.follow(current_principal(), user_id)
    return jsonify({"message": "User followed.", "isFollowing": result.is_following}), 201


@bp.delete("/users/<int:user_id>/follow")
@require_login
def unfollow(user_id: int):
    result = get_services().social.unfollow(current_principal(), user_id)
    return jsonify({"message": "User unfollowed.", "isFollowing": result.is_following})


@bp.get("/users/<int:user_id>/follow")
@require_login
def is_following(user_id: int):
    return jsonify({"isFollowing": get_services().social.is_following(current_principal(), user_id)})


@bp.get("/users/<int:user_id>/followers")
@require_login
def followers(user_id: int):
    page, limit = normalize_paging(request.args.get("page"), request.args.get("limit"))
    result = get_services().social.followers(current_principal(), user_id, page, limit)
    return jsonify({"followers": result.items, "pagination": result.pagination()})


@bp.get("/users/<int:user_id>/following")
@require_login
def following(user_id: int):
    page, limit = normalize_paging(request.args.get("page"), request.args.get("limit"))
    result = get_services().social.following(current_principal(), user_id, page, limit)
    return jsonify({"following": result.items, "pagination": result.pagination()})


@bp.get("/feed")
@require_login
def feed():
    page, limit = normalize_paging(request.args.get("page"), request.args.get("limit"))
    result = get_services().social.feed(current_principal(), page, limit, request.args.get("type") or None)
    users = result.extra.get("users", {})
    items = []
    for item in result.items:
        row = item.to_dict()
        row["user"] = users.get(item.user_id)
        items.append(row)
    return jsonify({"feedItems": items, "pagination": result.pagination()})
