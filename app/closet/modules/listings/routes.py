from __future__ import annotations

from flask import Blueprint, jsonify

from app.closet.rbac import current_principal, require_login
from app.closet.services import get_services

bp = Blueprint("listings", __name__)


@bp.get("/articles/<int:article_id>")
@require_login
def article_detail(article_id: int):
    return jsonify({"article": get_services().listings.get(article_id).to_dict()})


@bp.post("/articles/<int:article_id>/sold")
@require_login
def mark_sold(article_id: int):
    article = get_services().listings.mark_sold(current_principal(), article_id)
    return jsonify({"message": "Article marked as sold.", "article": article.to_dict()})
