from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.closet.errors import InvalidOperation
from app.closet.rbac import current_principal, require_login
from app.closet.services import get_services
from app.closet.utils import normalize_paging, parse_datetime, parse_int

bp = Blueprint("moderation", __name__)


def _serialize_pending(article) -> dict:
    out = article.to_dict()
    seller = article.seller
    out["seller"] = seller.identity() if seller else None
    out["promotions"] = [p.to_dict() for p in article.promotions]
    return out


@bp.get("/")
@require_login
def pending_queue():
    articles = get_services().moderation.list_pending(current_principal())
    return jsonify({"articles": [_serialize_pending(a) for a in articles], "total": len(articles)})


@bp.post("/<int:article_id>/decision")
@require_login
def decide(article_id: int):
    payload = request.get_json(silent=True) or request.form
    decision = get_services().moderation.decide(
        current_principal(),
        article_id,
        payload.get("action"),
        notes=payload.get("notes"),
        rejection_reason=payload.get("rejection_reason") or payload.get("rejectionReason"),
    )
    approved = decision.article.status == "APPROVED"
    return jsonify(
        {
            "message": "Article approved and published." if approved else "Article rejected.",
            "article": decision.article.to_dict(),
            "promotions": [p.to_dict() for p in decision.promotions],
            "log": decision.log.to_dict(),
        }
    )


@bp.get("/history")
@require_login
def history():
    page, limit = normalize_paging(request.args.get("page"), request.args.get("limit"))
    try:
        moderator_id = parse_int(request.args.get("moderator_id"))
        start = parse_datetime(request.args.get("start_date"))
        end = parse_datetime(request.args.get("end_date"))
    except ValueError as e:
        raise InvalidOperation(f"Invalid filter: {e}") from e

    result = get_services().moderation.history(
        current_principal(),
        page=page,
        limit=limit,
        action=request.args.get("action") or None,
        moderator_id=moderator_id,
        start=start,
        end=end,
        search=request.args.get("search"),
    )
    articles = result.extra.get("articles", {})
    logs = []
    for log in result.items:
        row = log.to_dict()
        row["moderator"] = log.moderator.identity() if log.moderator else None
        article = articles.get(log.article_id)
        row["article"] = (
            {"id": article.id, "title": article.title, "price": str(article.price), "sellerId": article.seller_id}
            if article
            else None
        )
        logs.append(row)
    return jsonify({"logs": logs, "pagination": result.pagination()})
