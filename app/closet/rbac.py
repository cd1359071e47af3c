from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.closet.errors import Forbidden


class Roles:
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    SELLER = "SELLER"
    BUYER = "BUYER"

    ALL = (ADMIN, MODERATOR, SELLER, BUYER)


class Actions:
    MODERATION_DECIDE = "moderation.decide"
    MODERATION_VIEW_QUEUE = "moderation.view_queue"
    MODERATION_VIEW_HISTORY = "moderation.view_history"
    SOCIAL_FOLLOW = "social.follow"
    SOCIAL_VIEW = "social.view"
    FEED_VIEW = "feed.view"
    NOTIFICATIONS_READ = "notifications.read"
    ARTICLES_MARK_SOLD = "articles.mark_sold"


_MEMBER_ACTIONS = frozenset(
    {
        Actions.SOCIAL_FOLLOW,
        Actions.SOCIAL_VIEW,
        Actions.FEED_VIEW,
        Actions.NOTIFICATIONS_READ,
        Actions.ARTICLES_MARK_SOLD,
    }
)

# Moderators may look at the queue and the history but only admins decide.
POLICY: dict[str, frozenset[str]] = {
    Roles.ADMIN: _MEMBER_ACTIONS
    | {Actions.MODERATION_DECIDE, Actions.MODERATION_VIEW_QUEUE, Actions.MODERATION_VIEW_HISTORY},
    Roles.MODERATOR: _MEMBER_ACTIONS | {Actions.MODERATION_VIEW_QUEUE, Actions.MODERATION_VIEW_HISTORY},
    Roles.SELLER: _MEMBER_ACTIONS,
    Roles.BUYER: _MEMBER_ACTIONS,
}


@dataclass(frozen=True)
class Principal:
    """Verified caller identity as supplied by the auth/session layer."""

    user_id: int
    role: str


def is_allowed(role: str | None, action: str) -> bool:
    if not role:
        return False
    return action in POLICY.get(role.upper(), frozenset())


def authorize(principal: Principal | None, action: str) -> Principal:
    """Single authorization gate, called once at the top of every core operation."""
    if principal is None or not is_allowed(principal.role, action):
        raise Forbidden(
            "Not allowed to perform this action.",
            action=action,
            role=principal.role if principal else None,
        )
    return principal


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Reject unauthenticated requests; role checks happen in the core."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "Authentication required", "code": "unauthenticated"}), 401
        return fn(*args, **kwargs)

    return wrapped


def current_principal() -> Principal:
    user = getattr(g, "current_user", None)
    if not user:
        raise Forbidden("Authentication required.")
    return Principal(user_id=user.id, role=user.role)
