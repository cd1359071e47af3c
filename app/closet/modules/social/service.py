from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from app.closet.contracts import NotificationStore, UserDirectory
from app.closet.errors import InvalidOperation, NotFound
from app.closet.modules.notifications.models import FeedItemType
from app.closet.rbac import Actions, Principal, authorize
from app.closet.utils import Page

if TYPE_CHECKING:
    from app.closet.modules.fanout.dispatcher import FanOutDispatcher
    from app.closet.modules.notifications.models import FeedItem
    from app.closet.modules.social.store import SqlSocialGraphStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FollowResult:
    follower_id: int
    following_id: int
    is_following: bool
    notified: bool = False


class SocialService:
    def __init__(
        self,
        graph: "SqlSocialGraphStore",
        users: UserDirectory,
        notifications: NotificationStore,
        dispatcher: "FanOutDispatcher",
    ) -> None:
        self._graph = graph
        self._users = users
        self._notifications = notifications
        self._dispatcher = dispatcher

    def _require_user(self, user_id: int):
        user = self._users.get_user(user_id)
        if user is None or not user.is_active:
            raise NotFound("User not found.", user_id=user_id)
        return user

    def follow(self, principal: Principal, target_id: int) -> FollowResult:
        authorize(principal, Actions.SOCIAL_FOLLOW)
        if principal.user_id == target_id:
            raise InvalidOperation("You cannot follow yourself.")
        self._require_user(target_id)
        if self._graph.edge_exists(principal.user_id, target_id):
            raise InvalidOperation("Already following this user.")

        # The unique (follower, following) constraint settles concurrent attempts.
        self._graph.create_edge(principal.user_id, target_id)

        follower = self._users.get_user(principal.user_id)
        notified = self._dispatcher.notify_new_follower(
            follower_id=principal.user_id,
            follower_name=follower.name if follower else "",
            followed_id=target_id,
        )
        logger.info("Follow created follower=%s following=%s notified=%s", principal.user_id, target_id, notified)
        return FollowResult(principal.user_id, target_id, True, notified)

    def unfollow(self, principal: Principal, target_id: int) -> FollowResult:
        authorize(principal, Actions.SOCIAL_FOLLOW)
        if principal.user_id == target_id:
            raise InvalidOperation("You cannot unfollow yourself.")
        if not self._graph.delete_edge(principal.user_id, target_id):
            raise InvalidOperation("You are not following this user.")
        logger.info("Follow removed follower=%s following=%s", principal.user_id, target_id)
        return FollowResult(principal.user_id, target_id, False)

    def is_following(self, principal: Principal, target_id: int) -> bool:
        authorize(principal, Actions.SOCIAL_VIEW)
        return self._graph.edge_exists(principal.user_id, target_id)

    def followers(self, principal: Principal, user_id: int, page: int, limit: int) -> Page[dict]:
        authorize(principal, Actions.SOCIAL_VIEW)
        self._require_user(user_id)
        edges = self._graph.list_followers(user_id, page, limit)
        return self._with_identities(edges, lambda f: f.follower_id)

    def following(self, principal: Principal, user_id: int, page: int, limit: int) -> Page[dict]:
        authorize(principal, Actions.SOCIAL_VIEW)
        self._require_user(user_id)
        edges = self._graph.list_following(user_id, page, limit)
        return self._with_identities(edges, lambda f: f.following_id)

    def _with_identities(self, edges, pick) -> Page[dict]:
        ids = [pick(f) for f in edges.items]
        people = self._users.identities(ids)
        items = []
        for f in edges.items:
            uid = pick(f)
            person = dict(people.get(uid) or {"id": uid, "name": None, "image": None})
            person["followedAt"] = f.created_at.isoformat() if f.created_at else None
            items.append(person)
        return Page(items=items, page=edges.page, limit=edges.limit, total=edges.total)

    def feed(self, principal: Principal, page: int, limit: int, type: str | None = None) -> "Page[FeedItem]":
        """
        Feed items of everyone the viewer follows, newest first. Nothing is
        materialized per viewer; the join happens here.
        """
        authorize(principal, Actions.FEED_VIEW)
        if type and type not in FeedItemType.ALL:
            raise InvalidOperation(f"Unknown feed item type: {type}")
        followed = self._graph.list_following_ids(principal.user_id)
        result = self._notifications.list_feed(followed, page, limit, type)
        result.extra["users"] = self._users.identities([i.user_id for i in result.items])
        return result
