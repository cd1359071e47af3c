"""
Data-access contracts the core depends on.

Components receive store objects through their constructors; the SQLAlchemy
implementations live beside each module's models (modules/*/store.py) and tests
may substitute wrappers or fakes that satisfy the same protocols.
"""
from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from app.closet.models import User
    from app.closet.modules.listings.models import Article, ArticlePromotion, ModerationLog
    from app.closet.modules.notifications.models import FeedItem, Notification
    from app.closet.utils import Page


@dataclass(frozen=True)
class NotificationDraft:
    """Unsaved notification row, built by the dispatcher for one recipient."""

    type: str
    title: str
    message: str
    user_id: int
    actor_id: int | None = None
    entity_id: str | None = None
    entity_type: str | None = None


@dataclass(frozen=True)
class FanOutEvent:
    kind: str
    actor_id: int
    article_id: int | None = None
    article_title: str = ""
    actor_name: str = ""
    extra: dict = field(default_factory=dict)


class ListingUnitOfWork(Protocol):
    def get_by_id(self, article_id: int, *, for_update: bool = False, refresh: bool = False) -> "Article | None": ...

    def update_status(
        self,
        article_id: int,
        *,
        expected_status: str,
        status: str,
        is_available: bool,
        published_at: datetime | None,
        moderation_notes: str | None,
        rejection_reason: str | None,
        now: datetime,
    ) -> bool: ...

    def list_promotions_by_article(self, article_id: int) -> "list[ArticlePromotion]": ...

    def activate_promotions(self, article_id: int, *, now: datetime) -> "list[ArticlePromotion]": ...

    def insert_moderation_log(
        self, *, article_id: int, moderator_id: int, action: str, notes: str | None, now: datetime
    ) -> "ModerationLog": ...

    def mark_unavailable(self, article_id: int, *, now: datetime) -> bool: ...


class ListingStore(Protocol):
    def transaction(self) -> AbstractContextManager[ListingUnitOfWork]: ...

    def get_by_id(self, article_id: int) -> "Article | None": ...

    def list_pending(self) -> "list[Article]": ...

    def count_moderation_logs(self, article_id: int) -> int: ...

    def list_moderation_history(
        self,
        *,
        page: int,
        limit: int,
        action: str | None = None,
        moderator_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        search: str | None = None,
    ) -> "Page[ModerationLog]": ...


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> "User | None": ...

    def identities(self, user_ids: list[int]) -> dict[int, dict]: ...


class SocialGraphStore(Protocol):
    def list_follower_ids(self, user_id: int) -> list[int]: ...

    def list_following_ids(self, user_id: int) -> list[int]: ...

    def create_edge(self, follower_id: int, following_id: int) -> None: ...

    def delete_edge(self, follower_id: int, following_id: int) -> bool: ...

    def edge_exists(self, follower_id: int, following_id: int) -> bool: ...


class NotificationStore(Protocol):
    def insert_feed_item(
        self, *, type: str, user_id: int, article_id: int | None = None, content: str | None = None
    ) -> "FeedItem": ...

    def insert_notifications_batch(self, drafts: list[NotificationDraft]) -> int: ...

    def list_notifications(self, user_id: int, page: int, limit: int, unread_only: bool) -> "Page[Notification]": ...

    def count_unread(self, user_id: int) -> int: ...

    def get_notification(self, notification_id: int) -> "Notification | None": ...

    def mark_read(self, notification_id: int, user_id: int) -> int: ...

    def mark_all_read(self, user_id: int) -> int: ...

    def list_feed(self, user_ids: list[int], page: int, limit: int, type: str | None = None) -> "Page[FeedItem]": ...

    def purge_expired(self, cutoff: datetime) -> tuple[int, int]: ...
