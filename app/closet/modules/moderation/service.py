from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.closet.contracts import FanOutEvent, ListingStore
from app.closet.errors import InvalidOperation, InvalidStateTransition, NotFound
from app.closet.modules.listings.models import ArticleStatus, ModerationAction
from app.closet.modules.notifications.models import FeedItemType
from app.closet.rbac import Actions, Principal, authorize
from app.closet.utils import Page, utcnow

if TYPE_CHECKING:
    from app.closet.modules.fanout.dispatcher import FanOutDispatcher
    from app.closet.modules.listings.models import Article, ArticlePromotion, ModerationLog

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    article: "Article"
    log: "ModerationLog"
    promotions: "list[ArticlePromotion]"
    fanout: Future | None = None


def normalize_action(action: str | None) -> str:
    if action is not None and not isinstance(action, str):
        raise InvalidOperation("Action must be a string.", action=repr(action))
    value = (action or "").strip().upper()
    if value not in ModerationAction.ALL:
        raise InvalidOperation(f"Action must be one of: {', '.join(ModerationAction.ALL)}", action=action)
    return value


class ModerationService:
    """
    PENDING_MODERATION -> APPROVED | REJECTED.

    The listing, its promotions and the ModerationLog row change in one
    listing-store transaction. Fan-out for an approval is scheduled only after
    that transaction commits, and its outcome never reaches the moderator.
    """

    def __init__(self, listings: ListingStore, dispatcher: "FanOutDispatcher | None" = None, clock=utcnow) -> None:
        self._listings = listings
        self._dispatcher = dispatcher
        self._clock = clock

    def decide(
        self,
        principal: Principal,
        article_id: int,
        action: str,
        notes: str | None = None,
        rejection_reason: str | None = None,
    ) -> Decision:
        authorize(principal, Actions.MODERATION_DECIDE)
        action = normalize_action(action)
        notes = (notes or "").strip() or None
        rejection_reason = (rejection_reason or "").strip() or None
        now = self._clock()

        with self._listings.transaction() as uow:
            article = uow.get_by_id(article_id, for_update=True)
            if article is None:
                raise NotFound("Article not found.", article_id=article_id)
            if article.status != ArticleStatus.PENDING_MODERATION:
                raise InvalidStateTransition(
                    "Article is not pending moderation.", article_id=article_id, status=article.status
                )

            approve = action == ModerationAction.APPROVE
            moved = uow.update_status(
                article_id,
                expected_status=ArticleStatus.PENDING_MODERATION,
                status=ArticleStatus.APPROVED if approve else ArticleStatus.REJECTED,
                is_available=approve,
                published_at=now if approve else None,
                moderation_notes=notes,
                rejection_reason=None if approve else rejection_reason,
                now=now,
            )
            if not moved:
                # Another decision committed between our read and our write.
                raise InvalidStateTransition("Article was already decided.", article_id=article_id)

            if approve:
                promotions = uow.activate_promotions(article_id, now=now)
            else:
                promotions = uow.list_promotions_by_article(article_id)
            log = uow.insert_moderation_log(
                article_id=article_id, moderator_id=principal.user_id, action=action, notes=notes, now=now
            )
            article = uow.get_by_id(article_id, refresh=True)

        logger.info(
            "Moderation decision article=%s action=%s moderator=%s promotions=%d",
            article_id,
            action,
            principal.user_id,
            len(promotions) if approve else 0,
        )

        fanout = self._schedule_fanout(article) if approve else None
        return Decision(article=article, log=log, promotions=promotions, fanout=fanout)

    def _schedule_fanout(self, article: "Article") -> Future | None:
        if self._dispatcher is None:
            return None
        seller = getattr(article, "seller", None)
        event = FanOutEvent(
            kind=FeedItemType.NEW_ARTICLE,
            actor_id=article.seller_id,
            article_id=article.id,
            article_title=article.title,
            actor_name=(seller.name if seller is not None else "") or "",
        )
        try:
            return self._dispatcher.submit(event)
        except RuntimeError:
            # Executor already shut down (process exiting); the approval stands.
            logger.exception("Could not schedule fan-out for article=%s", article.id)
            return None

    def list_pending(self, principal: Principal) -> "list[Article]":
        authorize(principal, Actions.MODERATION_VIEW_QUEUE)
        return self._listings.list_pending()

    def history(
        self,
        principal: Principal,
        *,
        page: int = 1,
        limit: int = 20,
        action: str | None = None,
        moderator_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        search: str | None = None,
    ) -> "Page[ModerationLog]":
        authorize(principal, Actions.MODERATION_VIEW_HISTORY)
        return self._listings.list_moderation_history(
            page=page,
            limit=limit,
            action=normalize_action(action) if action else None,
            moderator_id=moderator_id,
            start=start,
            end=end,
            search=(search or "").strip() or None,
        )
