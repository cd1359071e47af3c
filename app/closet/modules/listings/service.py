from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.closet.contracts import ListingStore
from app.closet.errors import ClosetError, Forbidden, InvalidStateTransition, NotFound
from app.closet.modules.notifications.models import FeedItemType
from app.closet.rbac import Actions, Principal, authorize
from app.closet.utils import utcnow

if TYPE_CHECKING:
    from app.closet.modules.fanout.dispatcher import FanOutDispatcher
    from app.closet.modules.listings.models import Article

logger = logging.getLogger(__name__)


class ListingService:
    def __init__(self, listings: ListingStore, dispatcher: "FanOutDispatcher | None" = None, clock=utcnow) -> None:
        self._listings = listings
        self._dispatcher = dispatcher
        self._clock = clock

    def get(self, article_id: int) -> "Article":
        article = self._listings.get_by_id(article_id)
        if article is None:
            raise NotFound("Article not found.", article_id=article_id)
        return article

    def mark_sold(self, principal: Principal, article_id: int) -> "Article":
        """
        Owner-only. Flips availability off; moderation status is untouched.
        """
        authorize(principal, Actions.ARTICLES_MARK_SOLD)
        now = self._clock()
        with self._listings.transaction() as uow:
            article = uow.get_by_id(article_id, for_update=True)
            if article is None:
                raise NotFound("Article not found.", article_id=article_id)
            if article.seller_id != principal.user_id:
                raise Forbidden("Only the seller can mark this article as sold.", article_id=article_id)
            if not uow.mark_unavailable(article_id, now=now):
                raise InvalidStateTransition(
                    "Only approved, available articles can be marked as sold.",
                    article_id=article_id,
                    status=article.status,
                )
            article = uow.get_by_id(article_id, refresh=True)

        if self._dispatcher is not None:
            try:
                self._dispatcher.publish_feed_item(
                    type=FeedItemType.ARTICLE_SOLD, user_id=article.seller_id, article_id=article.id
                )
            except ClosetError as e:
                logger.warning("ARTICLE_SOLD feed item failed for article=%s: %s", article.id, e)
        return article
