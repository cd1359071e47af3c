from __future__ import annotations

import logging
from datetime import timedelta

from app.closet.contracts import NotificationStore, UserDirectory
from app.closet.errors import Forbidden, NotFound
from app.closet.rbac import Actions, Principal, authorize
from app.closet.utils import Page, utcnow

logger = logging.getLogger(__name__)


class NotificationReadModel:
    """
    Per-recipient notification queries. Rows may be duplicated by fan-out
    retries; listing and unread counts only ever see one row per
    (user, type, entity).
    """

    def __init__(self, store: NotificationStore, users: UserDirectory, *, retention_days: int = 30, clock=utcnow) -> None:
        self._store = store
        self._users = users
        self.retention_days = retention_days
        self._clock = clock

    def list_notifications(
        self,
        principal: Principal,
        *,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
        include_actor: bool = True,
    ) -> Page[dict]:
        authorize(principal, Actions.NOTIFICATIONS_READ)
        rows = self._store.list_notifications(principal.user_id, page, limit, unread_only)
        actors = self._users.identities([n.actor_id for n in rows.items]) if include_actor else {}
        items = [
            n.to_dict(actor=actors.get(n.actor_id) if include_actor and n.actor_id is not None else None)
            for n in rows.items
        ]
        return Page(
            items=items,
            page=rows.page,
            limit=rows.limit,
            total=rows.total,
            extra={"unreadCount": self._store.count_unread(principal.user_id)},
        )

    def unread_count(self, principal: Principal) -> int:
        authorize(principal, Actions.NOTIFICATIONS_READ)
        return self._store.count_unread(principal.user_id)

    def mark_read(self, principal: Principal, notification_id: int) -> int:
        authorize(principal, Actions.NOTIFICATIONS_READ)
        n = self._store.get_notification(notification_id)
        if n is None:
            raise NotFound("Notification not found.", notification_id=notification_id)
        if n.user_id != principal.user_id:
            raise Forbidden("This notification belongs to someone else.", notification_id=notification_id)
        return self._store.mark_read(notification_id, principal.user_id)

    def mark_all_read(self, principal: Principal) -> int:
        authorize(principal, Actions.NOTIFICATIONS_READ)
        count = self._store.mark_all_read(principal.user_id)
        logger.debug("Marked %d notifications read for user=%s", count, principal.user_id)
        return count

    def purge_expired(self) -> tuple[int, int]:
        """Retention: read notifications and feed items older than retention_days."""
        cutoff = self._clock() - timedelta(days=self.retention_days)
        notifications, feed_items = self._store.purge_expired(cutoff)
        logger.info(
            "Retention purge cutoff=%s notifications=%d feed_items=%d", cutoff.isoformat(), notifications, feed_items
        )
        return notifications, feed_items
