from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker

from app.closet.contracts import NotificationDraft
from app.closet.db import apply_statement_timeout
from app.closet.errors import ClosetError, PersistenceError
from app.closet.modules.notifications.models import FeedItem, Notification
from app.closet.utils import Page, utcnow


def _is_canonical():
    """
    True for the oldest row of each (user_id, type, entity_id) group.
    Rows without an entity never collapse.
    """
    older = aliased(Notification)
    return ~(
        select(older.id)
        .where(
            older.user_id == Notification.user_id,
            older.type == Notification.type,
            older.entity_id == Notification.entity_id,
            older.id < Notification.id,
        )
        .exists()
    )


class SqlNotificationStore:
    def __init__(self, sm: sessionmaker[Session], *, statement_timeout_seconds: float | None = None, clock=utcnow) -> None:
        self._sm = sm
        self.statement_timeout_seconds = statement_timeout_seconds
        self._clock = clock

    @contextmanager
    def _session(self, *, write: bool = False) -> Generator[Session, None, None]:
        s: Session = self._sm()
        try:
            if write:
                apply_statement_timeout(s, self.statement_timeout_seconds)
            yield s
            if write:
                s.commit()
        except ClosetError:
            s.rollback()
            raise
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceError("Notification store failed.", cause=e.__class__.__name__) from e
        finally:
            s.close()

    # -- writes ---------------------------------------------------------

    def insert_feed_item(
        self, *, type: str, user_id: int, article_id: int | None = None, content: str | None = None
    ) -> FeedItem:
        with self._session(write=True) as s:
            item = FeedItem(type=type, user_id=user_id, article_id=article_id, content=content, created_at=self._clock())
            s.add(item)
            s.flush()
            return item

    def insert_notifications_batch(self, drafts: list[NotificationDraft]) -> int:
        """One round-trip, one transaction: either every row lands or none does."""
        if not drafts:
            return 0
        now = self._clock()
        rows = [
            {
                "type": d.type,
                "title": d.title,
                "message": d.message,
                "user_id": d.user_id,
                "actor_id": d.actor_id,
                "entity_id": d.entity_id,
                "entity_type": d.entity_type,
                "is_read": False,
                "read_at": None,
                "created_at": now,
            }
            for d in drafts
        ]
        with self._session(write=True) as s:
            s.execute(insert(Notification), rows)
        return len(rows)

    def mark_read(self, notification_id: int, user_id: int) -> int:
        """
        Mark one notification and its retry duplicates as read.
        Caller is responsible for the ownership check.
        """
        now = self._clock()
        with self._session(write=True) as s:
            n = s.get(Notification, notification_id)
            if n is None or n.user_id != user_id:
                return 0
            conditions = [Notification.user_id == user_id, Notification.is_read.is_(False)]
            if n.entity_id is None:
                conditions.append(Notification.id == n.id)
            else:
                conditions += [Notification.type == n.type, Notification.entity_id == n.entity_id]
            res = s.execute(
                update(Notification)
                .where(*conditions)
                .values(is_read=True, read_at=now)
                .execution_options(synchronize_session=False)
            )
            return res.rowcount or 0

    def mark_all_read(self, user_id: int) -> int:
        """Returns the number of visible notifications marked, matching count_unread."""
        now = self._clock()
        unread = [Notification.user_id == user_id, Notification.is_read.is_(False)]
        with self._session(write=True) as s:
            visible = int(
                s.execute(select(func.count()).select_from(Notification).where(*unread, _is_canonical())).scalar_one()
            )
            s.execute(
                update(Notification)
                .where(*unread)
                .values(is_read=True, read_at=now)
                .execution_options(synchronize_session=False)
            )
            return visible

    def purge_expired(self, cutoff: datetime) -> tuple[int, int]:
        """
        Delete read notifications and all feed items created before cutoff.
        When the oldest row of a duplicate group goes, the rest of the group
        goes with it, so a later duplicate never resurfaces as unread.
        """
        expired = [Notification.created_at < cutoff, Notification.is_read.is_(True)]
        with self._session(write=True) as s:
            groups = s.execute(
                select(Notification.user_id, Notification.type, Notification.entity_id).where(
                    *expired, Notification.entity_id.is_not(None), _is_canonical()
                )
            ).all()
            n = 0
            for user_id, type_, entity_id in groups:
                n += (
                    s.execute(
                        delete(Notification).where(
                            Notification.user_id == user_id,
                            Notification.type == type_,
                            Notification.entity_id == entity_id,
                        )
                    ).rowcount
                    or 0
                )
            n += s.execute(delete(Notification).where(*expired)).rowcount or 0
            f = s.execute(delete(FeedItem).where(FeedItem.created_at < cutoff)).rowcount
        return (n, f or 0)

    # -- reads ----------------------------------------------------------

    def get_notification(self, notification_id: int) -> Notification | None:
        with self._session() as s:
            return s.get(Notification, notification_id)

    def list_notifications(self, user_id: int, page: int, limit: int, unread_only: bool) -> Page[Notification]:
        conditions = [Notification.user_id == user_id, _is_canonical()]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))
        with self._session() as s:
            total = int(s.execute(select(func.count()).select_from(Notification).where(*conditions)).scalar_one())
            rows = list(
                s.execute(
                    select(Notification)
                    .where(*conditions)
                    .order_by(Notification.created_at.desc(), Notification.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
        return Page(items=rows, page=page, limit=limit, total=total)

    def count_unread(self, user_id: int) -> int:
        with self._session() as s:
            return int(
                s.execute(
                    select(func.count())
                    .select_from(Notification)
                    .where(Notification.user_id == user_id, Notification.is_read.is_(False), _is_canonical())
                ).scalar_one()
            )

    def count_rows(self, **filters) -> int:
        """Raw row count (duplicates included); used by maintenance and tests."""
        with self._session() as s:
            stmt = select(func.count()).select_from(Notification)
            for key, value in filters.items():
                stmt = stmt.where(getattr(Notification, key) == value)
            return int(s.execute(stmt).scalar_one())

    def list_feed(self, user_ids: list[int], page: int, limit: int, type: str | None = None) -> Page[FeedItem]:
        if not user_ids:
            return Page(items=[], page=page, limit=limit, total=0)
        conditions = [FeedItem.user_id.in_(user_ids)]
        if type:
            conditions.append(FeedItem.type == type)
        with self._session() as s:
            total = int(s.execute(select(func.count()).select_from(FeedItem).where(*conditions)).scalar_one())
            rows = list(
                s.execute(
                    select(FeedItem)
                    .where(*conditions)
                    .order_by(FeedItem.created_at.desc(), FeedItem.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
        return Page(items=rows, page=page, limit=limit, total=total)

    def list_feed_items(self, **filters) -> list[FeedItem]:
        with self._session() as s:
            stmt = select(FeedItem).order_by(FeedItem.id)
            for key, value in filters.items():
                stmt = stmt.where(getattr(FeedItem, key) == value)
            return list(s.execute(stmt).scalars())
