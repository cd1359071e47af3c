from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.closet.db import apply_statement_timeout
from app.closet.errors import ClosetError, PersistenceError
from app.closet.modules.listings.models import Article, ArticlePromotion, ArticleStatus, ModerationLog
from app.closet.utils import Page


class SqlListingUnitOfWork:
    """Listing-store operations bound to one open transaction."""

    def __init__(self, s: Session) -> None:
        self.s = s

    def get_by_id(self, article_id: int, *, for_update: bool = False, refresh: bool = False) -> Article | None:
        stmt = select(Article).where(Article.id == article_id)
        if for_update:
            stmt = stmt.with_for_update()
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.s.execute(stmt).scalar_one_or_none()

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
    ) -> bool:
        """
        Conditional update predicated on the current status.
        Returns False when another writer already moved the row.
        """
        res = self.s.execute(
            update(Article)
            .where(Article.id == article_id, Article.status == expected_status)
            .values(
                status=status,
                is_available=is_available,
                published_at=published_at,
                moderation_notes=moderation_notes,
                rejection_reason=rejection_reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def list_promotions_by_article(self, article_id: int) -> list[ArticlePromotion]:
        return list(
            self.s.execute(
                select(ArticlePromotion).where(ArticlePromotion.article_id == article_id).order_by(ArticlePromotion.id)
            ).scalars()
        )

    def activate_promotions(self, article_id: int, *, now: datetime) -> list[ArticlePromotion]:
        promotions = self.list_promotions_by_article(article_id)
        for p in promotions:
            p.is_active = True
            p.start_date = now
            p.end_date = now + timedelta(days=p.duration_days)
        self.s.flush()
        return promotions

    def insert_moderation_log(
        self, *, article_id: int, moderator_id: int, action: str, notes: str | None, now: datetime
    ) -> ModerationLog:
        log = ModerationLog(
            article_id=article_id,
            moderator_id=moderator_id,
            action=action,
            notes=notes,
            created_at=now,
        )
        self.s.add(log)
        self.s.flush()
        return log

    def mark_unavailable(self, article_id: int, *, now: datetime) -> bool:
        res = self.s.execute(
            update(Article)
            .where(
                Article.id == article_id,
                Article.status == ArticleStatus.APPROVED,
                Article.is_available.is_(True),
            )
            .values(is_available=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1


class SqlListingStore:
    def __init__(self, sm: sessionmaker[Session], *, tx_timeout_seconds: float | None = 10.0) -> None:
        self._sm = sm
        self.tx_timeout_seconds = tx_timeout_seconds

    @contextmanager
    def transaction(self) -> Generator[SqlListingUnitOfWork, None, None]:
        """
        One atomic unit of work. Store failures and timeouts roll everything
        back and surface as PersistenceError.
        """
        s: Session = self._sm()
        started = time.monotonic()
        try:
            apply_statement_timeout(s, self.tx_timeout_seconds)
            yield SqlListingUnitOfWork(s)
            elapsed = time.monotonic() - started
            if self.tx_timeout_seconds and elapsed > self.tx_timeout_seconds:
                s.rollback()
                raise PersistenceError(
                    "Listing store transaction timed out.",
                    elapsed_seconds=round(elapsed, 3),
                    timeout_seconds=self.tx_timeout_seconds,
                )
            s.commit()
        except ClosetError:
            s.rollback()
            raise
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceError("Listing store transaction failed.", cause=e.__class__.__name__) from e
        except BaseException:
            s.rollback()
            raise
        finally:
            s.close()

    @contextmanager
    def _read(self) -> Generator[Session, None, None]:
        s: Session = self._sm()
        try:
            yield s
        except SQLAlchemyError as e:
            raise PersistenceError("Listing store read failed.", cause=e.__class__.__name__) from e
        finally:
            s.close()

    def get_by_id(self, article_id: int) -> Article | None:
        with self._read() as s:
            return s.get(Article, article_id)

    def list_pending(self) -> list[Article]:
        with self._read() as s:
            return list(
                s.execute(
                    select(Article)
                    .where(Article.status == ArticleStatus.PENDING_MODERATION)
                    .order_by(Article.created_at.asc(), Article.id.asc())
                ).scalars()
            )

    def count_moderation_logs(self, article_id: int) -> int:
        with self._read() as s:
            return int(
                s.execute(
                    select(func.count()).select_from(ModerationLog).where(ModerationLog.article_id == article_id)
                ).scalar_one()
            )

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
    ) -> Page[ModerationLog]:
        conditions = []
        if action:
            conditions.append(ModerationLog.action == action)
        if moderator_id:
            conditions.append(ModerationLog.moderator_id == moderator_id)
        if start:
            conditions.append(ModerationLog.created_at >= start)
        if end:
            conditions.append(ModerationLog.created_at <= end)
        if search:
            conditions.append(ModerationLog.notes.ilike(f"%{search}%"))

        with self._read() as s:
            total = int(s.execute(select(func.count()).select_from(ModerationLog).where(*conditions)).scalar_one())
            logs = list(
                s.execute(
                    select(ModerationLog)
                    .where(*conditions)
                    .order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
            articles: dict[int, Article] = {}
            if logs:
                ids = sorted({log.article_id for log in logs})
                articles = {a.id: a for a in s.execute(select(Article).where(Article.id.in_(ids))).scalars()}
        return Page(items=logs, page=page, limit=limit, total=total, extra={"articles": articles})
