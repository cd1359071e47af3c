from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.closet.audit import record_event
from app.closet.errors import ClosetError, InvalidOperation, PersistenceError
from app.closet.modules.social.models import Follow
from app.closet.utils import Page


class SqlSocialGraphStore:
    def __init__(self, sm: sessionmaker[Session]) -> None:
        self._sm = sm

    @contextmanager
    def _session(self, *, write: bool = False) -> Generator[Session, None, None]:
        s: Session = self._sm()
        try:
            yield s
            if write:
                s.commit()
        except ClosetError:
            s.rollback()
            raise
        except IntegrityError as e:
            s.rollback()
            # Unique (follower_id, following_id) lost a race or the pair already exists.
            raise InvalidOperation("Already following this user.") from e
        except SQLAlchemyError as e:
            s.rollback()
            raise PersistenceError("Social graph store failed.", cause=e.__class__.__name__) from e
        finally:
            s.close()

    def list_follower_ids(self, user_id: int) -> list[int]:
        with self._session() as s:
            return list(
                s.execute(
                    select(Follow.follower_id).where(Follow.following_id == user_id).order_by(Follow.follower_id)
                ).scalars()
            )

    def list_following_ids(self, user_id: int) -> list[int]:
        with self._session() as s:
            return list(
                s.execute(
                    select(Follow.following_id).where(Follow.follower_id == user_id).order_by(Follow.following_id)
                ).scalars()
            )

    def edge_exists(self, follower_id: int, following_id: int) -> bool:
        with self._session() as s:
            found = s.execute(
                select(Follow.id).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
            ).first()
            return found is not None

    def create_edge(self, follower_id: int, following_id: int) -> None:
        with self._session(write=True) as s:
            s.add(Follow(follower_id=follower_id, following_id=following_id))
            s.flush()
            record_event(
                s,
                actor_id=follower_id,
                action="social.follow",
                entity_type="User",
                entity_id=following_id,
            )

    def delete_edge(self, follower_id: int, following_id: int) -> bool:
        with self._session(write=True) as s:
            res = s.execute(
                delete(Follow).where(Follow.follower_id == follower_id, Follow.following_id == following_id)
            )
            if res.rowcount != 1:
                return False
            record_event(
                s,
                actor_id=follower_id,
                action="social.unfollow",
                entity_type="User",
                entity_id=following_id,
            )
            return True

    def _page(self, column, user_id: int, page: int, limit: int) -> Page[Follow]:
        with self._session() as s:
            total = int(s.execute(select(func.count()).select_from(Follow).where(column == user_id)).scalar_one())
            rows = list(
                s.execute(
                    select(Follow)
                    .where(column == user_id)
                    .order_by(Follow.created_at.desc(), Follow.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).scalars()
            )
        return Page(items=rows, page=page, limit=limit, total=total)

    def list_followers(self, user_id: int, page: int, limit: int) -> Page[Follow]:
        return self._page(Follow.following_id, user_id, page, limit)

    def list_following(self, user_id: int, page: int, limit: int) -> Page[Follow]:
        return self._page(Follow.follower_id, user_id, page, limit)

    def count_followers(self, user_id: int) -> int:
        with self._session() as s:
            return int(
                s.execute(select(func.count()).select_from(Follow).where(Follow.following_id == user_id)).scalar_one()
            )
