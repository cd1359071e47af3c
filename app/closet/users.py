from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.closet.errors import PersistenceError
from app.closet.models import User


class SqlUserDirectory:
    """Read-only user lookups for display names and existence checks."""

    def __init__(self, sm: sessionmaker[Session]) -> None:
        self._sm = sm

    def get_user(self, user_id: int) -> User | None:
        try:
            with self._sm() as s:
                return s.get(User, user_id)
        except SQLAlchemyError as e:
            raise PersistenceError("User lookup failed.", cause=e.__class__.__name__) from e

    def identities(self, user_ids: list[int]) -> dict[int, dict]:
        ids = sorted({i for i in user_ids if i is not None})
        if not ids:
            return {}
        try:
            with self._sm() as s:
                users = s.execute(select(User).where(User.id.in_(ids))).scalars()
                return {u.id: u.identity() for u in users}
        except SQLAlchemyError as e:
            raise PersistenceError("User lookup failed.", cause=e.__class__.__name__) from e
