from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.closet.contracts import FanOutEvent
from app.closet.errors import PersistenceError
from app.closet.modules.fanout.models import FanOutRetry
from app.closet.utils import utcnow

STATUS_PENDING = "pending"
STATUS_DONE = "done"


def encode_event(event: FanOutEvent) -> str:
    return json.dumps(asdict(event), sort_keys=True, default=str)


def decode_event(raw: str) -> FanOutEvent:
    data: dict[str, Any] = json.loads(raw)
    return FanOutEvent(
        kind=data["kind"],
        actor_id=int(data["actor_id"]),
        article_id=data.get("article_id"),
        article_title=data.get("article_title") or "",
        actor_name=data.get("actor_name") or "",
        extra=data.get("extra") or {},
    )


class SqlFanOutRetryStore:
    """Durable parking lot for fan-out work that ran out of attempts."""

    def __init__(self, sm: sessionmaker[Session], clock=utcnow) -> None:
        self._sm = sm
        self._clock = clock

    def park(
        self,
        event: FanOutEvent,
        recipient_ids: list[int] | None,
        *,
        feed_item_id: int | None,
        error: str | None,
    ) -> int:
        """recipient_ids=None means the audience itself still has to be loaded."""
        now = self._clock()
        row = FanOutRetry(
            kind=event.kind,
            event_json=encode_event(event),
            recipient_ids_json=json.dumps(recipient_ids),
            feed_item_id=feed_item_id,
            status=STATUS_PENDING,
            attempts=0,
            last_error=(error or "")[:512] or None,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._sm() as s:
                s.add(row)
                s.commit()
                return row.id
        except SQLAlchemyError as e:
            raise PersistenceError("Could not park fan-out work.", cause=e.__class__.__name__) from e

    def list_pending(self, limit: int = 100) -> list[FanOutRetry]:
        try:
            with self._sm() as s:
                return list(
                    s.execute(
                        select(FanOutRetry)
                        .where(FanOutRetry.status == STATUS_PENDING)
                        .order_by(FanOutRetry.created_at.asc(), FanOutRetry.id.asc())
                        .limit(limit)
                    ).scalars()
                )
        except SQLAlchemyError as e:
            raise PersistenceError("Could not list parked fan-out work.", cause=e.__class__.__name__) from e

    def update(
        self,
        retry_id: int,
        *,
        status: str,
        recipient_ids: list[int] | None,
        feed_item_id: int | None,
        error: str | None = None,
    ) -> None:
        try:
            with self._sm() as s:
                row = s.get(FanOutRetry, retry_id)
                if row is None:
                    return
                row.status = status
                row.attempts = (row.attempts or 0) + 1
                row.recipient_ids_json = json.dumps(recipient_ids)
                row.feed_item_id = feed_item_id
                row.last_error = (error or "")[:512] or None
                row.updated_at = self._clock()
                s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError("Could not update parked fan-out work.", cause=e.__class__.__name__) from e
