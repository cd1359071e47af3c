from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.closet.models import Base
from app.closet.utils import utcnow


class FanOutRetry(Base):
    """
    Fan-out work that exhausted its in-process attempts.
    Lives next to the notifications it is meant to produce and is drained by
    scripts/redrive_fanout.py.
    """

    __tablename__ = "fanout_retries"
    __table_args__ = (
        Index("idx_fanout_retries_status", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # NEW_ARTICLE
    event_json: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_ids_json: Mapped[str] = mapped_column(Text, nullable=False)
    feed_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # null: feed item still owed

    # pending -> done (or pending again after a failed re-drive)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
