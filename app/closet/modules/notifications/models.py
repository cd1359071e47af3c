from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.closet.models import Base
from app.closet.utils import utcnow

# Feed and notification rows may live in a separate database from users and
# articles, so user/article references are plain integers without foreign keys.


class FeedItemType:
    NEW_ARTICLE = "NEW_ARTICLE"
    ARTICLE_SOLD = "ARTICLE_SOLD"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    ACHIEVEMENT = "ACHIEVEMENT"

    ALL = (NEW_ARTICLE, ARTICLE_SOLD, PROFILE_UPDATE, ACHIEVEMENT)


class NotificationType:
    NEW_FOLLOWER = "NEW_FOLLOWER"
    NEW_ARTICLE_FROM_FOLLOWED = "NEW_ARTICLE_FROM_FOLLOWED"
    ARTICLE_SOLD = "ARTICLE_SOLD"
    ARTICLE_LIKED = "ARTICLE_LIKED"
    SYSTEM = "SYSTEM"

    ALL = (NEW_FOLLOWER, NEW_ARTICLE_FROM_FOLLOWED, ARTICLE_SOLD, ARTICLE_LIKED, SYSTEM)


class FeedItem(Base):
    """
    One row per published event. user_id is the actor; viewers see it through
    their own follow edges.
    """

    __tablename__ = "feed_items"
    __table_args__ = (
        Index("idx_feed_items_user_created", "user_id", "created_at"),
        Index("idx_feed_items_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    article_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "userId": self.user_id,
            "articleId": self.article_id,
            "content": self.content,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Notification(Base):
    """
    Materialized per recipient. Retries may write the same
    (user_id, type, entity_id) more than once; readers collapse them.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_created", "user_id", "created_at"),
        Index("idx_notifications_user_unread", "user_id", "is_read"),
        Index("idx_notifications_dedup", "user_id", "type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False)  # recipient
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # "article" / "user"

    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def to_dict(self, actor: dict | None = None) -> dict:
        out = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "userId": self.user_id,
            "actorId": self.actor_id,
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "isRead": self.is_read,
            "readAt": self.read_at.isoformat() if self.read_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if actor is not None:
            out["actor"] = actor
        return out
