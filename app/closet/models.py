from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.closet.utils import utcnow


class Base(DeclarativeBase):
    pass


class User(Base):
    """
    Local mirror of the auth layer's account: identity, display fields and role.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="BUYER")  # ADMIN/MODERATOR/SELLER/BUYER
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    def identity(self) -> dict:
        return {"id": self.id, "name": self.name, "image": self.image}


class AuditEvent(Base):
    """
    Append-only audit trail for account and social actions.
    Moderation decisions have their own ledger (moderation_logs).
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "social.follow"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "User"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.closet.modules.listings.models import Article, ArticlePromotion, ModerationLog  # noqa: E402,F401
from app.closet.modules.social.models import Follow  # noqa: E402,F401
from app.closet.modules.notifications.models import FeedItem, Notification  # noqa: E402,F401
from app.closet.modules.fanout.models import FanOutRetry  # noqa: E402,F401
