from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from app.closet.models import Base
from app.closet.utils import utcnow


class ArticleStatus:
    PENDING_MODERATION = "PENDING_MODERATION"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SOLD = "SOLD"

    ALL = (PENDING_MODERATION, APPROVED, REJECTED, SOLD)


class ModerationAction:
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    ALL = (APPROVE, REJECT)


class JSONList(TypeDecorator):
    """
    Ordered list of strings stored as a JSON text column.
    The domain only ever sees list[str].
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return "[]"
        return json.dumps([str(v) for v in value])

    def process_result_value(self, value, dialect):
        if not value:
            return []
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            # Legacy rows held a bare URL instead of an array.
            return [value]
        if isinstance(decoded, str):
            return [decoded]
        return [str(v) for v in decoded or []]


class Article(Base):
    __tablename__ = "articles"
    __table_args__ = (
        Index("idx_articles_status_created", "status", "created_at"),
        Index("idx_articles_seller", "seller_id"),
        CheckConstraint(
            "NOT is_available OR status = 'APPROVED'",
            name="ck_articles_available_requires_approved",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    seller_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    images: Mapped[list[str]] = mapped_column(JSONList, nullable=False, default=list)

    # PENDING_MODERATION -> APPROVED | REJECTED (terminal)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ArticleStatus.PENDING_MODERATION)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    moderation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    seller = relationship("User", lazy="selectin")
    promotions: Mapped[list["ArticlePromotion"]] = relationship(
        "ArticlePromotion",
        back_populates="article",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ArticlePromotion.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sellerId": self.seller_id,
            "categoryId": self.category_id,
            "title": self.title,
            "description": self.description,
            "price": str(self.price),
            "images": list(self.images or []),
            "status": self.status,
            "isAvailable": self.is_available,
            "moderationNotes": self.moderation_notes,
            "rejectionReason": self.rejection_reason,
            "publishedAt": self.published_at.isoformat() if self.published_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class ArticlePromotion(Base):
    __tablename__ = "article_promotions"
    __table_args__ = (
        Index("idx_article_promotions_article", "article_id"),
        CheckConstraint("duration_days > 0", name="ck_article_promotions_duration_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    article_id: Mapped[int] = mapped_column(ForeignKey("articles.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. BOOST, FEATURED
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)

    # Set only when the listing is approved; end_date = start_date + duration_days.
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    article: Mapped[Article] = relationship("Article", back_populates="promotions", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "price": str(self.price),
            "durationDays": self.duration_days,
            "isActive": self.is_active,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
        }


class ModerationLog(Base):
    """
    Immutable ledger row, one per moderation decision.
    """

    __tablename__ = "moderation_logs"
    __table_args__ = (
        Index("idx_moderation_logs_article", "article_id"),
        Index("idx_moderation_logs_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    article_id: Mapped[int] = mapped_column(ForeignKey("articles.id", ondelete="CASCADE"), nullable=False)
    moderator_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)  # APPROVE / REJECT
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    moderator = relationship("User", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "articleId": self.article_id,
            "moderatorId": self.moderator_id,
            "action": self.action,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
