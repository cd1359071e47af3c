from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from app.closet.errors import InvalidOperation

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_int(s: Any, default: int | None = None) -> int | None:
    """Parse an integer from form/query input."""
    if s is None:
        return default
    if isinstance(s, int):
        return s
    s = str(s).strip()
    if not s:
        return default
    return int(s)


def parse_datetime(s: str | None) -> datetime | None:
    """Parse an ISO date or datetime string (YYYY-MM-DD or full ISO 8601)."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    value = datetime.fromisoformat(s)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def normalize_paging(page: Any, limit: Any) -> tuple[int, int]:
    """Clamp page/limit to sane bounds (page >= 1, 1 <= limit <= MAX_PAGE_SIZE)."""
    try:
        p = parse_int(page, 1) or 1
        n = parse_int(limit, DEFAULT_PAGE_SIZE) or DEFAULT_PAGE_SIZE
    except ValueError as e:
        raise InvalidOperation("page and limit must be integers.", page=page, limit=limit) from e
    return max(p, 1), min(max(n, 1), MAX_PAGE_SIZE)


@dataclass
class Page(Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    @property
    def has_next(self) -> bool:
        return self.page * self.limit < self.total

    def pagination(self) -> dict[str, int]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "totalPages": self.total_pages,
        }
