from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from patrol.core.errors import ValidationError

T = TypeVar("T")

MAX_LIMIT = 100


@dataclass
class Page(Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total / self.limit) if self.limit else 0

    def meta(self) -> dict[str, int]:
        return {"page": self.page, "limit": self.limit, "total": self.total, "total_pages": self.total_pages}


def check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")


def paginate(db: Session, stmt: Select[Any], *, page: int, limit: int) -> Page[Any]:
    """Run ``stmt`` for one page. ``stmt`` must already be ordered."""

    check_paging(page, limit)
    total = db.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
    rows = db.scalars(stmt.limit(limit).offset((page - 1) * limit)).all()
    return Page(items=list(rows), page=page, limit=limit, total=int(total))


def day_bounds(date_from: date | None, date_to: date | None) -> tuple[datetime | None, datetime | None]:
    """Turn an inclusive date range into [start, end) UTC instants."""

    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else None
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc) if date_to else None
    return start, end
