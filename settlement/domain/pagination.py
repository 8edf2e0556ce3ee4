from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, and_, or_, select
from sqlalchemy.orm import Session

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    next_cursor: str | None = None


def keyset_page(session: Session, stmt: Select[Any], model: Any, cursor: str | None, limit: int) -> Page[Any]:
    """Newest-first page over ``(created_at, id)``.

    ``cursor`` is the id of the first row to return, which is exactly the
    ``next_cursor`` handed out with the previous page.
    """
    if cursor:
        anchor = session.execute(select(model.created_at, model.id).where(model.id == cursor)).first()
        if anchor is not None:
            stmt = stmt.where(
                or_(
                    model.created_at < anchor.created_at,
                    and_(model.created_at == anchor.created_at, model.id <= anchor.id),
                )
            )
    rows = list(session.scalars(stmt.order_by(model.created_at.desc(), model.id.desc()).limit(limit + 1)).all())
    if len(rows) > limit:
        return Page(items=rows[:limit], next_cursor=rows[limit].id)
    return Page(items=rows)
