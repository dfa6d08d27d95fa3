"""Offset pagination for list endpoints."""

import math
from dataclasses import dataclass
from typing import Any

from fastapi import Query
from pydantic import BaseModel
from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class PaginationMeta(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


@dataclass
class PageParams:
    """Validated page/page_size pair."""

    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def meta(self, total: int) -> PaginationMeta:
        total_pages = math.ceil(total / self.page_size) if total else 0
        return PaginationMeta(
            page=self.page,
            page_size=self.page_size,
            total=total,
            total_pages=total_pages,
            has_next_page=self.page < total_pages,
            has_previous_page=self.page > 1,
        )


def _to_int(value: str | int | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_page_params(
    page: str | int | None = None, page_size: str | int | None = None
) -> PageParams:
    """Clamp raw query values: page >= 1, 1 <= page_size <= 100."""
    page_num = max(1, _to_int(page, 1))
    size = _to_int(page_size, DEFAULT_PAGE_SIZE)
    if size < 1:
        size = DEFAULT_PAGE_SIZE
    return PageParams(page=page_num, page_size=min(size, MAX_PAGE_SIZE))


def page_params(
    page: str | None = Query(None),
    page_size: str | None = Query(None),
    limit: str | None = Query(None),
) -> PageParams:
    """FastAPI dependency; ``limit`` is accepted as an alias for page_size."""
    return parse_page_params(page, page_size if page_size is not None else limit)


async def paginate(
    db: AsyncSession, query: Select, params: PageParams
) -> tuple[list[Any], PaginationMeta]:
    """Run ``query`` for one page and count the full result set."""
    count_query = select(func.count()).select_from(query.order_by(None).subquery())
    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(query.offset(params.offset).limit(params.page_size))
    return list(result.scalars().all()), params.meta(total)
