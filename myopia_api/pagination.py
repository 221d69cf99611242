# backend/myopia_api/pagination.py
import math
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple, Type

from fastapi import Query
from pydantic import BaseModel


@dataclass
class PageParams:
    page: int
    limit: int
    search: str

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=200),
) -> PageParams:
    return PageParams(page=page, limit=limit, search=(search or "").strip())


def paginate(query, params: PageParams) -> Tuple[List[Any], int]:
    """Run `query` for one page and return (rows, total)."""
    total = query.order_by(None).count()
    rows = query.offset(params.skip).limit(params.limit).all()
    return rows, total


def dump(schema: Type[BaseModel], obj) -> dict:
    return schema.model_validate(obj).model_dump(by_alias=True, mode="json")


def page_envelope(message: str, data: list, total: int, params: PageParams) -> dict:
    return {
        "message": message,
        "data": data,
        "total": total,
        "page": params.page,
        "pages": math.ceil(total / params.limit),
    }
