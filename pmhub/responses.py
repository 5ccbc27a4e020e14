"""Success envelope and pagination helpers shared by every router."""
from math import ceil
from typing import Any, Optional, Sequence, Tuple, Type

from pydantic import BaseModel


MAX_LIMIT = 200


def clamp_paging(page: Optional[int], limit: Optional[int], default_limit: int = 10) -> Tuple[int, int]:
    page = max(1, page or 1)
    limit = min(max(1, limit or default_limit), MAX_LIMIT)
    return page, limit


def pagination(page: int, limit: int, total: int, with_links: bool = False) -> dict:
    pages = ceil(total / limit) if limit else 0
    meta = {"page": page, "limit": limit, "total": total, "pages": pages}
    if with_links:
        meta["has_next"] = page < pages
        meta["has_prev"] = page > 1
    return meta


def dump(schema: Type[BaseModel], obj: Any):
    """Serialize an ORM object (or a list of them) through ``schema``."""
    if obj is None:
        return None
    if isinstance(obj, (list, tuple)):
        return [schema.model_validate(o).model_dump(mode="json") for o in obj]
    return schema.model_validate(obj).model_dump(mode="json")


def ok(data: Any = None, message: Optional[str] = None, page_meta: Optional[dict] = None) -> dict:
    body: dict = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    if page_meta is not None:
        body["pagination"] = page_meta
    return body


def paged(items: Sequence[Any], page: int, limit: int, total: int, with_links: bool = False) -> dict:
    return ok(list(items), page_meta=pagination(page, limit, total, with_links))
