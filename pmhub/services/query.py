from typing import Any, List, Tuple

from sqlalchemy import or_


def contains_any(search: str, *columns):
    term = f"%{search.strip()}%"
    return or_(*[c.ilike(term) for c in columns])


def paginate(q, page: int, limit: int) -> Tuple[List[Any], int]:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * limit).limit(limit).all()
    return items, total
