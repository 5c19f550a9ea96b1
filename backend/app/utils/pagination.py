"""Query string pagination shared by the list endpoints."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _positive_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def parse_pagination(args: Mapping[str, Any]) -> tuple[int, int]:
    """Return ``(page, limit)``; invalid or out of range values use the defaults."""

    page = _positive_int(args.get("page")) or 1
    limit = _positive_int(args.get("limit"))
    if limit is None or limit > MAX_PAGE_SIZE:
        limit = DEFAULT_PAGE_SIZE
    return page, limit


def paginated(items: list[dict[str, Any]], page: int, limit: int, total: int) -> dict[str, Any]:
    return {"data": items, "pagination": {"page": page, "limit": limit, "total": total}}
