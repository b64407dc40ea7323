"""Pagination helpers."""

from datetime import datetime, timedelta

from pydantic import BaseModel


class Window(BaseModel):
    """Resolved read window for history listings."""

    since: datetime | None = None
    limit: int | None = None
    offset: int = 0


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def history_window(period: str | None, page: int, page_size: int) -> Window:
    """`period=week` is unpaginated and bounded to the last seven days; otherwise 1-based pages."""
    if period == "week":
        return Window(since=datetime.utcnow() - timedelta(days=7))
    limit, offset = paginate(page_size, (max(page, 1) - 1) * page_size)
    return Window(limit=limit, offset=offset)
