"""Pagination helpers."""


def paginate(page: int, limit: int, max_limit: int = 100) -> tuple[int, int, int]:
    """Clamp 1-based page/limit; return (page, limit, skip)."""
    limit = max(1, min(limit, max_limit))
    page = max(1, page)
    return page, limit, (page - 1) * limit
