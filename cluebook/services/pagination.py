from __future__ import annotations

import math
from dataclasses import dataclass

from cluebook.errors import PageError


@dataclass(frozen=True, slots=True)
class PageWindow:
    current_page: int
    total_pages: int
    total_items: int
    limit: int
    offset: int

    @property
    def has_previous(self) -> bool:
        return self.current_page > 1

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages


def parse_page(raw: object) -> int:
    """Return the 1-based page number from a query value (default 1)."""
    if raw is None:
        return 1
    text = str(raw).strip()
    if not text:
        return 1
    try:
        page = int(text)
    except ValueError:
        raise PageError("Invalid page number. Page number must be greater than 0.")
    if page <= 0:
        raise PageError("Invalid page number. Page number must be greater than 0.")
    return page


def paginate(total_items: int, per_page: int, page: int) -> PageWindow:
    """Compute the window for ``page``; an empty listing still has page 1."""
    if per_page <= 0:
        raise ValueError("per_page must be positive.")
    if page <= 0:
        raise PageError("Invalid page number. Page number must be greater than 0.")

    total_pages = math.ceil(total_items / per_page) if total_items > 0 else 0
    if total_items > 0 and page > total_pages:
        raise PageError("Page number exceeds available pages.")
    if total_items == 0 and page > 1:
        raise PageError("Page number exceeds available pages.")

    return PageWindow(
        current_page=page,
        total_pages=total_pages,
        total_items=total_items,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
