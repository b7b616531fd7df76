"""Page maths over an already-fetched result."""

from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from typing import Generic, TypeVar

from quarry.exceptions import InvalidParameter

T = TypeVar("T")


class Paginator(Generic[T]):
    """Splits a result into fixed-size pages. Rendering links is left to the caller.

    Example:
        >>> pager = session.table("posts").paginate(10)
        >>> pager.page_count
        3
        >>> len(pager.page(3))
        3
    """

    def __init__(self, items: Sequence[T], total: int | None = None, per_page: int = 10, style: str = "all") -> None:
        if per_page <= 0:
            raise InvalidParameter(f"per_page must be positive, got {per_page}")
        self.items = list(items)
        self.total = len(self.items) if total is None else total
        self.per_page = per_page
        self.style = style

    def __repr__(self) -> str:
        return f"<Paginator total={self.total} per_page={self.per_page} pages={self.page_count}>"

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)

    def __len__(self) -> int:
        return self.total

    @property
    def page_count(self) -> int:
        return math.ceil(self.total / self.per_page)

    def page(self, number: int) -> list[T]:
        """Items on a 1-based page; empty when the page is out of range."""
        if number < 1 or number > self.page_count:
            return []
        start = (number - 1) * self.per_page
        return self.items[start : start + self.per_page]

    def pages(self) -> Iterator[list[T]]:
        for number in range(1, self.page_count + 1):
            yield self.page(number)
