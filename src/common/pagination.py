# src/common/pagination.py
"""
Параметры постраничной выдачи.
"""

from __future__ import annotations

from typing import NamedTuple


class PageParams(NamedTuple):
    page: int
    limit: int
    offset: int


def page_params(page: int, limit: int | None, default_limit: int, max_limit: int) -> PageParams:
    """
    Нормализует номер страницы (с 1) и размер страницы (1..max_limit).
    """
    page = max(1, int(page))
    limit = default_limit if limit is None else int(limit)
    limit = min(max(1, limit), max_limit)
    return PageParams(page=page, limit=limit, offset=(page - 1) * limit)
