from __future__ import annotations

DEFAULT_PAGE_SIZE = 20


def _check_page_size(page_size: int) -> None:
    if page_size <= 0:
        raise ValueError(f"Page size must be positive, got {page_size}")


def page_of(paragraph_index: int, page_size: int) -> int:
    _check_page_size(page_size)
    return paragraph_index // page_size


def range_of(page: int, page_size: int, total_paragraphs: int) -> tuple[int, int]:
    """Return the half-open ``(start, end)`` paragraph range shown on ``page``."""
    _check_page_size(page_size)
    start = page * page_size
    end = min(total_paragraphs, start + page_size)
    return start, end


def total_pages(total_paragraphs: int, page_size: int) -> int:
    _check_page_size(page_size)
    if total_paragraphs <= 0:
        return 0
    return -(-total_paragraphs // page_size)


def clamp_page(page: int, total_paragraphs: int, page_size: int) -> int:
    last_page = max(0, total_pages(total_paragraphs, page_size) - 1)
    return max(0, min(page, last_page))


def percent_read(page: int, page_size: int, total_paragraphs: int) -> int:
    if total_paragraphs <= 0:
        return 0
    _, end = range_of(page, page_size, total_paragraphs)
    return (max(0, end) * 100) // total_paragraphs


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "page_of",
    "range_of",
    "total_pages",
    "clamp_page",
    "percent_read",
]
