from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True, slots=True)
class SearchHit:
    paragraph_index: int
    text: str


def search(paragraphs: Sequence[str], query: str) -> list[SearchHit]:
    needle = query.casefold()
    if not needle:
        return []
    return [
        SearchHit(paragraph_index=index, text=text)
        for index, text in enumerate(paragraphs)
        if needle in text.casefold()
    ]


__all__ = ["SearchHit", "search"]
