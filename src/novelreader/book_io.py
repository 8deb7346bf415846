from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping

from .paging import DEFAULT_PAGE_SIZE, page_of
from .segment import segment

BOOK_FORMAT_VERSION = 1
_TEXT_ENCODINGS = ("utf-8-sig", "gb18030", "cp932")


@dataclass(frozen=True, slots=True)
class Progress:
    page: int = 0
    paragraph_index: int = 0

    @classmethod
    def at(cls, paragraph_index: int, page_size: int) -> "Progress":
        index = max(0, int(paragraph_index))
        return cls(page=page_of(index, page_size), paragraph_index=index)

    def as_payload(self) -> dict[str, int]:
        return {"page": self.page, "paragraphIndex": self.paragraph_index}


def progress_from_payload(payload: object) -> Progress | None:
    if not isinstance(payload, Mapping):
        return None
    index = payload.get("paragraphIndex")
    if index is None:
        index = payload.get("paraIndex")
    page = payload.get("page")
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        return None
    if isinstance(page, bool) or not isinstance(page, int) or page < 0:
        page = 0
    return Progress(page=page, paragraph_index=index)


@dataclass(slots=True)
class Book:
    id: str
    name: str
    text: str
    paragraphs: tuple[str, ...]
    progress: Progress = field(default_factory=Progress)
    synced: bool = False
    added_at: float = 0.0
    updated_at: float = 0.0

    def clamp_progress(self, progress: Progress, page_size: int) -> Progress:
        if not self.paragraphs:
            return Progress()
        index = min(max(0, progress.paragraph_index), len(self.paragraphs) - 1)
        return Progress.at(index, page_size)

    def has_paragraph(self, index: int) -> bool:
        return 0 <= index < len(self.paragraphs)


def display_name(file_name: str) -> str:
    stem = Path(file_name).stem
    return stem or file_name


def ingest_text(
    book_id: str,
    name: str,
    text: str,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Book:
    if not book_id.strip():
        raise ValueError("Book id cannot be empty.")
    now = time.time()
    return Book(
        id=book_id,
        name=name,
        text=text,
        paragraphs=tuple(segment(text)),
        progress=Progress.at(0, page_size),
        synced=False,
        added_at=now,
        updated_at=now,
    )


def read_text_file(path: Path) -> str:
    raw = path.read_bytes()
    for encoding in _TEXT_ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def ingest_file(path: Path, *, page_size: int = DEFAULT_PAGE_SIZE) -> Book:
    if not path.is_file():
        raise FileNotFoundError(f"Text file not found: {path}")
    return ingest_text(
        path.name,
        display_name(path.name),
        read_text_file(path),
        page_size=page_size,
    )


def reingest(book: Book, text: str, *, page_size: int = DEFAULT_PAGE_SIZE) -> Book:
    """Replace a book's content, keeping its progress where it still fits."""
    updated = replace(
        book,
        text=text,
        paragraphs=tuple(segment(text)),
        synced=False,
        updated_at=time.time(),
    )
    updated.progress = updated.clamp_progress(book.progress, page_size)
    return updated


def book_to_payload(book: Book) -> dict[str, object]:
    return {
        "version": BOOK_FORMAT_VERSION,
        "id": book.id,
        "name": book.name,
        "text": book.text,
        "paragraphs": list(book.paragraphs),
        "progress": book.progress.as_payload(),
        "synced": book.synced,
        "added_at": book.added_at,
        "updated_at": book.updated_at,
    }


def book_from_payload(payload: object) -> Book | None:
    if not isinstance(payload, Mapping):
        return None
    book_id = payload.get("id")
    text = payload.get("text")
    if not isinstance(book_id, str) or not isinstance(text, str):
        return None
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip():
        name = display_name(book_id)
    raw_paragraphs = payload.get("paragraphs")
    if isinstance(raw_paragraphs, list) and all(isinstance(p, str) for p in raw_paragraphs):
        paragraphs = tuple(raw_paragraphs)
    else:
        paragraphs = tuple(segment(text))
    added_at = payload.get("added_at")
    updated_at = payload.get("updated_at")
    return Book(
        id=book_id,
        name=name,
        text=text,
        paragraphs=paragraphs,
        progress=progress_from_payload(payload.get("progress")) or Progress(),
        synced=payload.get("synced") is True,
        added_at=float(added_at) if isinstance(added_at, (int, float)) else 0.0,
        updated_at=float(updated_at) if isinstance(updated_at, (int, float)) else 0.0,
    )


__all__ = [
    "Book",
    "Progress",
    "progress_from_payload",
    "display_name",
    "ingest_text",
    "ingest_file",
    "read_text_file",
    "reingest",
    "book_to_payload",
    "book_from_payload",
]
