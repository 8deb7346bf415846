from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from urllib.parse import quote, unquote

from .book_io import Book, book_from_payload, book_to_payload

BOOKS_DIRNAME = "books"
SETTINGS_FILENAME = "settings.json"
LAST_BOOK_KEY = "last_book_id"
_SORT_MODES = {"name", "recent"}


def _write_json_atomic(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_json(path: Path) -> object | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None


def _book_filename(book_id: str) -> str:
    return f"{quote(book_id, safe='')}.json"


class Library:
    """
    Local persistence for books and global settings.

    Each book lives in ``books/<quoted id>.json``; settings share one
    ``settings.json`` file. Unreadable files are treated as missing.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()
        self.books_dir = self.root / BOOKS_DIRNAME
        self.settings_path = self.root / SETTINGS_FILENAME
        self.books_dir.mkdir(parents=True, exist_ok=True)

    def _book_path(self, book_id: str) -> Path:
        return self.books_dir / _book_filename(book_id)

    def put_book(self, book: Book) -> None:
        _write_json_atomic(self._book_path(book.id), book_to_payload(book))

    def get_book(self, book_id: str) -> Book | None:
        path = self._book_path(book_id)
        if not path.exists():
            return None
        return book_from_payload(_read_json(path))

    def has_book(self, book_id: str) -> bool:
        return self._book_path(book_id).exists()

    def list_books(self, sort: str = "name") -> list[Book]:
        mode = sort.strip().lower()
        if mode not in _SORT_MODES:
            raise ValueError(f"Unknown sort mode: {sort}")
        books: list[Book] = []
        for entry in self.books_dir.glob("*.json"):
            book = book_from_payload(_read_json(entry))
            if book is None:
                continue
            if unquote(entry.stem) != book.id:
                continue
            books.append(book)
        if mode == "recent":
            books.sort(key=lambda b: (-b.updated_at, b.name.casefold(), b.id))
        else:
            books.sort(key=lambda b: (b.name.casefold(), b.id))
        return books

    def delete_book(self, book_id: str) -> bool:
        path = self._book_path(book_id)
        if not path.exists():
            return False
        path.unlink()
        if self.get_setting(LAST_BOOK_KEY) == book_id:
            self.delete_setting(LAST_BOOK_KEY)
        return True

    def _load_settings(self) -> dict[str, object]:
        raw = _read_json(self.settings_path)
        if not isinstance(raw, dict):
            return {}
        return raw

    def get_setting(self, key: str, default: object | None = None) -> object | None:
        return self._load_settings().get(key, default)

    def put_setting(self, key: str, value: object) -> None:
        settings = self._load_settings()
        if settings.get(key) == value and key in settings:
            return
        settings[key] = value
        _write_json_atomic(self.settings_path, settings)

    def delete_setting(self, key: str) -> None:
        settings = self._load_settings()
        if settings.pop(key, None) is not None:
            _write_json_atomic(self.settings_path, settings)

    def last_book_id(self) -> str | None:
        value = self.get_setting(LAST_BOOK_KEY)
        return value if isinstance(value, str) and value else None

    def set_last_book(self, book_id: str) -> None:
        self.put_setting(LAST_BOOK_KEY, book_id)


__all__ = ["Library", "LAST_BOOK_KEY"]
