from __future__ import annotations

import pytest

from novelreader.book_io import Progress, ingest_text
from novelreader.config import ReaderSettings, SyncSettings
from novelreader.library import LAST_BOOK_KEY, Library


def test_put_and_get_book(tmp_path) -> None:
    library = Library(tmp_path)
    book = ingest_text("dir/odd name?.txt", "odd", "a\nb")
    book.progress = Progress(0, 1)

    library.put_book(book)

    assert library.has_book(book.id)
    assert library.get_book(book.id) == book
    assert library.get_book("other.txt") is None


def test_list_books_sort_modes(tmp_path) -> None:
    library = Library(tmp_path)
    first = ingest_text("b.txt", "Beta", "x")
    second = ingest_text("a.txt", "alpha", "y")
    first.updated_at = 200.0
    second.updated_at = 100.0
    library.put_book(first)
    library.put_book(second)

    assert [b.id for b in library.list_books()] == ["a.txt", "b.txt"]
    assert [b.id for b in library.list_books("recent")] == ["b.txt", "a.txt"]
    with pytest.raises(ValueError):
        library.list_books("size")


def test_list_books_skips_corrupt_files(tmp_path) -> None:
    library = Library(tmp_path)
    library.put_book(ingest_text("ok.txt", "ok", "x"))
    (library.books_dir / "broken.json").write_text("{not json", encoding="utf-8")

    assert [b.id for b in library.list_books()] == ["ok.txt"]


def test_delete_book_clears_last_book(tmp_path) -> None:
    library = Library(tmp_path)
    book = ingest_text("gone.txt", "gone", "x")
    library.put_book(book)
    library.set_last_book(book.id)

    assert library.delete_book(book.id) is True
    assert library.get_book(book.id) is None
    assert library.get_setting(LAST_BOOK_KEY) is None
    assert library.delete_book(book.id) is False


def test_settings_persist_across_instances(tmp_path) -> None:
    Library(tmp_path).put_setting("voice_filter", "ja")
    assert Library(tmp_path).get_setting("voice_filter") == "ja"
    assert Library(tmp_path).get_setting("missing", "fallback") == "fallback"


def test_reader_settings_rate_and_voice(tmp_path) -> None:
    settings = ReaderSettings(Library(tmp_path))
    assert settings.rate == 1.0
    assert settings.save_rate(5.0) == 2.0
    assert settings.rate == 2.0
    assert settings.voice_name is None
    settings.save_voice_name("Alpha")
    assert settings.voice_name == "Alpha"


def test_reader_settings_sync_round_trip(tmp_path) -> None:
    settings = ReaderSettings(Library(tmp_path))
    assert settings.sync().configured is False

    settings.save_sync(SyncSettings("https://sync.example/", "tok", True))

    stored = settings.sync()
    assert stored.sync_url == "https://sync.example"
    assert stored.sync_token == "tok"
    assert stored.enabled is True
