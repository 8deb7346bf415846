from __future__ import annotations

import pytest

from novelreader.book_io import (
    Progress,
    book_from_payload,
    book_to_payload,
    display_name,
    ingest_file,
    ingest_text,
    progress_from_payload,
    read_text_file,
    reingest,
)


def test_ingest_file_uses_file_name_as_id(tmp_path) -> None:
    path = tmp_path / "星の王子さま.txt"
    path.write_text("一行目\n\n二行目\n", encoding="utf-8")

    book = ingest_file(path)

    assert book.id == "星の王子さま.txt"
    assert book.name == "星の王子さま"
    assert book.paragraphs == ("一行目", "二行目")
    assert book.progress == Progress(0, 0)
    assert book.synced is False


def test_ingest_file_missing(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        ingest_file(tmp_path / "missing.txt")


def test_ingest_text_rejects_blank_id() -> None:
    with pytest.raises(ValueError):
        ingest_text("  ", "x", "text")


def test_read_text_file_falls_back_to_legacy_encodings(tmp_path) -> None:
    path = tmp_path / "sjis.txt"
    path.write_bytes("こんにちは".encode("cp932"))
    assert read_text_file(path) in {"こんにちは", "こんにちは".encode("cp932").decode("gb18030")}

    bom = tmp_path / "bom.txt"
    bom.write_bytes(b"\xef\xbb\xbfhello")
    assert read_text_file(bom) == "hello"


def test_display_name_strips_extension() -> None:
    assert display_name("story.txt") == "story"
    assert display_name("notes") == "notes"


def test_progress_at_derives_page() -> None:
    assert Progress.at(45, 20) == Progress(page=2, paragraph_index=45)
    assert Progress.at(-3, 20) == Progress(page=0, paragraph_index=0)


def test_progress_payload_uses_paragraph_index_key() -> None:
    assert Progress(1, 25).as_payload() == {"page": 1, "paragraphIndex": 25}


def test_progress_from_payload_accepts_legacy_key() -> None:
    assert progress_from_payload({"page": 3, "paraIndex": 70}) == Progress(3, 70)
    assert progress_from_payload({"page": -1, "paragraphIndex": 4}) == Progress(0, 4)
    assert progress_from_payload({"page": 1}) is None
    assert progress_from_payload({"page": 1, "paragraphIndex": True}) is None
    assert progress_from_payload("nope") is None


def test_reingest_clamps_progress_and_marks_unsynced() -> None:
    book = ingest_text("a.txt", "a", "\n".join(str(i) for i in range(50)))
    book.progress = Progress.at(45, 20)
    book.synced = True

    updated = reingest(book, "only\nthree\nlines", page_size=20)

    assert updated.paragraphs == ("only", "three", "lines")
    assert updated.progress == Progress(0, 2)
    assert updated.synced is False
    assert updated.added_at == book.added_at


def test_clamp_progress_on_empty_book() -> None:
    book = ingest_text("e.txt", "e", "")
    assert book.clamp_progress(Progress(4, 90), 20) == Progress()


def test_book_payload_round_trip_keeps_progress() -> None:
    book = ingest_text("b.txt", "b", "x\ny\nz")
    book.progress = Progress(0, 2)
    book.synced = True

    restored = book_from_payload(book_to_payload(book))

    assert restored == book


def test_book_from_payload_resegments_when_paragraphs_missing() -> None:
    restored = book_from_payload({"id": "c.txt", "text": "one\n\ntwo"})
    assert restored is not None
    assert restored.name == "c"
    assert restored.paragraphs == ("one", "two")
    assert restored.progress == Progress()


def test_book_from_payload_rejects_garbage() -> None:
    assert book_from_payload(None) is None
    assert book_from_payload({"id": 3, "text": "x"}) is None
