from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from novelreader.book_io import Book, ingest_text
from novelreader.library import Library
from novelreader.progress import ProgressStore
from novelreader.speech import PlaybackError, SpeechEngine, Voice


class FakeSpeech(SpeechEngine):
    """In-memory engine; utterances finish at once or when ``finish`` is called."""

    def __init__(self, voices: list[Voice] | None = None, *, auto: bool = True) -> None:
        super().__init__()
        self.voices = [Voice("1", "Alpha", "ja")] if voices is None else list(voices)
        self.auto = auto
        self.spoken: list[str] = []
        self.fail_on: set[str] = set()
        self.inflight = 0
        self.max_inflight = 0
        self.cancel_calls = 0
        self.current: asyncio.Future[None] | None = None

    async def list_voices(self) -> list[Voice]:
        return list(self.voices)

    async def speak(self, text: str, voice: Voice | None, rate: float) -> None:
        self.spoken.append(text)
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            if text in self.fail_on:
                raise PlaybackError(f"cannot speak {text!r}")
            if self.auto:
                await asyncio.sleep(0)
                return
            self.current = asyncio.get_running_loop().create_future()
            await self.current
        finally:
            self.inflight -= 1

    @property
    def waiting(self) -> bool:
        return self.current is not None and not self.current.done()

    def finish(self) -> None:
        assert self.current is not None and not self.current.done()
        self.current.set_result(None)

    def cancel(self) -> None:
        self.cancel_calls += 1

    def publish_voices(self, voices: list[Voice]) -> None:
        self.voices = list(voices)
        self._notify_voices_changed()


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_book(count: int, book_id: str = "novel.txt", page_size: int = 20) -> Book:
    text = "\n".join(f"Paragraph {index}" for index in range(count))
    return ingest_text(book_id, Path(book_id).stem, text, page_size=page_size)


@pytest.fixture
def library(tmp_path) -> Library:
    return Library(tmp_path / "home")


@pytest.fixture
def store(library) -> ProgressStore:
    return ProgressStore(library)
