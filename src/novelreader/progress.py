from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from .book_io import Book, Progress
from .debounce import Debouncer
from .library import Library
from .logging_utils import debug_log, warn
from .sync import UnauthorizedError

PushAction = Callable[[Book, Progress], Awaitable[None]]


class RemoteMirror:
    """Debounced background push of the latest progress per book."""

    def __init__(
        self,
        push: PushAction,
        delay: float,
        *,
        enabled: bool = True,
    ) -> None:
        self._push = push
        self.delay = delay
        self.enabled = enabled
        self._debouncers: dict[str, Debouncer[tuple[Book, Progress]]] = {}

    def _debouncer_for(self, book_id: str) -> Debouncer[tuple[Book, Progress]]:
        debouncer = self._debouncers.get(book_id)
        if debouncer is None:
            debouncer = Debouncer(self.delay, self._run, on_error=self._report)
            self._debouncers[book_id] = debouncer
        return debouncer

    def schedule(self, book: Book, progress: Progress) -> None:
        if not self.enabled:
            return
        self._debouncer_for(book.id).trigger((book, progress))

    async def _run(self, item: tuple[Book, Progress]) -> None:
        book, progress = item
        debug_log(f"pushing progress for {book.id}: {progress.as_payload()}")
        await self._push(book, progress)

    def _report(self, exc: Exception) -> None:
        if isinstance(exc, UnauthorizedError):
            self.enabled = False
            warn(f"Sync disabled, the server rejected the token: {exc}")
            return
        warn(f"Background sync failed: {exc}")

    async def flush(self) -> None:
        for debouncer in list(self._debouncers.values()):
            await debouncer.flush()

    async def close(self) -> None:
        for debouncer in list(self._debouncers.values()):
            await debouncer.close()
        self._debouncers.clear()


class ProgressStore:
    """
    Persist reading progress locally and optionally mirror it remotely.

    Writes are serialized so the last call wins even though the file
    writes run in worker threads.
    """

    def __init__(self, library: Library, *, mirror: RemoteMirror | None = None) -> None:
        self.library = library
        self.mirror = mirror
        self._lock = asyncio.Lock()

    def attach_mirror(self, mirror: RemoteMirror | None) -> None:
        self.mirror = mirror

    async def save_book(self, book: Book) -> None:
        await asyncio.shield(self._locked(self.library.put_book, book))

    async def persist(self, book: Book, progress: Progress, *, mirror: bool = True) -> None:
        if book.progress != progress:
            book.progress = progress
            book.updated_at = time.time()
        # A cancelled caller must not release the lock while its write is still running.
        await asyncio.shield(self._locked(self._write, book))
        if mirror and self.mirror is not None:
            self.mirror.schedule(book, progress)

    async def _locked(self, func: Callable[[Book], None], book: Book) -> None:
        async with self._lock:
            await asyncio.to_thread(func, book)

    def _write(self, book: Book) -> None:
        stored = self.library.get_book(book.id)
        if stored is None or stored.progress != book.progress or stored.synced != book.synced:
            self.library.put_book(book)
        self.library.set_last_book(book.id)

    async def close(self) -> None:
        if self.mirror is not None:
            await self.mirror.close()


__all__ = ["ProgressStore", "RemoteMirror"]
